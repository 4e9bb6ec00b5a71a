"""
Per-channel life-cycle state machine.

    UNEXPORTED -> EXPORTED -> CONFIGURED <-> ENABLED

Every transition checks its guards first, then performs the sysfs write
through the bridge, and only commits the new in-memory state once the write
went through. A failed write therefore leaves the record as it was.
"""
import enum
import logging
import threading
from typing import NamedTuple, Optional

from .errors import ChannelUnavailable, InvalidArgument, InvalidState, KernelRejected

log = logging.getLogger("pwmd.channel")


class Stage(enum.IntEnum):
    UNEXPORTED = 0
    EXPORTED = 1
    CONFIGURED = 2
    ENABLED = 3


class Polarity(enum.Enum):
    NORMAL = "normal"
    INVERSED = "inversed"

    @classmethod
    def parse(cls, token) -> "Polarity":
        # 总线上接受 "inverse"，写入内核时用 "inversed"
        if isinstance(token, str):
            t = token.strip().lower()
            if t == "normal":
                return cls.NORMAL
            if t in ("inverse", "inversed"):
                return cls.INVERSED
        raise InvalidArgument(f"unknown polarity {token!r}, expected 'normal' or 'inverse'")


class ChannelInfo(NamedTuple):
    chip: int
    channel: int
    stage: Stage
    period_ns: int
    duty_cycle_ns: int
    polarity: Polarity
    owner: Optional[str]


class ChannelState:

    def __init__(self, chip: int, channel: int):
        self.chip = chip
        self.channel = channel
        self.stage = Stage.UNEXPORTED
        self.period_ns = 0
        self.duty_cycle_ns = 0
        self.polarity = Polarity.NORMAL
        self.owner = None

        # 同一通道同时只允许一个操作
        self.lock = threading.Lock()
        # 记录已从 registry 删除（等锁的调用方需要重新查找）
        self.retired = False

    @property
    def name(self) -> str:
        return f"pwmchip{self.chip}/pwm{self.channel}"

    def info(self) -> ChannelInfo:
        return ChannelInfo(
            self.chip, self.channel, self.stage,
            self.period_ns, self.duty_cycle_ns, self.polarity, self.owner,
        )

    # ---------------- 守卫 ----------------
    def check_owner(self, owner):
        if owner is not None and self.owner is not None and owner != self.owner:
            raise InvalidState(f"{self.name}: channel owned by another client")

    def _require_exported(self):
        if self.stage == Stage.UNEXPORTED:
            raise InvalidState(f"{self.name}: channel not exported")

    def _require_configured(self):
        self._require_exported()
        if self.stage == Stage.EXPORTED:
            raise InvalidState(f"{self.name}: channel not configured, set the period first")

    def _seed(self, read_fn, default):
        try:
            return read_fn(self.chip, self.channel)
        except (ChannelUnavailable, KernelRejected) as e:
            log.debug("%s: %s, assuming %r", self.name, e.message, default)
            return default

    # ---------------- 状态转换 ----------------
    def export(self, bridge, owner=None, timeout: float = 1.0):
        if self.stage != Stage.UNEXPORTED:
            raise InvalidState(f"{self.name}: channel already exported")

        # pwmX 已存在（例如 pwmd 重启前导出的）就直接接管，不再写 export
        adopted = bridge.channel_exists(self.chip, self.channel)
        if not adopted:
            bridge.write_export(self.chip, self.channel)
            bridge.wait_for_channel(self.chip, self.channel, timeout)

        # 以内核当前值作为缓存初值
        period = self._seed(bridge.read_period, 0)
        duty = self._seed(bridge.read_duty_cycle, 0)
        try:
            polarity = Polarity.parse(self._seed(bridge.read_polarity, "normal"))
        except InvalidArgument:
            polarity = Polarity.NORMAL
        running = adopted and self._seed(bridge.read_enable, False)

        self.period_ns = period
        self.duty_cycle_ns = duty
        self.polarity = polarity
        self.owner = owner
        self.stage = Stage.ENABLED if running else Stage.EXPORTED
        if adopted:
            log.info("%s: adopted already exported channel (%s, owner=%s)",
                     self.name, self.stage.name.lower(), owner)
        else:
            log.info("%s: exported (owner=%s)", self.name, owner)

    def set_period(self, bridge, ns: int):
        self._require_exported()
        if self.stage == Stage.ENABLED and self.duty_cycle_ns > ns:
            raise InvalidArgument(
                f"{self.name}: duty cycle exceeds period ({self.duty_cycle_ns} > {ns} ns)"
            )

        bridge.write_period(self.chip, self.channel, ns)

        self.period_ns = ns
        if self.stage == Stage.EXPORTED:
            self.stage = Stage.CONFIGURED
        log.info("%s: period=%d ns", self.name, ns)

    def set_duty_cycle(self, bridge, ns: int):
        self._require_configured()
        if ns > self.period_ns:
            raise InvalidArgument(
                f"{self.name}: duty cycle exceeds period ({ns} > {self.period_ns} ns)"
            )

        bridge.write_duty_cycle(self.chip, self.channel, ns)

        self.duty_cycle_ns = ns
        log.info("%s: duty_cycle=%d ns", self.name, ns)

    def set_polarity(self, bridge, polarity: Polarity):
        self._require_configured()
        # 多数驱动不允许在输出时改极性
        if self.stage == Stage.ENABLED:
            raise InvalidState(f"{self.name}: channel currently enabled, disable it before changing polarity")

        bridge.write_polarity(self.chip, self.channel, polarity)

        self.polarity = polarity
        log.info("%s: polarity=%s", self.name, polarity.value)

    def enable(self, bridge):
        self._require_configured()
        if self.stage == Stage.ENABLED:
            raise InvalidState(f"{self.name}: channel already enabled")
        if self.duty_cycle_ns > self.period_ns:
            raise InvalidArgument(
                f"{self.name}: duty cycle exceeds period ({self.duty_cycle_ns} > {self.period_ns} ns)"
            )

        bridge.write_enable(self.chip, self.channel, True)

        self.stage = Stage.ENABLED
        log.info("%s: enabled", self.name)

    def disable(self, bridge):
        self._require_exported()
        if self.stage != Stage.ENABLED:
            raise InvalidState(f"{self.name}: channel not enabled")

        bridge.write_enable(self.chip, self.channel, False)

        self.stage = Stage.CONFIGURED
        log.info("%s: disabled", self.name)

    def unexport(self, bridge):
        self._require_exported()
        if self.stage == Stage.ENABLED:
            raise InvalidState(f"{self.name}: channel currently enabled, disable it before unexporting")

        bridge.write_unexport(self.chip, self.channel)

        self.stage = Stage.UNEXPORTED
        self.period_ns = 0
        self.duty_cycle_ns = 0
        self.polarity = Polarity.NORMAL
        self.owner = None
        log.info("%s: unexported", self.name)
