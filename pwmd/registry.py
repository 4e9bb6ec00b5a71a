import contextlib
import logging
import threading

from .channel import ChannelState, Polarity, Stage
from .errors import (
    ChannelUnavailable,
    InternalError,
    InvalidArgument,
    InvalidState,
    KernelRejected,
    PwmError,
)

log = logging.getLogger("pwmd.registry")

MAX_INDEX = 0xFFFFFFFF
MAX_NS = 0xFFFFFFFFFFFFFFFF


def _check_index(name, value):
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_INDEX:
        raise InvalidArgument(f"{name} must be an unsigned 32-bit integer, got {value!r}")


def _check_ns(value):
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_NS:
        raise InvalidArgument(f"nanoseconds must be an unsigned 64-bit integer, got {value!r}")


class ChannelRegistry:
    """
    Owns every ChannelState and is the only way to change one.

    Locking is per channel: an operation holds the channel's lock for its whole
    check-write-commit sequence. ``_map_lock`` only protects the dicts and is
    never held while the bridge touches sysfs.
    """

    def __init__(self, bridge, export_timeout: float = 1.0):
        self.bridge = bridge
        self.export_timeout = export_timeout
        self._channels = {}
        self._chips = {}
        self._map_lock = threading.Lock()

    # ================== chip ==================
    def discover(self):
        """Scan the sysfs root for chips and cache their channel counts."""
        for chip in self.bridge.chips():
            try:
                self._npwm(chip)
            except PwmError as e:
                log.warning("pwmchip%d skipped: %s", chip, e.message)
        with self._map_lock:
            return dict(self._chips)

    def _npwm(self, chip):
        with self._map_lock:
            n = self._chips.get(chip)
        if n is not None:
            return n

        # chip 一旦识别就不再变化，缓存 npwm
        if not self.bridge.chip_exists(chip):
            raise ChannelUnavailable(f"channel unavailable: pwmchip{chip} not found")
        n = self.bridge.read_npwm(chip)
        with self._map_lock:
            if chip not in self._chips:
                log.info("pwmchip%d: %d channel(s)", chip, n)
            return self._chips.setdefault(chip, n)

    def _check_channel(self, chip, channel):
        _check_index("chip", chip)
        _check_index("channel", channel)
        n = self._npwm(chip)
        if channel >= n:
            raise ChannelUnavailable(
                f"channel unavailable: pwmchip{chip} has {n} channel(s), no pwm{channel}"
            )

    # ================== 通道锁 ==================
    @contextlib.contextmanager
    def _locked(self, chip, channel, create=False):
        key = (chip, channel)
        while True:
            with self._map_lock:
                state = self._channels.get(key)
                if state is None:
                    if not create:
                        raise InvalidState(f"pwmchip{chip}/pwm{channel}: channel not exported")
                    state = ChannelState(chip, channel)
                    self._channels[key] = state

            state.lock.acquire()
            if not state.retired:
                break
            # 等锁期间记录被删除了，重新查找
            state.lock.release()

        if not create and state.stage == Stage.UNEXPORTED:
            # Export 已插入记录但还没拿到锁，记录归它处理
            state.lock.release()
            raise InvalidState(f"{state.name}: channel not exported")

        try:
            if (state.chip, state.channel) != key:
                raise InternalError(f"{state.name}: record filed under pwmchip{chip}/pwm{channel}")
            yield state
        finally:
            if state.stage == Stage.UNEXPORTED:
                with self._map_lock:
                    if self._channels.get(key) is state:
                        del self._channels[key]
                state.retired = True
            state.lock.release()

    def _apply(self, op, chip, channel, action, owner=None, create=False):
        self._check_channel(chip, channel)
        try:
            with self._locked(chip, channel, create) as state:
                if not create:
                    state.check_owner(owner)
                action(state)
        except KernelRejected as e:
            log.warning("%s: driver-level anomaly: %s", op, e.message)
            raise
        except InternalError as e:
            log.critical("%s: %s", op, e.message)
            raise
        except PwmError as e:
            log.info("%s rejected: %s", op, e.message)
            raise

    # ================== 对外接口 ==================
    def export(self, chip: int, channel: int, owner=None):
        self._apply(
            "Export", chip, channel,
            lambda s: s.export(self.bridge, owner, self.export_timeout),
            create=True,
        )

    def unexport(self, chip: int, channel: int, owner=None):
        self._apply("Unexport", chip, channel, lambda s: s.unexport(self.bridge), owner)

    def enable(self, chip: int, channel: int, owner=None):
        self._apply("Enable", chip, channel, lambda s: s.enable(self.bridge), owner)

    def disable(self, chip: int, channel: int, owner=None):
        self._apply("Disable", chip, channel, lambda s: s.disable(self.bridge), owner)

    def set_period_ns(self, chip: int, channel: int, ns: int, owner=None):
        _check_ns(ns)
        self._apply("SetPeriodNs", chip, channel, lambda s: s.set_period(self.bridge, ns), owner)

    def set_duty_cycle_ns(self, chip: int, channel: int, ns: int, owner=None):
        _check_ns(ns)
        self._apply("SetDutyCycleNs", chip, channel, lambda s: s.set_duty_cycle(self.bridge, ns), owner)

    def set_polarity(self, chip: int, channel: int, polarity, owner=None):
        if not isinstance(polarity, Polarity):
            polarity = Polarity.parse(polarity)
        self._apply("SetPolarity", chip, channel, lambda s: s.set_polarity(self.bridge, polarity), owner)

    # ---------------- 查询 ----------------
    def npwm(self, chip: int) -> int:
        _check_index("chip", chip)
        return self._npwm(chip)

    def stage(self, chip: int, channel: int) -> Stage:
        _check_index("chip", chip)
        _check_index("channel", channel)
        with self._map_lock:
            state = self._channels.get((chip, channel))
        return state.stage if state is not None else Stage.UNEXPORTED

    def is_exported(self, chip: int, channel: int) -> bool:
        return self.stage(chip, channel) != Stage.UNEXPORTED

    def is_enabled(self, chip: int, channel: int) -> bool:
        return self.stage(chip, channel) == Stage.ENABLED

    def snapshot(self, chip: int, channel: int):
        """Consistent copy of one channel's record, or None when not exported."""
        with self._map_lock:
            state = self._channels.get((chip, channel))
        if state is None:
            return None
        with state.lock:
            if state.retired or state.stage == Stage.UNEXPORTED:
                return None
            return state.info()

    def exported(self):
        with self._map_lock:
            keys = sorted(self._channels)
        return [k for k in keys if self.stage(*k) != Stage.UNEXPORTED]
