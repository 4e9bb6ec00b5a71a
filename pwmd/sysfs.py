import logging
import os
import re
import time

from .errors import ChannelUnavailable, KernelRejected, classify_os_error

log = logging.getLogger("pwmd.sysfs")

SYSFS_PWM_ROOT = "/sys/class/pwm"

_CHIP_RE = re.compile(r"^pwmchip(\d+)$")


# ================== 文件工具 ==================
def write(path, value):
    # 不用 open(path, "w")：它会创建缺失的属性文件，而 sysfs 节点消失时必须报错
    fd = os.open(path, os.O_WRONLY | os.O_TRUNC)
    try:
        os.write(fd, str(value).encode())
    finally:
        os.close(fd)


def read(path):
    with open(path, "r") as f:
        return f.read().strip()


class SysfsBridge:
    """
    Reads/writes the kernel PWM attribute files under one sysfs root.

    Every OSError is classified before it leaves this class: a missing node
    becomes ChannelUnavailable, anything else KernelRejected. No retries.
    """

    def __init__(self, root: str = SYSFS_PWM_ROOT):
        self.root = root

    # ---------------- 路径 ----------------
    def chip_path(self, chip: int) -> str:
        return os.path.join(self.root, f"pwmchip{chip}")

    def channel_path(self, chip: int, channel: int) -> str:
        return os.path.join(self.chip_path(chip), f"pwm{channel}")

    def _attr(self, chip, channel, name):
        return os.path.join(self.channel_path(chip, channel), name)

    def _write(self, path, value, what):
        try:
            write(path, value)
        except OSError as e:
            raise classify_os_error(e, what) from e
        log.debug("%s <- %s", path, value)

    def _read(self, path, what):
        try:
            return read(path)
        except OSError as e:
            raise classify_os_error(e, what) from e

    def _read_int(self, path, what):
        text = self._read(path, what)
        try:
            return int(text)
        except ValueError as e:
            # 内核给出的内容不是十进制数，按驱动异常处理
            raise KernelRejected(f"kernel returned non-numeric {what}: {text!r}") from e

    # ---------------- chip ----------------
    def chips(self):
        try:
            names = os.listdir(self.root)
        except FileNotFoundError:
            return []
        found = []
        for name in names:
            m = _CHIP_RE.match(name)
            if m:
                found.append(int(m.group(1)))
        return sorted(found)

    def chip_exists(self, chip: int) -> bool:
        return os.path.isdir(self.chip_path(chip))

    def read_npwm(self, chip: int) -> int:
        return self._read_int(os.path.join(self.chip_path(chip), "npwm"), f"pwmchip{chip}/npwm")

    # ---------------- export / unexport ----------------
    def channel_exists(self, chip: int, channel: int) -> bool:
        return os.path.isdir(self.channel_path(chip, channel))

    def write_export(self, chip: int, channel: int):
        self._write(os.path.join(self.chip_path(chip), "export"), channel, f"pwmchip{chip}/export")

    def write_unexport(self, chip: int, channel: int):
        self._write(os.path.join(self.chip_path(chip), "unexport"), channel, f"pwmchip{chip}/unexport")

    def wait_for_channel(self, chip: int, channel: int, timeout: float = 1.0, interval: float = 0.05):
        # 等待内核创建 pwmX 目录
        deadline = time.monotonic() + timeout
        while True:
            if self.channel_exists(chip, channel):
                return
            if time.monotonic() >= deadline:
                raise ChannelUnavailable(
                    f"channel unavailable: pwmchip{chip}/pwm{channel} not created after export"
                )
            time.sleep(interval)

    # ---------------- 通道属性 ----------------
    def write_period(self, chip: int, channel: int, ns: int):
        self._write(self._attr(chip, channel, "period"), ns, f"pwmchip{chip}/pwm{channel}/period")

    def write_duty_cycle(self, chip: int, channel: int, ns: int):
        self._write(self._attr(chip, channel, "duty_cycle"), ns, f"pwmchip{chip}/pwm{channel}/duty_cycle")

    def write_polarity(self, chip: int, channel: int, polarity):
        self._write(self._attr(chip, channel, "polarity"), polarity.value, f"pwmchip{chip}/pwm{channel}/polarity")

    def write_enable(self, chip: int, channel: int, enabled: bool):
        self._write(self._attr(chip, channel, "enable"), 1 if enabled else 0, f"pwmchip{chip}/pwm{channel}/enable")

    def read_period(self, chip: int, channel: int) -> int:
        return self._read_int(self._attr(chip, channel, "period"), f"pwmchip{chip}/pwm{channel}/period")

    def read_duty_cycle(self, chip: int, channel: int) -> int:
        return self._read_int(self._attr(chip, channel, "duty_cycle"), f"pwmchip{chip}/pwm{channel}/duty_cycle")

    def read_polarity(self, chip: int, channel: int) -> str:
        return self._read(self._attr(chip, channel, "polarity"), f"pwmchip{chip}/pwm{channel}/polarity")

    def read_enable(self, chip: int, channel: int) -> bool:
        return self._read_int(self._attr(chip, channel, "enable"), f"pwmchip{chip}/pwm{channel}/enable") == 1
