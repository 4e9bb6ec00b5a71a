"""
Pytest fixtures: a fake /sys/class/pwm tree in tmp_path, a bridge that
records every attempted write, a registry on top of it, and a running
ZeroMQ server for end-to-end tests.
"""
import shutil
import threading

import pytest

from pwmd.registry import ChannelRegistry
from pwmd.server import PwmServer
from pwmd.sysfs import SysfsBridge

EXPORT_TIMEOUT_S = 0.2


class FakeSysfs:
    """Chip/channel directories with the attribute files the kernel would expose."""

    def __init__(self, root):
        self.root = root
        # 这些 chip 的 export 写入成功，但 pwmX 始终不出现
        self.unresponsive = set()

    def add_chip(self, chip, npwm=2, channels=False):
        d = self.root / f"pwmchip{chip}"
        d.mkdir()
        (d / "npwm").write_text(str(npwm))
        (d / "export").write_text("")
        (d / "unexport").write_text("")
        # 真实内核在 export 时才创建 pwmX
        if channels:
            for ch in range(npwm):
                self.add_channel(chip, ch)
        return d

    def add_channel(self, chip, channel, period=0, duty=0, polarity="normal", enabled=False):
        d = self.root / f"pwmchip{chip}" / f"pwm{channel}"
        d.mkdir()
        (d / "period").write_text(str(period))
        (d / "duty_cycle").write_text(str(duty))
        (d / "polarity").write_text(polarity)
        (d / "enable").write_text("1" if enabled else "0")
        return d

    def exported(self, chip, channel):
        if chip in self.unresponsive:
            return
        if not (self.root / f"pwmchip{chip}" / f"pwm{channel}").exists():
            self.add_channel(chip, channel)

    def unexported(self, chip, channel):
        shutil.rmtree(self.root / f"pwmchip{chip}" / f"pwm{channel}", ignore_errors=True)

    def attr(self, chip, channel, name):
        return (self.root / f"pwmchip{chip}" / f"pwm{channel}" / name).read_text()

    def control(self, chip, name):
        return (self.root / f"pwmchip{chip}" / name).read_text()


class RecordingBridge(SysfsBridge):
    """
    SysfsBridge that logs (attribute, value) for every write attempt and,
    like the kernel, creates/removes pwmX when export/unexport is written.
    """

    def __init__(self, sysfs):
        super().__init__(str(sysfs.root))
        self.sysfs = sysfs
        self.writes = []
        self._lock = threading.Lock()

    def _write(self, path, value, what):
        with self._lock:
            self.writes.append((what, str(value)))
        super()._write(path, value, what)

    def write_export(self, chip, channel):
        super().write_export(chip, channel)
        self.sysfs.exported(chip, channel)

    def write_unexport(self, chip, channel):
        super().write_unexport(chip, channel)
        self.sysfs.unexported(chip, channel)


@pytest.fixture()
def sysfs(tmp_path):
    fake = FakeSysfs(tmp_path / "pwm")
    fake.root.mkdir()
    fake.add_chip(0, npwm=2)
    return fake


@pytest.fixture()
def bridge(sysfs):
    return RecordingBridge(sysfs)


@pytest.fixture()
def registry(bridge):
    return ChannelRegistry(bridge, export_timeout=EXPORT_TIMEOUT_S)


@pytest.fixture()
def endpoint(tmp_path):
    return f"ipc://{tmp_path}/pwmd.sock"


@pytest.fixture()
def server(registry, endpoint):
    """PwmServer running in a background thread (stopped after the test)."""
    srv = PwmServer(registry, endpoint, workers=2)
    ready = threading.Event()
    thr = threading.Thread(target=srv.serve_forever, kwargs={"on_ready": ready.set}, daemon=True)
    thr.start()
    assert ready.wait(5.0), "server did not come up"
    srv.thread = thr
    yield srv
    srv.quit()
    thr.join(timeout=5.0)
