import errno
import os
import threading

import pytest

from pwmd import sysfs as sysfs_module
from pwmd.channel import Polarity
from pwmd.errors import ChannelUnavailable, KernelRejected


@pytest.fixture(autouse=True)
def channels(sysfs):
    # 属性读写测试直接操作已导出的 pwm0 / pwm1
    sysfs.add_channel(0, 0)
    sysfs.add_channel(0, 1)


def test_attribute_writes_land_in_the_channel_directory(sysfs, bridge):
    bridge.write_period(0, 1, 20_000_000)
    bridge.write_duty_cycle(0, 1, 10_000_000)
    bridge.write_polarity(0, 1, Polarity.INVERSED)
    bridge.write_enable(0, 1, True)

    assert sysfs.attr(0, 1, "period") == "20000000"
    assert sysfs.attr(0, 1, "duty_cycle") == "10000000"
    assert sysfs.attr(0, 1, "polarity") == "inversed"
    assert sysfs.attr(0, 1, "enable") == "1"

    bridge.write_enable(0, 1, False)
    assert sysfs.attr(0, 1, "enable") == "0"


def test_write_replaces_previous_content(sysfs, bridge):
    bridge.write_period(0, 0, 1_000_000)
    bridge.write_period(0, 0, 5)
    assert sysfs.attr(0, 0, "period") == "5"


def test_export_and_unexport_write_the_channel_index(sysfs, bridge):
    bridge.write_export(0, 1)
    assert sysfs.control(0, "export") == "1"
    bridge.write_unexport(0, 1)
    assert sysfs.control(0, "unexport") == "1"


def test_missing_attribute_is_not_created(sysfs, bridge):
    enable = sysfs.root / "pwmchip0" / "pwm0" / "enable"
    enable.unlink()

    with pytest.raises(ChannelUnavailable):
        bridge.write_enable(0, 0, True)
    assert not enable.exists()


def test_missing_chip_is_channel_unavailable(bridge):
    with pytest.raises(ChannelUnavailable) as exc:
        bridge.write_export(7, 0)
    assert exc.value.code == 404


def test_kernel_rejection_carries_errno_name(bridge, monkeypatch):
    def refuse(path, value):
        raise OSError(errno.EINVAL, os.strerror(errno.EINVAL), path)

    monkeypatch.setattr(sysfs_module, "write", refuse)

    with pytest.raises(KernelRejected) as exc:
        bridge.write_duty_cycle(0, 0, 10)
    assert "EINVAL" in exc.value.message
    assert str(errno.EINVAL) not in exc.value.message


def test_reads(sysfs, bridge):
    (sysfs.root / "pwmchip0" / "pwm0" / "period").write_text("100\n")
    (sysfs.root / "pwmchip0" / "pwm0" / "enable").write_text("1\n")

    assert bridge.read_npwm(0) == 2
    assert bridge.read_period(0, 0) == 100
    assert bridge.read_duty_cycle(0, 0) == 0
    assert bridge.read_polarity(0, 0) == "normal"
    assert bridge.read_enable(0, 0) is True


def test_non_numeric_read_is_kernel_rejected(sysfs, bridge):
    (sysfs.root / "pwmchip0" / "npwm").write_text("garbage")
    with pytest.raises(KernelRejected):
        bridge.read_npwm(0)


def test_chips_lists_only_pwmchip_directories(sysfs, bridge):
    sysfs.add_chip(3, npwm=1)
    (sysfs.root / "not-a-chip").mkdir()
    assert bridge.chips() == [0, 3]
    assert bridge.chip_exists(3)
    assert not bridge.chip_exists(1)


def test_chips_on_missing_root(tmp_path):
    assert sysfs_module.SysfsBridge(str(tmp_path / "nope")).chips() == []


def test_wait_for_channel_times_out(sysfs, bridge):
    sysfs.add_chip(1, npwm=1, channels=False)
    with pytest.raises(ChannelUnavailable):
        bridge.wait_for_channel(1, 0, timeout=0.05, interval=0.01)


def test_wait_for_channel_sees_late_directory(sysfs, bridge):
    sysfs.add_chip(1, npwm=1, channels=False)
    timer = threading.Timer(0.05, sysfs.add_channel, args=(1, 0))
    timer.start()
    try:
        bridge.wait_for_channel(1, 0, timeout=2.0, interval=0.01)
    finally:
        timer.join()
    assert bridge.channel_exists(1, 0)
