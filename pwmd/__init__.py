"""Expose kernel sysfs PWM channels to unprivileged processes over ZeroMQ."""
from .channel import Polarity, Stage
from .errors import (
    ChannelUnavailable,
    InternalError,
    InvalidArgument,
    InvalidState,
    KernelRejected,
    PwmError,
)
from .registry import ChannelRegistry
from .sysfs import SysfsBridge

__version__ = "0.3.0"
