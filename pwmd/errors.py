"""
Error kinds raised by the registry / bridge and their bus reply codes.
Every reply on the bus is a (code, message) pair, code 0 means success.
"""
import errno
import logging

log = logging.getLogger("pwmd.errors")

OK = 0
INVALID_ARGUMENT = 400
CHANNEL_UNAVAILABLE = 404
INVALID_STATE = 409
INTERNAL = 500
KERNEL_REJECTED = 502
# 仅客户端使用：总线调用超时，结果未知
UNKNOWN_OUTCOME = 504

# 这些 errno 都表示节点不存在（通道被外部 unexport、chip 序号无效等）
_MISSING = (errno.ENOENT, errno.ENODEV, errno.ENXIO, errno.ENOTDIR)


class PwmError(Exception):
    code = INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(PwmError):
    code = INVALID_ARGUMENT


class InvalidState(PwmError):
    code = INVALID_STATE


class ChannelUnavailable(PwmError):
    code = CHANNEL_UNAVAILABLE


class KernelRejected(PwmError):
    code = KERNEL_REJECTED


class InternalError(PwmError):
    code = INTERNAL


def classify_os_error(exc: OSError, what: str) -> PwmError:
    """Turn an OSError from a sysfs read/write into ChannelUnavailable or KernelRejected."""
    if exc.errno in _MISSING:
        return ChannelUnavailable(f"channel unavailable: {what}")
    name = errno.errorcode.get(exc.errno, "EUNKNOWN") if exc.errno else "EUNKNOWN"
    return KernelRejected(f"kernel rejected {what} ({name})")


def to_reply(exc: Exception) -> tuple:
    """Map any exception to the (code, message) pair sent back on the bus."""
    if isinstance(exc, PwmError):
        return exc.code, exc.message
    log.error("unclassified error: %r", exc)
    return INTERNAL, f"internal error: {type(exc).__name__}"
