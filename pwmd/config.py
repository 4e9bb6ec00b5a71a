"""
pwmd defaults. Each value can be overridden from the environment,
and the command line flags of ``pwmd`` / ``pwmctl`` override both.
"""
import os

ENDPOINT = os.environ.get("PWMD_ENDPOINT", "ipc:///run/pwmd.sock")   # 总线地址
SOCKET_MODE = 0o666                                                   # 允许普通用户访问
SYSFS_ROOT = os.environ.get("PWMD_SYSFS_ROOT", "/sys/class/pwm")
WORKERS = int(os.environ.get("PWMD_WORKERS", "4"))                    # 并发处理的调用数
EXPORT_TIMEOUT_S = 1.0            # 等待内核创建 pwmX 目录
POLL_MS = 100                     # 主循环 / worker 检查退出标志的周期
CALL_TIMEOUT_S = 2.0              # 客户端等待回复的时间
DEFAULT_CHIP = 0                  # Export/Unexport 未指定 chip 时使用

LOG_LEVEL = os.environ.get("PWMD_LOG_LEVEL", "INFO")                  # DEBUG/INFO/WARNING
