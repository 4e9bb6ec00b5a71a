import argparse
import sys

import zmq

from . import config
from .errors import UNKNOWN_OUTCOME


class CallFailed(Exception):
    def __init__(self, code, message):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class PwmClient:
    """
    REQ client for pwmd. Life-cycle calls return the (code, message) pair of
    the reply; queries return their result and raise CallFailed otherwise.
    A call that gets no reply in time is not retried: it reports
    UNKNOWN_OUTCOME because the server may or may not have applied it.
    """

    def __init__(self, endpoint: str = config.ENDPOINT, timeout: float = config.CALL_TIMEOUT_S,
                 owner=None, context=None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.owner = owner
        self.ctx = context or zmq.Context.instance()
        self.sock = None
        self._connect()

    def _connect(self):
        self.sock = self.ctx.socket(zmq.REQ)
        self.sock.setsockopt(zmq.LINGER, 0)
        self.sock.setsockopt(zmq.SNDTIMEO, int(self.timeout * 1000))
        self.sock.connect(self.endpoint)

    def close(self):
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def call(self, method: str, **params) -> dict:
        msg = {"method": method}
        msg.update(params)
        if self.owner is not None:
            msg.setdefault("owner", self.owner)

        # REQ → REP：send 后必须 recv
        try:
            self.sock.send_json(msg)
        except zmq.Again:
            return self._no_reply()
        if not self.sock.poll(int(self.timeout * 1000)):
            return self._no_reply()
        return self.sock.recv_json()

    def _no_reply(self):
        # 超时后 REQ socket 卡在等待回复的状态，只能重建；调用不重试
        self.close()
        self._connect()
        return {
            "ok": False,
            "code": UNKNOWN_OUTCOME,
            "message": f"no reply within {self.timeout}s, outcome unknown",
        }

    def _status(self, method, **params):
        reply = self.call(method, **params)
        return reply["code"], reply["message"]

    def _query(self, method, **params):
        reply = self.call(method, **params)
        if not reply["ok"]:
            raise CallFailed(reply["code"], reply["message"])
        return reply["result"]

    # ---------------- 生命周期 ----------------
    def export(self, channel: int, chip: int = config.DEFAULT_CHIP):
        return self._status("Export", chip=chip, channel=channel)

    def unexport(self, channel: int, chip: int = config.DEFAULT_CHIP):
        return self._status("Unexport", chip=chip, channel=channel)

    def enable(self, chip: int, channel: int):
        return self._status("Enable", chip=chip, channel=channel)

    def disable(self, chip: int, channel: int):
        return self._status("Disable", chip=chip, channel=channel)

    def set_period_ns(self, chip: int, channel: int, ns: int):
        return self._status("SetPeriodNs", chip=chip, channel=channel, ns=ns)

    def set_duty_cycle_ns(self, chip: int, channel: int, ns: int):
        return self._status("SetDutyCycleNs", chip=chip, channel=channel, ns=ns)

    def set_polarity(self, chip: int, channel: int, polarity: str):
        return self._status("SetPolarity", chip=chip, channel=channel, polarity=polarity)

    def quit(self):
        return self._status("Quit")

    # ---------------- 查询 ----------------
    def npwm(self, chip: int) -> int:
        return self._query("Npwm", chip=chip)

    def is_exported(self, chip: int, channel: int) -> bool:
        return self._query("IsExported", chip=chip, channel=channel)

    def is_enabled(self, chip: int, channel: int) -> bool:
        return self._query("IsEnabled", chip=chip, channel=channel)


# ================== 命令行 ==================
COMMANDS = {
    "export": ("Export", ("chip", "channel")),
    "unexport": ("Unexport", ("chip", "channel")),
    "enable": ("Enable", ("chip", "channel")),
    "disable": ("Disable", ("chip", "channel")),
    "period": ("SetPeriodNs", ("chip", "channel", "ns")),
    "duty": ("SetDutyCycleNs", ("chip", "channel", "ns")),
    "polarity": ("SetPolarity", ("chip", "channel", "polarity")),
    "npwm": ("Npwm", ("chip",)),
    "exported": ("IsExported", ("chip", "channel")),
    "enabled": ("IsEnabled", ("chip", "channel")),
    "shutdown": ("Quit", ()),
}

USAGE = "\n".join(
    f"  {name} {' '.join('<' + a + '>' for a in args)}" for name, (_, args) in COMMANDS.items()
)


def parse_command(words):
    """``["period", "0", "1", "20000000"]`` -> ``("SetPeriodNs", {...})``"""
    if not words or words[0] not in COMMANDS:
        raise ValueError(f"unknown command, one of:\n{USAGE}")
    method, names = COMMANDS[words[0]]
    values = words[1:]
    if len(values) != len(names):
        raise ValueError(f"usage: {words[0]} {' '.join('<' + a + '>' for a in names)}")

    params = {}
    for name, value in zip(names, values):
        if name == "polarity":
            params[name] = value
        else:
            try:
                params[name] = int(value)
            except ValueError:
                raise ValueError(f"{name} must be an integer, got {value!r}") from None
    return method, params


def run_command(client, words) -> int:
    try:
        method, params = parse_command(words)
    except ValueError as e:
        print(f"错误: {e}")
        return 2
    reply = client.call(method, **params)
    if "result" in reply:
        print(reply["result"])
    elif reply["ok"]:
        print("✔ ok")
    else:
        print(f"✘ {reply['code']}: {reply['message']}")
    return 0 if reply["ok"] else 1


def main(argv=None):
    ap = argparse.ArgumentParser(prog="pwmctl", description="Talk to a running pwmd.")
    ap.add_argument("--endpoint", default=config.ENDPOINT)
    ap.add_argument("--timeout", type=float, default=config.CALL_TIMEOUT_S)
    ap.add_argument("--owner", default=None, help="owner token sent with every call")
    ap.add_argument("command", nargs="*", help="run one command and exit")
    args = ap.parse_args(argv)

    with PwmClient(args.endpoint, args.timeout, args.owner) as client:
        if args.command:
            return run_command(client, args.command)

        print(f"命令:\n{USAGE}\n输入 q 退出")
        while True:
            try:
                s = input("pwm> ").strip()
            except EOFError:
                break
            if s.lower() in ("q", "quit", "exit"):
                break
            if not s:
                continue
            run_command(client, s.split())
    return 0


if __name__ == "__main__":
    sys.exit(main())
