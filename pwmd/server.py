#!/usr/bin/env python3
# 以 root 启动
import argparse
import collections
import json
import logging
import os
import signal
import sys
import threading

import zmq

from . import config
from .errors import InternalError, InvalidArgument, PwmError, to_reply
from .logger_setup import setup_logging
from .registry import ChannelRegistry
from .sysfs import SysfsBridge

log = logging.getLogger("pwmd.server")

_MISSING = object()


def _arg(msg, name, default=_MISSING):
    value = msg.get(name, default)
    if value is _MISSING:
        raise InvalidArgument(f"missing argument {name!r}")
    return value


def _owner(msg):
    owner = msg.get("owner")
    if owner is not None and not isinstance(owner, str):
        raise InvalidArgument(f"owner must be a string, got {owner!r}")
    return owner


def make_reply(code, message, result=_MISSING):
    reply = {"ok": code == 0, "code": code, "message": message}
    if result is not _MISSING:
        reply["result"] = result
    return reply


class PwmServer:
    """
    ZeroMQ front end for a ChannelRegistry.

    Clients talk REQ to the ROUTER bound at ``endpoint``. Calls are handed to a
    pool of worker threads (load-balancing broker: only idle workers get a
    request), so a call blocked on one channel never delays another channel.
    """

    def __init__(self, registry: ChannelRegistry, endpoint: str = config.ENDPOINT,
                 workers: int = config.WORKERS, socket_mode: int = config.SOCKET_MODE,
                 context=None):
        self.registry = registry
        self.endpoint = endpoint
        self.workers = max(1, workers)
        self.socket_mode = socket_mode
        self.ctx = context or zmq.Context.instance()
        # Internal 错误后置位，进程以非零状态退出
        self.fatal = False

        self._quit = threading.Event()
        self._stop_workers = threading.Event()
        self._worker_url = f"inproc://pwmd-workers-{id(self):x}"
        self._handlers = {
            "Export": self._export,
            "Unexport": self._unexport,
            "Enable": self._enable,
            "Disable": self._disable,
            "SetPeriodNs": self._set_period_ns,
            "SetDutyCycleNs": self._set_duty_cycle_ns,
            "SetPolarity": self._set_polarity,
            "Npwm": self._npwm,
            "IsExported": self._is_exported,
            "IsEnabled": self._is_enabled,
            "Quit": self._quit_call,
        }

    def quit(self):
        self._quit.set()

    # ================== 调用处理 ==================
    def _export(self, msg):
        self.registry.export(_arg(msg, "chip", config.DEFAULT_CHIP), _arg(msg, "channel"), _owner(msg))

    def _unexport(self, msg):
        self.registry.unexport(_arg(msg, "chip", config.DEFAULT_CHIP), _arg(msg, "channel"), _owner(msg))

    def _enable(self, msg):
        self.registry.enable(_arg(msg, "chip"), _arg(msg, "channel"), _owner(msg))

    def _disable(self, msg):
        self.registry.disable(_arg(msg, "chip"), _arg(msg, "channel"), _owner(msg))

    def _set_period_ns(self, msg):
        self.registry.set_period_ns(_arg(msg, "chip"), _arg(msg, "channel"), _arg(msg, "ns"), _owner(msg))

    def _set_duty_cycle_ns(self, msg):
        self.registry.set_duty_cycle_ns(_arg(msg, "chip"), _arg(msg, "channel"), _arg(msg, "ns"), _owner(msg))

    def _set_polarity(self, msg):
        self.registry.set_polarity(_arg(msg, "chip"), _arg(msg, "channel"), _arg(msg, "polarity"), _owner(msg))

    def _npwm(self, msg):
        return {"result": self.registry.npwm(_arg(msg, "chip"))}

    def _is_exported(self, msg):
        return {"result": self.registry.is_exported(_arg(msg, "chip"), _arg(msg, "channel"))}

    def _is_enabled(self, msg):
        return {"result": self.registry.is_enabled(_arg(msg, "chip"), _arg(msg, "channel"))}

    def _quit_call(self, msg):
        log.info("quit requested")
        self._quit.set()

    def dispatch(self, msg) -> dict:
        """Run one decoded request and build its reply. Never raises."""
        method = msg.get("method") if isinstance(msg, dict) else None
        try:
            if not isinstance(msg, dict):
                raise InvalidArgument("request must be a JSON object")
            if not isinstance(method, str):
                raise InvalidArgument(f"method must be a string, got {method!r}")
            handler = self._handlers.get(method)
            if handler is None:
                raise InvalidArgument(f"unknown method {method!r}")
            extra = handler(msg)
        except InternalError as e:
            self._fail()
            return make_reply(*to_reply(e))
        except PwmError as e:
            return make_reply(*to_reply(e))
        except Exception as e:
            log.exception("unexpected error in %s", method)
            self._fail()
            return make_reply(*to_reply(e))

        reply = make_reply(0, "")
        if extra:
            reply.update(extra)
        return reply

    def handle(self, request: bytes) -> bytes:
        try:
            msg = json.loads(request.decode())
        except (UnicodeDecodeError, ValueError, RecursionError) as e:
            # RecursionError: 嵌套过深的 JSON
            reply = make_reply(*to_reply(InvalidArgument(f"malformed request: {e}")))
        else:
            reply = self.dispatch(msg)
        log.debug("%s -> %s", request, reply)
        return json.dumps(reply).encode()

    def _fail(self):
        # 不变量被破坏：回复之后停止服务，交给外部重启
        log.critical("internal error, shutting down")
        self.fatal = True
        self._quit.set()

    # ================== worker 线程 ==================
    def _worker_loop(self):
        sock = self.ctx.socket(zmq.REQ)
        sock.connect(self._worker_url)
        sock.send(b"READY")
        try:
            while not self._stop_workers.is_set():
                if not sock.poll(config.POLL_MS):
                    continue
                client, empty, request = sock.recv_multipart()
                try:
                    reply = self.handle(request)
                except Exception as e:
                    # 必须回复，否则主循环的 in_flight 永远不会归零
                    log.exception("worker failed on request")
                    self._fail()
                    reply = json.dumps(make_reply(*to_reply(e))).encode()
                sock.send_multipart([client, b"", reply])
        finally:
            sock.close(linger=0)

    # ================== 主循环 ==================
    def serve_forever(self, on_ready=None):
        frontend = self.ctx.socket(zmq.ROUTER)
        backend = self.ctx.socket(zmq.ROUTER)
        frontend.bind(self.endpoint)
        if self.endpoint.startswith("ipc://"):
            os.chmod(self.endpoint[len("ipc://"):], self.socket_mode)
        backend.bind(self._worker_url)

        threads = [
            threading.Thread(target=self._worker_loop, name=f"pwmd-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for t in threads:
            t.start()

        log.info("PWM server listening: %s (%d workers)", self.endpoint, self.workers)
        if on_ready:
            on_ready()

        available = collections.deque()
        in_flight = 0
        accepting = True
        try:
            while True:
                if accepting and self._quit.is_set():
                    # 不再接收新调用，等已分发的调用完成
                    accepting = False
                    log.info("stopped accepting calls, %d in flight", in_flight)
                if not accepting and in_flight == 0:
                    break

                poller = zmq.Poller()
                poller.register(backend, zmq.POLLIN)
                if accepting and available:
                    poller.register(frontend, zmq.POLLIN)
                events = dict(poller.poll(config.POLL_MS))

                if backend in events:
                    frames = backend.recv_multipart()
                    available.append(frames[0])
                    if len(frames) == 5:
                        frontend.send_multipart(frames[2:])
                        in_flight -= 1

                if frontend in events:
                    frames = frontend.recv_multipart()
                    if len(frames) != 3:
                        log.warning("dropping malformed envelope (%d frames)", len(frames))
                        continue
                    client, empty, request = frames
                    backend.send_multipart([available.popleft(), b"", client, b"", request])
                    in_flight += 1
        finally:
            self._stop_workers.set()
            for t in threads:
                t.join(timeout=1.0)
            frontend.close(linger=1000)
            backend.close(linger=0)
            log.info("PWM server stopped, %d channel(s) left exported", len(self.registry.exported()))


def parse_args(argv=None):
    ap = argparse.ArgumentParser(prog="pwmd", description="Expose sysfs PWM channels over ZeroMQ.")
    ap.add_argument("--endpoint", default=config.ENDPOINT, help="ZeroMQ endpoint to bind")
    ap.add_argument("--sysfs-root", default=config.SYSFS_ROOT, help="path of the sysfs pwm class directory")
    ap.add_argument("--workers", type=int, default=config.WORKERS, help="number of concurrent calls")
    ap.add_argument("--export-timeout", type=float, default=config.EXPORT_TIMEOUT_S,
                    help="seconds to wait for the kernel to create pwmX after export")
    ap.add_argument("--socket-mode", type=lambda s: int(s, 8), default=config.SOCKET_MODE,
                    help="octal permissions of the ipc socket file")
    ap.add_argument("--log-level", default=config.LOG_LEVEL)
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    log = setup_logging(args.log_level)

    if not os.path.isdir(args.sysfs_root):
        log.error("sysfs root does not exist: %s", args.sysfs_root)
        return 1

    registry = ChannelRegistry(SysfsBridge(args.sysfs_root), export_timeout=args.export_timeout)
    chips = registry.discover()
    log.info("PWM chips: %s", ", ".join(f"pwmchip{c} ({n})" for c, n in sorted(chips.items())) or "none")

    server = PwmServer(registry, args.endpoint, args.workers, args.socket_mode)

    def signal_handler(sig, frame):
        log.info("signal %d received, exiting...", sig)
        server.quit()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    server.serve_forever()
    # 退出时不 unexport 任何通道，内核状态保留
    return 1 if server.fatal else 0


if __name__ == "__main__":
    sys.exit(main())
