"""JSON-RPC transport over a spawned process's standard streams.

Every inbound message is handled on the event loop that watches the process
pipes. Three kinds are distinguished by which of ``id`` and ``method`` they
carry: responses resolve a pending request, notifications go to a handler
bound to a known `Method`, and server-initiated requests always get a reply.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
import logging
import os
import subprocess
from typing import Callable, Mapping, Sequence

from lsprotocol.types import ErrorCodes

from qlrun.correlation import PendingRequests, ResponseCallback
from qlrun.exceptions import (
    ProcessError,
    RequestTimeoutError,
    ResponseError,
    SpawnError,
)
from qlrun.framing import FramingError, MessageDecoder, encode_message
from qlrun.json_types import JSONObject, JSONValue, RequestId
from qlrun.methods import Method

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[JSONObject], None]
RequestHandler = Callable[[JSONObject], JSONValue]
ExitCallback = Callable[[ProcessError], None]
ProcessFactory = Callable[..., subprocess.Popen]

_READ_SIZE = 65536
_KILL_WAIT_SECONDS = 1.0


class MessageKind(Enum):
    RESPONSE = "response"
    NOTIFICATION = "notification"
    SERVER_REQUEST = "server_request"
    INVALID = "invalid"


def classify(message: JSONObject) -> MessageKind:
    has_id = message.get("id") is not None
    has_method = isinstance(message.get("method"), str)
    if has_id and has_method:
        return MessageKind.SERVER_REQUEST
    if has_id:
        return MessageKind.RESPONSE
    if has_method:
        return MessageKind.NOTIFICATION
    return MessageKind.INVALID


class TransportState(Enum):
    RUNNING = "running"
    CLOSED = "closed"


@dataclass
class Handlers:
    notifications: dict[Method, NotificationHandler] = field(default_factory=dict)
    requests: dict[Method, RequestHandler] = field(default_factory=dict)


def _params_of(message: JSONObject) -> JSONObject:
    params = message.get("params")
    return params if isinstance(params, dict) else {}


class Transport:
    def __init__(
        self,
        process: subprocess.Popen,
        *,
        handlers: Handlers | None = None,
        on_exit: ExitCallback | None = None,
        name: str = "QueryServer",
        request_timeout: float | None = None,
    ) -> None:
        self.process = process
        self.handlers = handlers or Handlers()
        self.name = name
        self._on_exit = on_exit
        self._request_timeout = request_timeout if request_timeout and request_timeout > 0 else None
        self._pending = PendingRequests()
        self._decoder = MessageDecoder()
        self._stderr_tail = b""
        self._state = TransportState.RUNNING
        self._loop: asyncio.AbstractEventLoop | None = None
        self._watched: list[int] = []

    @classmethod
    def start(
        cls,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        handlers: Handlers | None = None,
        on_exit: ExitCallback | None = None,
        name: str = "QueryServer",
        request_timeout: float | None = None,
        process_factory: ProcessFactory = subprocess.Popen,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Transport:
        argv = [command, *args]
        try:
            process = process_factory(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=dict(env) if env is not None else None,
                cwd=cwd,
                bufsize=0,
            )
        except (OSError, ValueError) as exc:
            raise SpawnError(f"Could not start {command}: {exc}") from exc
        transport = cls(
            process,
            handlers=handlers,
            on_exit=on_exit,
            name=name,
            request_timeout=request_timeout,
        )
        transport.watch(loop or asyncio.get_running_loop())
        logger.debug("%s: started pid %s: %s", name, transport.pid, " ".join(argv))
        return transport

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is TransportState.CLOSED

    @property
    def pending(self) -> PendingRequests:
        return self._pending

    def watch(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        stdout, stderr = self.process.stdout, self.process.stderr
        if stdout is not None:
            fd = stdout.fileno()
            loop.add_reader(fd, self._on_stdout_readable, fd)
            self._watched.append(fd)
        if stderr is not None:
            fd = stderr.fileno()
            loop.add_reader(fd, self._on_stderr_readable, fd)
            self._watched.append(fd)

    def send(
        self,
        method: Method | str,
        params: JSONObject | None,
        callback: ResponseCallback,
    ) -> RequestId:
        """Issue a request; `callback(error, result)` fires exactly once later."""
        if self.closed:
            raise ProcessError(f"{self.name} is not running")
        name = method.value if isinstance(method, Method) else method
        request = self._pending.add(name, callback)
        if self._request_timeout is not None and self._loop is not None:
            request.timer = self._loop.call_later(
                self._request_timeout, self._expire, request.request_id
            )
        message: JSONObject = {"jsonrpc": "2.0", "id": request.request_id, "method": name}
        if params is not None:
            message["params"] = params
        self._write(message)
        return request.request_id

    def send_notification(self, method: Method | str, params: JSONObject | None) -> None:
        if self.closed:
            raise ProcessError(f"{self.name} is not running")
        name = method.value if isinstance(method, Method) else method
        message: JSONObject = {"jsonrpc": "2.0", "method": name}
        if params is not None:
            message["params"] = params
        self._write(message)

    def stop(self) -> None:
        """Kill the process; pending requests fail, the exit callback does not fire."""
        if self.closed:
            return
        self._close_pipes()
        self._kill()
        self._pending.fail_all(ProcessError(f"{self.name} was stopped"))

    def data_received(self, data: bytes) -> None:
        if self.closed:
            return
        failure: FramingError | None = None
        try:
            messages = self._decoder.feed(data)
        except FramingError as exc:
            # Frames ahead of the bad one are still delivered.
            messages, failure = exc.decoded, exc
        for message in messages:
            if self.closed:
                break
            try:
                self._dispatch(message)
            except Exception:
                logger.exception("%s: handler failed for %r", self.name, message.get("method") or message.get("id"))
        if failure is not None and not self.closed:
            logger.error("%s: %s", self.name, failure)
            self._kill()
            self.connection_lost(failure)

    def stderr_received(self, data: bytes) -> None:
        *lines, self._stderr_tail = (self._stderr_tail + data).split(b"\n")
        for line in lines:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug("%s: %s", self.name, text)

    def connection_lost(self, exc: BaseException | None) -> None:
        if self.closed:
            return
        self._close_pipes()
        if self._decoder.pending_bytes:
            logger.debug("%s: discarding %d bytes of a partial message", self.name, self._decoder.pending_bytes)
        returncode = self.process.poll()
        if exc is not None:
            error = ProcessError(f"{self.name} I/O error: {exc}", returncode=returncode)
        elif returncode is not None:
            error = ProcessError(f"{self.name} exited with code {returncode}", returncode=returncode)
        else:
            error = ProcessError(f"{self.name} closed its output stream")
        self._pending.fail_all(error)
        if self._on_exit is not None:
            self._on_exit(error)

    def _dispatch(self, message: JSONObject) -> None:
        kind = classify(message)
        if kind is MessageKind.RESPONSE:
            request_id = message["id"]
            if "error" in message and message["error"] is not None:
                self._pending.resolve(request_id, ResponseError.from_payload(message["error"]))
            else:
                self._pending.resolve(request_id, None, message.get("result"))
        elif kind is MessageKind.NOTIFICATION:
            method = Method.parse(message["method"])
            handler = self.handlers.notifications.get(method) if method is not None else None
            if handler is None:
                logger.debug("%s: ignoring notification %s", self.name, message["method"])
                return
            handler(_params_of(message))
        elif kind is MessageKind.SERVER_REQUEST:
            self._answer_server_request(message)
        else:
            logger.warning("%s: dropping malformed message %r", self.name, message)

    def _answer_server_request(self, message: JSONObject) -> None:
        request_id = message["id"]
        method = Method.parse(message["method"])
        handler = self.handlers.requests.get(method) if method is not None else None
        if handler is None:
            self._write_error(request_id, ErrorCodes.MethodNotFound, f"Method not found: {message['method']}")
            return
        try:
            result = handler(_params_of(message))
        except Exception as exc:
            logger.exception("%s: request handler for %s failed", self.name, message["method"])
            self._write_error(request_id, ErrorCodes.InternalError, str(exc))
            return
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _write_error(self, request_id: RequestId, code: ErrorCodes, text: str) -> None:
        self._write(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": int(code), "message": text},
            }
        )

    def _write(self, message: JSONObject) -> None:
        stdin = self.process.stdin
        try:
            if stdin is None:
                raise BrokenPipeError("stdin is not a pipe")
            stdin.write(encode_message(message))
            stdin.flush()
        except (OSError, ValueError) as exc:
            self.connection_lost(exc)

    def _expire(self, request_id: RequestId) -> None:
        self._pending.resolve(
            request_id,
            RequestTimeoutError(f"{self.name}: no response after {self._request_timeout}s"),
        )

    def _on_stdout_readable(self, fd: int) -> None:
        try:
            data = os.read(fd, _READ_SIZE)
        except OSError as exc:
            self.connection_lost(exc)
            return
        if not data:
            self.connection_lost(None)
            return
        self.data_received(data)

    def _on_stderr_readable(self, fd: int) -> None:
        try:
            data = os.read(fd, _READ_SIZE)
        except OSError:
            data = b""
        if not data:
            self._unwatch(fd)
            return
        self.stderr_received(data)

    def _unwatch(self, fd: int) -> None:
        if fd in self._watched:
            self._watched.remove(fd)
            if self._loop is not None:
                self._loop.remove_reader(fd)

    def _close_pipes(self) -> None:
        self._state = TransportState.CLOSED
        for fd in list(self._watched):
            self._unwatch(fd)
        for stream in (self.process.stdin, self.process.stdout, self.process.stderr):
            if stream is not None:
                with contextlib.suppress(OSError):
                    stream.close()

    def _kill(self) -> None:
        if self.process.poll() is not None:
            return
        self.process.kill()
        if self._loop is not None and not self._loop.is_closed():
            # Reap later instead of waiting on the event loop.
            self._loop.call_later(_KILL_WAIT_SECONDS, self._reap)
            return
        try:
            self.process.wait(timeout=_KILL_WAIT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("%s: pid %s did not exit after kill", self.name, self.pid)

    def _reap(self) -> None:
        if self.process.poll() is None:
            logger.warning("%s: pid %s did not exit after kill", self.name, self.pid)
