from __future__ import annotations

from pathlib import Path

from qlrun.framing import MessageDecoder, encode_message
from qlrun.pipeline import LoadRequest, QueryInvocation
from qlrun.transport import Transport


class RecordingReporter:
    def __init__(self) -> None:
        self.infos: list[str] = []
        self.errors: list[str] = []

    def info(self, message: str) -> None:
        self.infos.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


class RecordingLoader:
    def __init__(self) -> None:
        self.requests: list[LoadRequest] = []

    def __call__(self, request: LoadRequest) -> None:
        self.requests.append(request)


class RecordingPipe:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.closed = False
        self.broken = False

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ValueError("write to closed pipe")
        if self.broken:
            raise BrokenPipeError("engine went away")
        self.chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.stdin = RecordingPipe()
        self.stdout = None
        self.stderr = None
        self.returncode: int | None = None
        self.killed = False
        self.waited = False

    def poll(self) -> int | None:
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int | None:
        self.waited = True
        return self.returncode


def rpc_message(payload: dict) -> bytes:
    return encode_message({"jsonrpc": "2.0", **payload})


def written_messages(process: FakeProcess) -> list[dict]:
    return MessageDecoder().feed(b"".join(process.stdin.chunks))


def make_transport(**kwargs) -> tuple[Transport, FakeProcess]:
    process = FakeProcess()
    return Transport(process, **kwargs), process


class FakeEngine:
    """Transport factory handing out transports over fake processes."""

    def __init__(self) -> None:
        self.transports: list[Transport] = []
        self.commands: list[list[str]] = []
        self.spawn_error: Exception | None = None

    def __call__(self, command: str, args, **kwargs) -> Transport:
        if self.spawn_error is not None:
            raise self.spawn_error
        self.commands.append([command, *args])
        process = FakeProcess(pid=1000 + len(self.transports))
        transport = Transport(
            process,
            handlers=kwargs.get("handlers"),
            on_exit=kwargs.get("on_exit"),
            name=kwargs.get("name", "QueryServer"),
            request_timeout=kwargs.get("request_timeout"),
        )
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> Transport:
        return self.transports[-1]

    def requests(self, method: str | None = None, *, transport: Transport | None = None) -> list[dict]:
        target = transport or self.latest
        return [
            message
            for message in written_messages(target.process)
            if "method" in message and (method is None or message["method"] == method)
        ]

    def reply(self, request: dict, result=None, *, error: dict | None = None) -> None:
        payload: dict = {"id": request["id"]}
        if error is not None:
            payload["error"] = error
        else:
            payload["result"] = result
        self.latest.data_received(rpc_message(payload))

    def notify(self, method: str, params: dict) -> None:
        self.latest.data_received(rpc_message({"method": method, "params": params}))

    def crash(self, returncode: int = 1) -> None:
        transport = self.latest
        transport.process.returncode = returncode
        transport.connection_lost(None)


def make_invocation(tmp_path: Path, name: str = "Q.ql", **overrides) -> QueryInvocation:
    fields = dict(
        query_path=str(tmp_path / name),
        dbscheme_path=str(tmp_path / "semmlecode.dbscheme"),
        qlo_path=str(tmp_path / "out" / f"{name}.qlo"),
        results_path=str(tmp_path / "out" / f"{name}.bqrs"),
        library_path=(str(tmp_path / "lib"),),
        metadata={"id": "js/test-rule", "kind": "problem"},
    )
    fields.update(overrides)
    return QueryInvocation(**fields)


def write_results(invocation: QueryInvocation) -> None:
    path = Path(invocation.results_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"bqrs")
