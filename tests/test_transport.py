from __future__ import annotations

import asyncio
import logging

import pytest

from qlrun.exceptions import ProcessError, RequestTimeoutError, ResponseError, SpawnError
from qlrun.methods import Method
from qlrun.transport import Handlers, MessageKind, Transport, TransportState, classify
from tests.engine_helpers import FakeProcess, make_transport, rpc_message, written_messages


@pytest.mark.parametrize(
    ("message", "kind"),
    [
        ({"id": 1, "result": {}}, MessageKind.RESPONSE),
        ({"id": 1, "error": {"code": 1}}, MessageKind.RESPONSE),
        ({"method": "ql/progressUpdated", "params": {}}, MessageKind.NOTIFICATION),
        ({"id": 5, "method": "window/showMessage"}, MessageKind.SERVER_REQUEST),
        ({"jsonrpc": "2.0"}, MessageKind.INVALID),
    ],
)
def test_classify(message: dict, kind: MessageKind) -> None:
    assert classify(message) is kind


def test_send_writes_framed_request_and_resolves_by_id() -> None:
    transport, process = make_transport()
    results: list[tuple] = []
    first = transport.send(Method.COMPILE_QUERY, {"a": 1}, lambda e, r: results.append(("first", e, r)))
    second = transport.send("evaluation/runQueries", None, lambda e, r: results.append(("second", e, r)))

    sent = written_messages(process)
    assert [m["id"] for m in sent] == [first, second]
    assert sent[0] == {"jsonrpc": "2.0", "id": first, "method": "compilation/compileQuery", "params": {"a": 1}}
    assert "params" not in sent[1]

    # Replies arrive out of issuance order; matching is by id only.
    transport.data_received(rpc_message({"id": second, "result": "two"}))
    transport.data_received(rpc_message({"id": first, "result": "one"}))
    assert results == [("second", None, "two"), ("first", None, "one")]
    assert len(transport.pending) == 0


def test_error_response_resolves_with_response_error() -> None:
    transport, _ = make_transport()
    results: list = []
    request_id = transport.send(Method.RUN_QUERIES, {}, lambda e, r: results.append((e, r)))
    transport.data_received(
        rpc_message({"id": request_id, "error": {"code": -32000, "message": "db locked", "data": [1]}})
    )
    [(error, result)] = results
    assert isinstance(error, ResponseError)
    assert error.message == "db locked"
    assert error.code == -32000
    assert error.data == [1]
    assert result is None


def test_notifications_route_to_known_handlers_and_ignore_others() -> None:
    seen: list[dict] = []
    transport, process = make_transport(
        handlers=Handlers(notifications={Method.PROGRESS_UPDATED: seen.append})
    )
    transport.data_received(
        rpc_message({"method": "ql/progressUpdated", "params": {"message": "hi"}})
        + rpc_message({"method": "ql/somethingNew", "params": {"x": 1}})
        + rpc_message({"method": "evaluation/queryCompleted", "params": {"resultType": 0}})
    )
    assert seen == [{"message": "hi"}]
    assert written_messages(process) == []


def test_unhandled_server_request_gets_method_not_found() -> None:
    transport, process = make_transport()
    transport.data_received(rpc_message({"id": 77, "method": "workspace/configuration", "params": {}}))
    [reply] = written_messages(process)
    assert reply["id"] == 77
    assert reply["error"]["code"] == -32601
    assert "workspace/configuration" in reply["error"]["message"]


def test_handled_server_request_is_answered_with_result() -> None:
    handlers = Handlers(requests={Method.PROGRESS_UPDATED: lambda params: {"echo": params}})
    transport, process = make_transport(handlers=handlers)
    transport.data_received(rpc_message({"id": "s1", "method": "ql/progressUpdated", "params": {"m": 1}}))
    [reply] = written_messages(process)
    assert reply == {"jsonrpc": "2.0", "id": "s1", "result": {"echo": {"m": 1}}}


def test_failing_server_request_handler_answers_internal_error() -> None:
    def _boom(_params: dict) -> dict:
        raise ValueError("no can do")

    transport, process = make_transport(handlers=Handlers(requests={Method.QUERY_COMPLETED: _boom}))
    transport.data_received(rpc_message({"id": 3, "method": "evaluation/queryCompleted"}))
    [reply] = written_messages(process)
    assert reply["error"]["code"] == -32603
    assert reply["error"]["message"] == "no can do"


def test_handler_failure_does_not_stop_later_messages() -> None:
    def _boom(_params: dict) -> None:
        raise RuntimeError("bad handler")

    transport, _ = make_transport(handlers=Handlers(notifications={Method.PROGRESS_UPDATED: _boom}))
    results: list = []
    request_id = transport.send(Method.COMPILE_QUERY, {}, lambda e, r: results.append(r))
    transport.data_received(
        rpc_message({"method": "ql/progressUpdated", "params": {}})
        + rpc_message({"id": request_id, "result": {"messages": []}})
    )
    assert results == [{"messages": []}]


def test_connection_lost_fails_pending_and_notifies_exit_once() -> None:
    exits: list[ProcessError] = []
    transport, process = make_transport(on_exit=exits.append)
    results: list = []
    transport.send(Method.COMPILE_QUERY, {}, lambda e, r: results.append(e))
    transport.send(Method.REGISTER_DATABASES, {}, lambda e, r: results.append(e))
    process.returncode = 2

    transport.connection_lost(None)
    transport.connection_lost(None)

    assert transport.state is TransportState.CLOSED
    assert len(results) == 2
    assert all(isinstance(error, ProcessError) for error in results)
    assert results[0].returncode == 2
    assert len(exits) == 1
    assert "exited with code 2" in exits[0].message
    with pytest.raises(ProcessError):
        transport.send(Method.COMPILE_QUERY, {}, lambda e, r: None)


def test_stop_kills_and_fails_pending_without_exit_notification() -> None:
    exits: list = []
    transport, process = make_transport(on_exit=exits.append)
    results: list = []
    transport.send(Method.RUN_QUERIES, {}, lambda e, r: results.append(e))
    transport.stop()
    transport.stop()
    assert process.killed
    assert process.stdin.closed
    assert transport.closed
    assert len(results) == 1 and isinstance(results[0], ProcessError)
    assert exits == []


def test_write_failure_closes_transport_and_fails_request() -> None:
    exits: list = []
    transport, process = make_transport(on_exit=exits.append)
    process.stdin.broken = True
    results: list = []
    transport.send(Method.COMPILE_QUERY, {}, lambda e, r: results.append(e))
    assert transport.closed
    assert isinstance(results[0], ProcessError)
    assert "I/O error" in results[0].message
    assert len(exits) == 1


def test_malformed_frame_kills_process() -> None:
    exits: list = []
    transport, process = make_transport(on_exit=exits.append)
    transport.data_received(b"Content-Length: 3\r\n\r\n[1]")
    assert process.killed
    assert transport.closed
    assert len(exits) == 1


def test_responses_after_close_are_dropped() -> None:
    transport, _ = make_transport()
    results: list = []
    request_id = transport.send(Method.COMPILE_QUERY, {}, lambda e, r: results.append((e, r)))
    transport.stop()
    transport.data_received(rpc_message({"id": request_id, "result": {}}))
    assert len(results) == 1


def test_stderr_lines_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    transport, _ = make_transport(name="QueryServer[7]")
    with caplog.at_level(logging.DEBUG, logger="qlrun.transport"):
        transport.stderr_received(b"[INFO] starting\n[INFO] par")
        transport.stderr_received(b"tial line\n")
    lines = [record.getMessage() for record in caplog.records]
    assert "QueryServer[7]: [INFO] starting" in lines
    assert "QueryServer[7]: [INFO] partial line" in lines


def test_start_wraps_spawn_failures() -> None:
    def _factory(*_args, **_kwargs):
        raise FileNotFoundError("no such file: codeql")

    with pytest.raises(SpawnError, match="codeql"):
        Transport.start("codeql", ["execute"], process_factory=_factory)


def test_start_passes_command_line_and_environment() -> None:
    captured: dict = {}

    def _factory(argv, **kwargs):
        captured["argv"] = argv
        captured.update(kwargs)
        return FakeProcess()

    async def _start() -> Transport:
        return Transport.start(
            "codeql",
            ["execute", "query-server"],
            env={"CODEQL_X": "1"},
            cwd="/work",
            process_factory=_factory,
        )

    transport = asyncio.run(_start())
    assert captured["argv"] == ["codeql", "execute", "query-server"]
    assert captured["env"] == {"CODEQL_X": "1"}
    assert captured["cwd"] == "/work"
    assert transport.pid == 4242


def test_local_request_timeout_fails_request() -> None:
    async def _scenario() -> list:
        transport = Transport(FakeProcess(), request_timeout=0.01)
        transport.watch(asyncio.get_running_loop())
        results: list = []
        request_id = transport.send(Method.COMPILE_QUERY, {}, lambda e, r: results.append(e))
        await asyncio.sleep(0.05)
        transport.data_received(rpc_message({"id": request_id, "result": {}}))
        return results

    results = asyncio.run(_scenario())
    assert len(results) == 1
    assert isinstance(results[0], RequestTimeoutError)


def test_no_local_timeout_by_default() -> None:
    async def _scenario() -> list:
        transport = Transport(FakeProcess())
        transport.watch(asyncio.get_running_loop())
        results: list = []
        transport.send(Method.COMPILE_QUERY, {}, lambda e, r: results.append(e))
        await asyncio.sleep(0.02)
        assert len(transport.pending) == 1
        transport.stop()
        return results

    results = asyncio.run(_scenario())
    assert isinstance(results[0], ProcessError)


def test_frames_before_a_bad_frame_are_still_dispatched() -> None:
    exits: list = []
    transport, process = make_transport(on_exit=exits.append)
    results: list = []
    request_id = transport.send(Method.RUN_QUERIES, {}, lambda e, r: results.append((e, r)))
    transport.data_received(
        rpc_message({"id": request_id, "result": {"ok": True}}) + b"Content-Length: 3\r\n\r\n[1]"
    )
    assert results == [(None, {"ok": True})]
    assert process.killed
    assert transport.closed
    assert len(exits) == 1


def test_kill_on_a_running_loop_does_not_wait() -> None:
    async def _scenario() -> FakeProcess:
        transport, process = make_transport()
        transport.watch(asyncio.get_running_loop())
        transport.stop()
        return process

    process = asyncio.run(_scenario())
    assert process.killed
    assert not process.waited


def test_partial_message_is_logged_when_output_ends(caplog: pytest.LogCaptureFixture) -> None:
    transport, _ = make_transport(name="QueryServer[3]")
    with caplog.at_level(logging.DEBUG, logger="qlrun.transport"):
        transport.data_received(b"Content-Length: 40\r\n\r\n{\"id\"")
        transport.connection_lost(None)
    assert any("discarding 5 bytes" in record.getMessage() for record in caplog.records)
