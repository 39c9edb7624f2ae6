"""Failure taxonomy for query-server orchestration."""

from __future__ import annotations

from qlrun.json_types import JSONValue


class QueryServerError(RuntimeError):
    """Base for every failure surfaced by the client.

    `default_message` is used when the remote side supplies no text.
    """

    default_message = "Query server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class SpawnError(QueryServerError):
    default_message = "Could not start the query server"


class ProcessError(QueryServerError):
    """The engine process exited or its pipes failed."""

    default_message = "Query server process terminated"

    def __init__(
        self,
        message: str | None = None,
        *,
        returncode: int | None = None,
    ) -> None:
        super().__init__(message)
        self.returncode = returncode


class RequestTimeoutError(QueryServerError):
    default_message = "Query server request timed out"


class ResponseError(QueryServerError):
    """A JSON-RPC error object returned in place of a result."""

    default_message = "Query server returned an error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: int | None = None,
        data: JSONValue = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.data = data

    @classmethod
    def from_payload(cls, payload: JSONValue) -> ResponseError:
        if not isinstance(payload, dict):
            return cls(str(payload) if payload is not None else None)
        code = payload.get("code")
        message = payload.get("message")
        return cls(
            str(message) if message else None,
            code=code if isinstance(code, int) else None,
            data=payload.get("data"),
        )


class CompileError(QueryServerError):
    default_message = "Query compilation failed"


class RunError(QueryServerError):
    default_message = "Query run failed. Database may be locked by a different query server"


class EvaluationFailure(QueryServerError):
    """Non-success `resultType` reported by `evaluation/queryCompleted`."""

    def __init__(self, message: str | None = None, *, result_type: int) -> None:
        super().__init__(message)
        self.result_type = result_type


class RegistrationError(QueryServerError):
    default_message = "Database registration failed"


class NotRegisteredError(QueryServerError):
    default_message = "No database registered"


class ConfigError(QueryServerError):
    default_message = "Invalid qlrun configuration"


class EngineToolError(QueryServerError):
    default_message = "Engine command failed"


class NeverThrown(RuntimeError):
    """Raised by `never()`; reaching it is a bug in the caller, not an engine failure."""

    def __init__(self, message: str, *, env: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.env = dict(env or {})
