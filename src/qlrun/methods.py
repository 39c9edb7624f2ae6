"""Closed vocabularies of the query-server protocol."""

from __future__ import annotations

from enum import Enum, IntEnum


class Method(str, Enum):
    COMPILE_QUERY = "compilation/compileQuery"
    RUN_QUERIES = "evaluation/runQueries"
    REGISTER_DATABASES = "evaluation/registerDatabases"
    DEREGISTER_DATABASES = "evaluation/deregisterDatabases"
    PROGRESS_UPDATED = "ql/progressUpdated"
    QUERY_COMPLETED = "evaluation/queryCompleted"

    @classmethod
    def parse(cls, name: object) -> Method | None:
        """Return the known method for a wire name, or None for anything else."""
        if not isinstance(name, str):
            return None
        try:
            return cls(name)
        except ValueError:
            return None


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, code: object) -> Severity:
        if isinstance(code, bool) or not isinstance(code, int):
            return cls.UNKNOWN
        return _SEVERITY_BY_CODE.get(code, cls.UNKNOWN)


_SEVERITY_BY_CODE: dict[int, Severity] = {
    0: Severity.ERROR,
    1: Severity.WARNING,
}


class ResultType(IntEnum):
    SUCCESS = 0
    OTHER_ERROR = 1
    OUT_OF_MEMORY = 2
    TIMEOUT = 3
    CANCELLED = 4

    @property
    def default_message(self) -> str:
        return _RESULT_TYPE_MESSAGES[self]


_RESULT_TYPE_MESSAGES: dict[ResultType, str] = {
    ResultType.SUCCESS: "Evaluation succeeded",
    ResultType.OTHER_ERROR: "ERROR: Other",
    ResultType.OUT_OF_MEMORY: "ERROR: OOM",
    ResultType.TIMEOUT: "ERROR: Timeout",
    ResultType.CANCELLED: "ERROR: Query was cancelled",
}
