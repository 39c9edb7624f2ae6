"""qlrun package root."""

from qlrun.exceptions import (
    CompileError,
    EvaluationFailure,
    NotRegisteredError,
    ProcessError,
    QueryServerError,
    RegistrationError,
    RunError,
    SpawnError,
)
from qlrun.pipeline import PipelineState, QueryInvocation, QuickEvalRegion
from qlrun.registration import Database
from qlrun.session import Session

__all__ = [
    "__version__",
    "CompileError",
    "Database",
    "EvaluationFailure",
    "NotRegisteredError",
    "PipelineState",
    "ProcessError",
    "QueryInvocation",
    "QueryServerError",
    "QuickEvalRegion",
    "RegistrationError",
    "RunError",
    "Session",
    "SpawnError",
]

__version__ = "0.1.0"
