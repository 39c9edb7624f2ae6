"""Progress and completion notifications pushed by the engine."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Callable

from pydantic import ValidationError

from qlrun.exceptions import EvaluationFailure
from qlrun.json_types import JSONObject
from qlrun.methods import Method, ResultType
from qlrun.reporting import Reporter
from qlrun.schema import ProgressParams, QueryCompletedParams
from qlrun.transport import Handlers

logger = logging.getLogger(__name__)

# "Stage 3/12 - " style counters change too often to be worth showing.
_STAGE_COUNTER = re.compile(r"^Stage\s\d.*\d\s-\s*$")


@dataclass(frozen=True)
class EvaluationResult:
    result_type: ResultType
    message: str | None = None
    evaluation_time: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.result_type is ResultType.SUCCESS

    def failure(self) -> EvaluationFailure | None:
        if self.succeeded:
            return None
        return EvaluationFailure(
            self.message or self.result_type.default_message,
            result_type=int(self.result_type),
        )

    @classmethod
    def from_params(cls, params: QueryCompletedParams) -> EvaluationResult:
        return cls(
            result_type=params.outcome,
            message=params.message or None,
            evaluation_time=params.evaluation_time,
        )


CompletionListener = Callable[[EvaluationResult], None]


def is_noisy(message: str) -> bool:
    return _STAGE_COUNTER.match(message) is not None


class ProgressRelay:
    def __init__(self, reporter: Reporter) -> None:
        self.reporter = reporter
        self.last_message: str | None = None
        self._listeners: list[CompletionListener] = []

    def add_completion_listener(self, listener: CompletionListener) -> None:
        self._listeners.append(listener)

    def handlers(self) -> Handlers:
        return Handlers(
            notifications={
                Method.PROGRESS_UPDATED: self.on_progress,
                Method.QUERY_COMPLETED: self.on_query_completed,
            }
        )

    def on_progress(self, params: JSONObject) -> None:
        try:
            update = ProgressParams.model_validate(params)
        except ValidationError as exc:
            logger.debug("Ignoring malformed progress update: %s", exc)
            return
        message = update.message
        if message != self.last_message and not is_noisy(message):
            self.reporter.info(message)
        self.last_message = message

    def on_query_completed(self, params: JSONObject) -> None:
        try:
            completed = QueryCompletedParams.model_validate(params)
        except ValidationError as exc:
            logger.warning("Ignoring malformed queryCompleted notification: %s", exc)
            return
        result = EvaluationResult.from_params(completed)
        failure = result.failure()
        if failure is None:
            self.reporter.info(f"Evaluation time: {result.evaluation_time}")
        else:
            self.reporter.error(failure.message)
        for listener in list(self._listeners):
            listener(result)
