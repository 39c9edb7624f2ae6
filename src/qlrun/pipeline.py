"""Compile-then-run state machine for one query invocation.

    Submitted -> Compiling -> CompileFailed
                           -> Compiled -> Running -> RunFailed
                                                  -> ArtifactReady

A run request is only ever issued from Compiled, i.e. after a compile reply
carrying no error-severity diagnostics.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from pydantic import ValidationError

from qlrun.correlation import CorrelationRegistry
from qlrun.exceptions import (
    CompileError,
    ProcessError,
    QueryServerError,
    RegistrationError,
    RunError,
    SpawnError,
)
from qlrun.invariants import never
from qlrun.json_types import JSONValue
from qlrun.methods import Method
from qlrun.registration import Database
from qlrun.relay import EvaluationResult
from qlrun.reporting import Reporter
from qlrun.schema import (
    CompileQueryBody,
    CompileQueryParams,
    CompileQueryResult,
    CompileTarget,
    QueryToCheck,
    QueryToRun,
    QuickEvalPosition,
    RunQueriesBody,
    RunQueriesParams,
)
from qlrun.transport import Transport

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    SUBMITTED = "submitted"
    COMPILING = "compiling"
    COMPILE_FAILED = "compile_failed"
    COMPILED = "compiled"
    RUNNING = "running"
    RUN_FAILED = "run_failed"
    ARTIFACT_READY = "artifact_ready"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        PipelineState.COMPILE_FAILED,
        PipelineState.RUN_FAILED,
        PipelineState.ARTIFACT_READY,
    }
)


@dataclass(frozen=True)
class QuickEvalRegion:
    start_line: int
    start_column: int
    end_line: int
    end_column: int


@dataclass(frozen=True)
class QueryInvocation:
    """Everything one submission needs.

    `qlo_path` and `results_path` must be unique per invocation; the results
    file must not exist yet, since its presence is how a run is confirmed.
    """

    query_path: str
    dbscheme_path: str
    qlo_path: str
    results_path: str
    library_path: tuple[str, ...] = ()
    quick_eval: QuickEvalRegion | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)
    template_values: Mapping[str, Any] | None = None
    originating_buffer: object = None


@dataclass(frozen=True)
class LoadRequest:
    artifact_path: str
    originating_buffer: object
    database_path: str
    query_path: str
    rule_kind: str | None
    rule_id: str | None


class ResultsLoader(Protocol):
    def __call__(self, request: LoadRequest) -> None: ...


@dataclass
class PipelineOutcome:
    state: PipelineState
    errors: list[QueryServerError]
    load_request: LoadRequest | None = None
    evaluation: EvaluationResult | None = None

    @property
    def succeeded(self) -> bool:
        if self.state is not PipelineState.ARTIFACT_READY:
            return False
        return self.evaluation is None or self.evaluation.succeeded


DoneCallback = Callable[[PipelineOutcome], None]


def _already_surfaced(error: QueryServerError) -> bool:
    return isinstance(error, (ProcessError, SpawnError, RegistrationError))


class QueryPipeline:
    def __init__(
        self,
        invocation: QueryInvocation,
        registry: CorrelationRegistry,
        reporter: Reporter,
        loader: ResultsLoader,
        *,
        on_done: DoneCallback | None = None,
    ) -> None:
        self.invocation = invocation
        self.registry = registry
        self.reporter = reporter
        self.loader = loader
        self.state = PipelineState.SUBMITTED
        self.errors: list[QueryServerError] = []
        self.load_request: LoadRequest | None = None
        self.evaluation: EvaluationResult | None = None
        self.evaluate_id: int | None = None
        self.run_requests_issued = 0
        self._outcome: PipelineOutcome | None = None
        self._transport: Transport | None = None
        self._database: Database | None = None
        self._done_callbacks: list[DoneCallback] = []
        if on_done is not None:
            self._done_callbacks.append(on_done)

    @property
    def done(self) -> bool:
        return self.state.terminal

    @property
    def awaiting_evaluation(self) -> bool:
        """Run issued, and no `queryCompleted` attached yet."""
        return (
            self.evaluation is None
            and self.evaluate_id is not None
            and self.state in (PipelineState.RUNNING, PipelineState.ARTIFACT_READY)
        )

    @property
    def outcome(self) -> PipelineOutcome:
        """The terminal outcome once done; a snapshot before that.

        After the pipeline ends the same object is returned every time, so a
        late `queryCompleted` is visible to callers already holding it.
        """
        if self._outcome is not None:
            return self._outcome
        return PipelineOutcome(
            state=self.state,
            errors=list(self.errors),
            load_request=self.load_request,
            evaluation=self.evaluation,
        )

    def add_done_callback(self, callback: DoneCallback) -> None:
        if self.done:
            callback(self.outcome)
            return
        self._done_callbacks.append(callback)

    def compile_params(self) -> CompileQueryParams:
        invocation = self.invocation
        region = invocation.quick_eval
        if region is None:
            target = CompileTarget.whole_query()
        else:
            target = CompileTarget.region(
                QuickEvalPosition(
                    file_name=invocation.query_path,
                    line=region.start_line,
                    column=region.start_column,
                    end_line=region.end_line,
                    end_column=region.end_column,
                )
            )
        return CompileQueryParams(
            body=CompileQueryBody(
                query_to_check=QueryToCheck(
                    library_path=list(invocation.library_path),
                    dbscheme_path=invocation.dbscheme_path,
                    query_path=invocation.query_path,
                ),
                result_path=invocation.qlo_path,
                target=target,
            ),
            progress_id=self.registry.next_progress_id(),
        )

    def run_params(self, database: Database) -> RunQueriesParams:
        invocation = self.invocation
        template_values = (
            dict(invocation.template_values) if invocation.template_values else None
        )
        self.evaluate_id = self.registry.next_evaluation_id()
        return RunQueriesParams(
            body=RunQueriesBody(
                db=database.entry(),
                evaluate_id=self.evaluate_id,
                queries=[
                    QueryToRun(
                        results_path=invocation.results_path,
                        qlo=Path(invocation.qlo_path).absolute().as_uri(),
                        template_values=template_values,
                    )
                ],
                stop_on_error=False,
                use_sequence_hint=False,
            ),
            progress_id=self.registry.next_progress_id(),
        )

    def start(self, transport: Transport, database: Database) -> None:
        if self.state is not PipelineState.SUBMITTED:
            never("pipeline started twice", state=self.state.value)
        self._transport = transport
        self._database = database
        self.state = PipelineState.COMPILING
        self.reporter.info(f"Compiling query {self.invocation.query_path}")
        try:
            transport.send(
                Method.COMPILE_QUERY, self.compile_params().to_wire(), self._on_compiled
            )
        except ProcessError as exc:
            self._finish(PipelineState.COMPILE_FAILED, [exc])

    def fail(self, error: QueryServerError) -> None:
        """End a pipeline that could not get its compile request out."""
        if self.state is not PipelineState.SUBMITTED:
            never("only a submitted pipeline can be failed directly", state=self.state.value)
        self._finish(PipelineState.COMPILE_FAILED, [error])

    def record_evaluation(self, result: EvaluationResult) -> None:
        self.evaluation = result
        if self._outcome is not None:
            self._outcome.evaluation = result

    def _on_compiled(self, error: QueryServerError | None, result: JSONValue) -> None:
        if error is not None:
            if _already_surfaced(error):
                self._finish(PipelineState.COMPILE_FAILED, [error])
                return
            failure = CompileError(error.message)
            failure.__cause__ = error
            self._finish(PipelineState.COMPILE_FAILED, [failure])
            return
        if result is None:
            # No result means no confirmed compile; the artifact may not exist.
            self._finish(
                PipelineState.COMPILE_FAILED,
                [CompileError("Compile reply carried no result")],
            )
            return
        try:
            compiled = CompileQueryResult.model_validate(result)
        except ValidationError as exc:
            self._finish(
                PipelineState.COMPILE_FAILED,
                [CompileError(f"Unreadable compile reply: {exc}")],
            )
            return
        diagnostics = compiled.errors()
        if diagnostics:
            self._finish(
                PipelineState.COMPILE_FAILED,
                [CompileError(msg.message) for msg in diagnostics],
            )
            return
        self.state = PipelineState.COMPILED
        self._run()

    def _run(self) -> None:
        if self.state is not PipelineState.COMPILED:
            never("run issued before a successful compile", state=self.state.value)
        transport, database = self._transport, self._database
        if transport is None or database is None:
            never("compiled pipeline lost its transport", state=self.state.value)
        self.state = PipelineState.RUNNING
        self.reporter.info(f"Running query [{transport.pid}]")
        try:
            transport.send(
                Method.RUN_QUERIES, self.run_params(database).to_wire(), self._on_run
            )
        except ProcessError as exc:
            self._finish(PipelineState.RUN_FAILED, [exc])
            return
        self.run_requests_issued += 1

    def _on_run(self, error: QueryServerError | None, _result: JSONValue) -> None:
        if error is not None:
            if _already_surfaced(error):
                self._finish(PipelineState.RUN_FAILED, [error])
                return
            failure = RunError(f"{RunError.default_message} ({error.message})")
            failure.__cause__ = error
            self._finish(PipelineState.RUN_FAILED, [failure])
            return
        artifact = self.invocation.results_path
        if not Path(artifact).is_file():
            self._finish(PipelineState.RUN_FAILED, [RunError()])
            return
        database = self._database
        if database is None:
            never("running pipeline lost its database", state=self.state.value)
        metadata = self.invocation.metadata
        self.load_request = LoadRequest(
            artifact_path=artifact,
            originating_buffer=self.invocation.originating_buffer,
            database_path=database.directory,
            query_path=self.invocation.query_path,
            rule_kind=metadata.get("kind"),
            rule_id=metadata.get("id"),
        )
        self.state = PipelineState.ARTIFACT_READY
        try:
            self.loader(self.load_request)
        finally:
            self._notify_done()

    def _finish(self, state: PipelineState, errors: list[QueryServerError]) -> None:
        if not state.terminal:
            never("pipeline finished in a non-terminal state", state=state.value)
        self.state = state
        self.errors.extend(errors)
        for error in errors:
            if not _already_surfaced(error):
                self.reporter.error(error.message)
        logger.debug("%s ended in %s", self.invocation.query_path, state.value)
        self._notify_done()

    def _notify_done(self) -> None:
        callbacks, self._done_callbacks = self._done_callbacks, []
        if self._outcome is None:
            self._outcome = self.outcome
        outcome = self._outcome
        for callback in callbacks:
            callback(outcome)
