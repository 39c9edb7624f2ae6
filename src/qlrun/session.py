"""One editor-session's worth of engine state, owned explicitly."""

from __future__ import annotations

import asyncio
from collections import deque
import logging

from qlrun.config import EngineConfig
from qlrun.correlation import CorrelationRegistry
from qlrun.engine_tools import resource_options as resolve_resource_options
from qlrun.exceptions import (
    NotRegisteredError,
    ProcessError,
    QueryServerError,
    SpawnError,
)
from qlrun.json_types import RequestId
from qlrun.pipeline import (
    DoneCallback,
    LoadRequest,
    PipelineOutcome,
    PipelineState,
    QueryInvocation,
    QueryPipeline,
    ResultsLoader,
)
from qlrun.registration import Database, DatabaseRegistrationManager, RegistrationCallback
from qlrun.relay import EvaluationResult, ProgressRelay
from qlrun.reporting import EchoReporter, Reporter
from qlrun.schema import DatabaseEntry
from qlrun.supervisor import ProcessSupervisor, ResourceOptions, TransportFactory
from qlrun.transport import Transport

logger = logging.getLogger(__name__)

# Finished pipelines still waiting for their queryCompleted notification.
_AWAITING_EVALUATION_LIMIT = 16


def _discard_results(request: LoadRequest) -> None:
    logger.debug("No results loader configured; leaving %s on disk", request.artifact_path)


class Session:
    """Created once at the composition root and handed to anything issuing requests.

    With `config.serialize_pipelines` set, submissions queue behind the one
    in flight; otherwise pipelines overlap freely and callers must avoid that.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        reporter: Reporter | None = None,
        loader: ResultsLoader | None = None,
        registry: CorrelationRegistry | None = None,
        transport_factory: TransportFactory = Transport.start,
        resource_options: ResourceOptions = resolve_resource_options,
    ) -> None:
        self.config = config or EngineConfig()
        self.reporter = reporter or EchoReporter()
        self.loader = loader or _discard_results
        self.registry = registry or CorrelationRegistry()
        self.session_id = self.registry.next_session_id()
        self.relay = ProgressRelay(self.reporter)
        self.supervisor = ProcessSupervisor(
            self.config,
            self.relay,
            self.reporter,
            name=f"QueryServer[{self.session_id}]",
            transport_factory=transport_factory,
            resource_options=resource_options,
        )
        self.databases = DatabaseRegistrationManager(
            self.supervisor, self.registry, self.reporter
        )
        self.active: list[QueryPipeline] = []
        self._queued: deque[QueryPipeline] = deque()
        self._awaiting: deque[QueryPipeline] = deque(maxlen=_AWAITING_EVALUATION_LIMIT)
        self.relay.add_completion_listener(self._on_evaluation)
        self.supervisor.add_exit_listener(self._on_engine_exit)

    @property
    def current_database(self) -> Database | None:
        return self.databases.current

    @property
    def transport(self) -> Transport | None:
        return self.supervisor.transport

    def ensure_started(self) -> Transport:
        return self.supervisor.ensure_started()

    def stop(self) -> bool:
        queued, self._queued = list(self._queued), deque()
        self._awaiting.clear()
        stopped = self.supervisor.stop()
        for pipeline in queued:
            pipeline.fail(ProcessError(f"{self.supervisor.name} was stopped"))
        return stopped

    def register(
        self, database: Database, callback: RegistrationCallback | None = None
    ) -> RequestId:
        return self.databases.register(database, callback)

    def deregister(self, callback: RegistrationCallback | None = None) -> RequestId:
        return self.databases.deregister(callback)

    def submit(
        self, invocation: QueryInvocation, on_done: DoneCallback | None = None
    ) -> QueryPipeline:
        pipeline = QueryPipeline(
            invocation,
            self.registry,
            self.reporter,
            self.loader,
            on_done=on_done,
        )
        pipeline.add_done_callback(lambda _outcome: self._pipeline_done(pipeline))
        if self.config.serialize_pipelines and (self.active or self._queued):
            logger.debug("Queueing %s behind %d pipelines", invocation.query_path, len(self.active))
            self._queued.append(pipeline)
            return pipeline
        self._launch(pipeline)
        return pipeline

    def _launch(self, pipeline: QueryPipeline) -> None:
        self.active.append(pipeline)
        database = self.databases.current
        if database is None:
            pipeline.fail(
                NotRegisteredError("No database registered. Register a database before running a query")
            )
            return
        try:
            transport = self.supervisor.ensure_started()
        except SpawnError as exc:
            pipeline.fail(exc)
            return
        if self.databases.registered_on(transport):
            pipeline.start(transport, database)
            return
        # A respawned engine starts with nothing registered.
        logger.debug("Re-registering %s with %s", database.db_dir, transport.name)

        def _registered(error: QueryServerError | None, _databases: list[DatabaseEntry]) -> None:
            if error is not None:
                pipeline.fail(error)
            else:
                pipeline.start(transport, database)

        self.databases.register(database, _registered)

    def _pipeline_done(self, pipeline: QueryPipeline) -> None:
        if pipeline in self.active:
            self.active.remove(pipeline)
        if pipeline.awaiting_evaluation:
            self._awaiting.append(pipeline)
        if self._queued and not self.active:
            self._launch(self._queued.popleft())

    def _on_engine_exit(self, _error: ProcessError) -> None:
        # Completions from a respawned engine never belong to earlier runs.
        self._awaiting.clear()

    def _on_evaluation(self, result: EvaluationResult) -> None:
        """Attach a completion to the earliest run still missing one.

        The notification carries no query id and may arrive before or after
        the run reply, so runs are matched in the order they were issued.
        """
        candidates = [
            pipeline
            for pipeline in (*self._awaiting, *self.active)
            if pipeline.awaiting_evaluation
        ]
        if not candidates:
            logger.debug("queryCompleted with no pipeline awaiting it: %s", result)
            return
        pipeline = min(candidates, key=lambda item: item.evaluate_id or 0)
        pipeline.record_evaluation(result)
        if pipeline in self._awaiting:
            self._awaiting.remove(pipeline)

    async def _prepare(self) -> None:
        if not self.supervisor.prepared:
            await asyncio.get_running_loop().run_in_executor(None, self.supervisor.prepare)

    async def register_database(self, database: Database) -> list[DatabaseEntry]:
        await self._prepare()
        future: asyncio.Future[list[DatabaseEntry]] = asyncio.get_running_loop().create_future()
        self.register(database, _settle(future))
        return await future

    async def deregister_database(self) -> list[DatabaseEntry]:
        await self._prepare()
        future: asyncio.Future[list[DatabaseEntry]] = asyncio.get_running_loop().create_future()
        self.deregister(_settle(future))
        return await future

    async def execute(self, invocation: QueryInvocation) -> PipelineOutcome:
        await self._prepare()
        future: asyncio.Future[PipelineOutcome] = asyncio.get_running_loop().create_future()

        def _done(outcome: PipelineOutcome) -> None:
            if not future.done():
                future.set_result(outcome)

        self.submit(invocation, on_done=_done)
        return await future


def _settle(future: asyncio.Future[list[DatabaseEntry]]) -> RegistrationCallback:
    def _callback(error: QueryServerError | None, databases: list[DatabaseEntry]) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(databases)

    return _callback
