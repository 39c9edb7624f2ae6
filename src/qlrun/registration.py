"""Which database the engine currently has registered."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable

from pydantic import ValidationError

from qlrun.config import DEFAULT_WORKING_SET
from qlrun.correlation import CorrelationRegistry
from qlrun.exceptions import (
    NotRegisteredError,
    ProcessError,
    QueryServerError,
    RegistrationError,
)
from qlrun.json_types import JSONValue, RequestId
from qlrun.methods import Method
from qlrun.reporting import Reporter
from qlrun.schema import DatabaseEntry, DatabasesBody, DatabasesParams, RegisteredDatabases
from qlrun.supervisor import ProcessSupervisor
from qlrun.transport import Transport

logger = logging.getLogger(__name__)

RegistrationCallback = Callable[[QueryServerError | None, list[DatabaseEntry]], None]


@dataclass(frozen=True)
class Database:
    """A database directory and the dataset folder the engine evaluates against."""

    path: str
    dataset_folder: str | None = None
    working_set: str = DEFAULT_WORKING_SET

    @property
    def db_dir(self) -> str:
        return self.dataset_folder or self.path

    @property
    def directory(self) -> str:
        return self.path if self.path.endswith("/") else f"{self.path}/"

    def entry(self) -> DatabaseEntry:
        return DatabaseEntry(db_dir=self.db_dir, working_set=self.working_set)


def _passthrough(error: QueryServerError) -> bool:
    # Process exits are surfaced once by the supervisor.
    return isinstance(error, ProcessError)


class DatabaseRegistrationManager:
    """Registers and deregisters databases with the engine.

    Overlapping calls are not serialized; callers keep at most one in flight.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        registry: CorrelationRegistry,
        reporter: Reporter,
    ) -> None:
        self.supervisor = supervisor
        self.registry = registry
        self.reporter = reporter
        self.current: Database | None = None
        self.engine: Transport | None = None

    def registered_on(self, transport: Transport) -> bool:
        """Whether the current database was registered with this very engine process."""
        return self.current is not None and self.engine is transport

    def _params(self, database: Database) -> DatabasesParams:
        return DatabasesParams(
            body=DatabasesBody(databases=[database.entry()]),
            progress_id=self.registry.next_progress_id(),
        )

    def register(
        self,
        database: Database,
        callback: RegistrationCallback | None = None,
    ) -> RequestId:
        transport = self.supervisor.ensure_started()
        self.reporter.info(f"Registering database {database.db_dir}")

        def _done(error: QueryServerError | None, result: JSONValue) -> None:
            if error is not None:
                self._fail(f"Error registering database {database.db_dir}", error, callback)
                return
            try:
                registered = RegisteredDatabases.model_validate(result or {})
            except ValidationError as exc:
                self._fail(f"Error registering database {database.db_dir}", exc, callback)
                return
            self.current = database
            self.engine = transport
            confirmed = (
                registered.registered_databases[0].db_dir
                if registered.registered_databases
                else database.db_dir
            )
            self.reporter.info(f"Successfully registered {confirmed}")
            if callback is not None:
                callback(None, registered.registered_databases)

        return transport.send(Method.REGISTER_DATABASES, self._params(database).to_wire(), _done)

    def deregister(self, callback: RegistrationCallback | None = None) -> RequestId:
        database = self.current
        if database is None:
            error = NotRegisteredError()
            self.reporter.error(error.message)
            raise error
        transport = self.supervisor.ensure_started()
        self.reporter.info(f"Unregistering database {database.db_dir}")

        def _done(error: QueryServerError | None, result: JSONValue) -> None:
            if error is not None:
                self._fail(f"Error deregistering database {database.db_dir}", error, callback)
                return
            try:
                remaining = RegisteredDatabases.model_validate(result or {})
            except ValidationError as exc:
                self._fail(f"Error deregistering database {database.db_dir}", exc, callback)
                return
            if not remaining.registered_databases:
                if self.current == database:
                    self.current = None
                    self.engine = None
                self.reporter.info(f"Successfully deregistered {database.db_dir}")
            else:
                logger.debug(
                    "%d databases still registered after deregistering %s",
                    len(remaining.registered_databases),
                    database.db_dir,
                )
            if callback is not None:
                callback(None, remaining.registered_databases)

        return transport.send(Method.DEREGISTER_DATABASES, self._params(database).to_wire(), _done)

    def _fail(
        self,
        context: str,
        cause: QueryServerError | ValidationError,
        callback: RegistrationCallback | None,
    ) -> None:
        if isinstance(cause, QueryServerError) and _passthrough(cause):
            error: QueryServerError = cause
        else:
            detail = cause.message if isinstance(cause, QueryServerError) else str(cause)
            error = RegistrationError(f"{context}: {detail}")
            error.__cause__ = cause
            self.reporter.error(error.message)
        if callback is not None:
            callback(error, [])
