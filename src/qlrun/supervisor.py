"""Lifecycle of the one engine process a session talks to."""

from __future__ import annotations

import logging
from typing import Callable

from qlrun.config import EngineConfig
from qlrun.engine_tools import resource_options as resolve_resource_options
from qlrun.exceptions import EngineToolError, ProcessError, SpawnError
from qlrun.relay import ProgressRelay
from qlrun.reporting import Reporter
from qlrun.transport import Transport

logger = logging.getLogger(__name__)

ENGINE_ARGS: tuple[str, ...] = (
    "execute",
    "query-server",
    "--require-db-registration",
    "-v",
    "--log-to-stderr",
)

TransportFactory = Callable[..., Transport]
ResourceOptions = Callable[[EngineConfig], list[str]]
ExitListener = Callable[[ProcessError], None]


class ProcessSupervisor:
    def __init__(
        self,
        config: EngineConfig,
        relay: ProgressRelay,
        reporter: Reporter,
        *,
        name: str = "QueryServer",
        transport_factory: TransportFactory = Transport.start,
        resource_options: ResourceOptions = resolve_resource_options,
    ) -> None:
        self.config = config
        self.relay = relay
        self.reporter = reporter
        self.name = name
        self.transport: Transport | None = None
        self.spawn_count = 0
        self._transport_factory = transport_factory
        self._resource_options = resource_options
        self._exit_listeners: list[ExitListener] = []
        self._extra_args: list[str] | None = None

    @property
    def running(self) -> bool:
        return self.transport is not None and not self.transport.closed

    def add_exit_listener(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)

    @property
    def prepared(self) -> bool:
        return self._extra_args is not None

    def prepare(self) -> list[str]:
        """Resolve resource options once per session.

        Resolution shells out to the engine and blocks; async callers run this
        in an executor before the first spawn so the event loop never waits on it.
        """
        if self._extra_args is None:
            try:
                self._extra_args = list(self._resource_options(self.config))
            except EngineToolError as exc:
                self.reporter.error(f"ERROR: Could not resolve RAM options: {exc.message}")
                self._extra_args = []
        return self._extra_args

    def command_line(self) -> tuple[str, list[str]]:
        command, base_args = self.config.command_parts()
        if self._extra_args is None:
            logger.debug("%s: resolving resource options on the calling thread", self.name)
        return command, [*base_args, *ENGINE_ARGS, *self.prepare()]

    def ensure_started(self) -> Transport:
        """Return the live transport, spawning the engine on first use or after an exit."""
        if self.transport is not None and not self.transport.closed:
            return self.transport
        self.transport = None
        self.reporter.info("Starting query server")
        command, args = self.command_line()
        try:
            transport = self._transport_factory(
                command,
                args,
                cwd=self.config.cwd,
                handlers=self.relay.handlers(),
                on_exit=self._handle_exit,
                name=self.name,
                request_timeout=self.config.request_timeout,
            )
        except SpawnError as exc:
            self.reporter.error(exc.message)
            raise
        self.spawn_count += 1
        self.transport = transport
        return transport

    def stop(self) -> bool:
        transport = self.transport
        if transport is None:
            return False
        self.transport = None
        in_flight = len(transport.pending)
        logger.debug("%s: stopping pid %s", self.name, transport.pid)
        transport.stop()
        if in_flight:
            self.reporter.error(f"{self.name} was stopped with {in_flight} requests in flight")
        return True

    def _handle_exit(self, error: ProcessError) -> None:
        if self.transport is not None and self.transport.closed:
            self.transport = None
        self.reporter.error(error.message)
        for listener in list(self._exit_listeners):
            listener(error)
