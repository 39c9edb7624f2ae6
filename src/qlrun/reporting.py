"""User-facing status output."""

from __future__ import annotations

import logging
from typing import Protocol

import typer

logger = logging.getLogger(__name__)


class Reporter(Protocol):
    def info(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class EchoReporter:
    """Status to stdout, errors to stderr."""

    def info(self, message: str) -> None:
        logger.debug("info: %s", message)
        typer.echo(message)

    def error(self, message: str) -> None:
        logger.debug("error: %s", message)
        typer.echo(message, err=True)
