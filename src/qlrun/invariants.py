"""Invariant markers for states the orchestration must never reach."""

from __future__ import annotations

from typing import NoReturn

from qlrun.exceptions import NeverThrown


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as intentionally unreachable.

    The env payload is attached to the exception for diagnostics only.
    """
    raise NeverThrown(reason or "unreachable code path reached", env=env)
