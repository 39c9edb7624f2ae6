"""One-shot engine subcommands that answer with JSON on stdout."""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Callable, Sequence

from qlrun.config import EngineConfig
from qlrun.exceptions import EngineToolError
from qlrun.json_types import JSONObject, JSONValue

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


def _run_json(
    config: EngineConfig,
    args: Sequence[str],
    *,
    runner: Runner = subprocess.run,
) -> JSONValue:
    command, base_args = config.command_parts()
    argv = [command, *base_args, *args]
    logger.debug("running %s", " ".join(argv))
    try:
        proc = runner(
            argv,
            capture_output=True,
            text=True,
            check=False,
            cwd=config.cwd,
        )
    except OSError as exc:
        raise EngineToolError(f"Could not run {command}: {exc}") from exc
    if proc.returncode != 0:
        detail = (proc.stderr or "").strip()
        raise EngineToolError(
            f"{' '.join(args[:2])} failed (exit {proc.returncode}): {detail}"
        )
    try:
        return json.loads(proc.stdout)
    except json.JSONDecodeError as exc:
        raise EngineToolError(f"{' '.join(args[:2])} returned invalid JSON: {exc}") from exc


def resolve_ram(
    config: EngineConfig,
    *,
    jvm_only: bool = False,
    runner: Runner = subprocess.run,
) -> list[str]:
    args = ["resolve", "ram", "--format=json"]
    if config.max_ram is not None:
        args.extend(["-M", str(config.max_ram)])
    decoded = _run_json(config, args, runner=runner)
    if not isinstance(decoded, list):
        raise EngineToolError("resolve ram did not return a list of options")
    options = [str(item) for item in decoded]
    if jvm_only:
        # --off-heap-ram is not accepted by every subcommand.
        options = [item for item in options if item.startswith("-J")]
    return options


def resource_options(config: EngineConfig, *, runner: Runner = subprocess.run) -> list[str]:
    """Options appended to the query-server command line."""
    if config.ram_options is not None:
        return list(config.ram_options)
    return resolve_ram(config, runner=runner)


def resolve_library_path(
    config: EngineConfig,
    query_path: str,
    *,
    runner: Runner = subprocess.run,
) -> JSONObject:
    args = ["resolve", "library-path", "--format=json", f"--query={query_path}"]
    args.extend(f"--search-path={path}" for path in config.search_path if path)
    decoded = _run_json(config, args, runner=runner)
    if not isinstance(decoded, dict):
        raise EngineToolError("resolve library-path did not return an object")
    return decoded


def resolve_metadata(
    config: EngineConfig,
    query_path: str,
    *,
    runner: Runner = subprocess.run,
) -> dict[str, str]:
    decoded = _run_json(
        config, ["resolve", "metadata", "--format=json", query_path], runner=runner
    )
    if not isinstance(decoded, dict):
        raise EngineToolError("resolve metadata did not return an object")
    return {str(key): str(value) for key, value in decoded.items() if value is not None}


def bqrs_info(
    config: EngineConfig,
    artifact_path: str,
    *,
    runner: Runner = subprocess.run,
) -> JSONObject:
    decoded = _run_json(
        config, ["bqrs", "info", "--format=json", artifact_path], runner=runner
    )
    if not isinstance(decoded, dict):
        raise EngineToolError("bqrs info did not return an object")
    return decoded
