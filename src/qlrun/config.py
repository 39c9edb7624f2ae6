from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
import os
from pathlib import Path
import shlex
from typing import Mapping, TypeAlias
import tomllib

from qlrun.exceptions import ConfigError

DEFAULT_CONFIG_NAME = "qlrun.toml"
DEFAULT_ENGINE_COMMAND = "codeql"
DEFAULT_WORKING_SET = "default"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]

_ENV_OVERRIDES: dict[str, str] = {
    "QLRUN_ENGINE": "command",
    "QLRUN_MAX_RAM": "max_ram",
    "QLRUN_REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
    "QLRUN_SERIALIZE_PIPELINES": "serialize_pipelines",
}


@dataclass(frozen=True)
class EngineConfig:
    command: str = DEFAULT_ENGINE_COMMAND
    max_ram: int | None = None
    ram_options: tuple[str, ...] | None = None
    search_path: tuple[str, ...] = ()
    cwd: str | None = None
    working_set: str = DEFAULT_WORKING_SET
    serialize_pipelines: bool = False
    request_timeout_seconds: float = 0.0

    def command_parts(self) -> tuple[str, list[str]]:
        parts = shlex.split(self.command)
        if not parts:
            raise ConfigError("Engine command is empty")
        return parts[0], parts[1:]

    @property
    def request_timeout(self) -> float | None:
        """Local per-request timeout in seconds; None means requests wait for process exit."""
        if self.request_timeout_seconds > 0:
            return self.request_timeout_seconds
        return None


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def engine_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    data = load_config(root=root, config_path=config_path)
    section = data.get("engine", {})
    return section if isinstance(section, dict) else {}


def session_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    data = load_config(root=root, config_path=config_path)
    section = data.get("session", {})
    return section if isinstance(section, dict) else {}


def _normalize_name_list(value: TomlValue) -> list[str]:
    items: list[str] = []
    if value is None:
        return items
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            if isinstance(item, str):
                items.extend([part.strip() for part in item.split(",") if part.strip()])
    return [item for item in items if item]


def _as_bool(value: TomlValue) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _as_int(key: str, value: TomlValue) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}") from None
    if number < 0:
        raise ConfigError(f"{key} must not be negative, got {value!r}")
    return number


def _as_seconds(key: str, value: TomlValue) -> float:
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number of seconds, got {value!r}")
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number of seconds, got {value!r}") from None
    if seconds < 0:
        raise ConfigError(f"{key} must not be negative, got {value!r}")
    return seconds


def env_overrides(environ: Mapping[str, str] | None = None) -> TomlTable:
    source = os.environ if environ is None else environ
    overrides: TomlTable = {}
    for env_key, field_name in _ENV_OVERRIDES.items():
        raw = source.get(env_key, "").strip()
        if raw:
            overrides[field_name] = raw
    return overrides


def merge_payload(payload: TomlTable, defaults: TomlTable) -> TomlTable:
    merged = dict(defaults)
    for key, value in payload.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def resolve_engine_config(
    *,
    root: Path | None = None,
    config_path: Path | None = None,
    overrides: TomlTable | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Merge file sections, then environment, then explicit overrides."""
    merged = merge_payload(
        session_defaults(root=root, config_path=config_path),
        engine_defaults(root=root, config_path=config_path),
    )
    merged = merge_payload(env_overrides(environ), merged)
    merged = merge_payload(overrides or {}, merged)

    command = merged.get("command") or DEFAULT_ENGINE_COMMAND
    if not isinstance(command, str):
        raise ConfigError(f"command must be a string, got {command!r}")
    raw_ram_options = merged.get("ram_options")
    ram_options = (
        tuple(str(item) for item in raw_ram_options)
        if isinstance(raw_ram_options, list)
        else None
    )
    cwd = merged.get("cwd")
    working_set = merged.get("working_set") or DEFAULT_WORKING_SET
    return EngineConfig(
        command=command,
        max_ram=_as_int("max_ram", merged.get("max_ram")),
        ram_options=ram_options,
        search_path=tuple(_normalize_name_list(merged.get("search_path"))),
        cwd=str(cwd) if cwd else None,
        working_set=str(working_set),
        serialize_pipelines=_as_bool(merged.get("serialize_pipelines")),
        request_timeout_seconds=_as_seconds(
            "request_timeout_seconds", merged.get("request_timeout_seconds")
        ),
    )
