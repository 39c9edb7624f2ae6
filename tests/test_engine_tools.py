from __future__ import annotations

import json
import subprocess

import pytest

from qlrun.config import EngineConfig
from qlrun.engine_tools import (
    bqrs_info,
    resolve_library_path,
    resolve_metadata,
    resolve_ram,
    resource_options,
)
from qlrun.exceptions import EngineToolError


class FakeRunner:
    def __init__(self, stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        self.stdout = stdout
        self.returncode = returncode
        self.stderr = stderr
        self.calls: list[list[str]] = []

    def __call__(self, argv, **kwargs) -> subprocess.CompletedProcess:
        self.calls.append(list(argv))
        return subprocess.CompletedProcess(argv, self.returncode, self.stdout, self.stderr)


def test_resolve_ram_passes_max_ram() -> None:
    runner = FakeRunner(json.dumps(["-J-Xmx4096M", "--off-heap-ram=2048"]))
    options = resolve_ram(EngineConfig(max_ram=4096), runner=runner)
    assert options == ["-J-Xmx4096M", "--off-heap-ram=2048"]
    assert runner.calls == [["codeql", "resolve", "ram", "--format=json", "-M", "4096"]]


def test_resolve_ram_jvm_only() -> None:
    runner = FakeRunner(json.dumps(["-J-Xmx4096M", "--off-heap-ram=2048"]))
    assert resolve_ram(EngineConfig(), jvm_only=True, runner=runner) == ["-J-Xmx4096M"]


def test_resource_options_prefers_configured_options() -> None:
    runner = FakeRunner(json.dumps(["-J-Xmx1M"]))
    config = EngineConfig(ram_options=("-J-Xmx9G",))
    assert resource_options(config, runner=runner) == ["-J-Xmx9G"]
    assert runner.calls == []


def test_library_path_uses_search_path() -> None:
    payload = {"libraryPath": ["/ql/lib"], "dbscheme": "/ql/lib/x.dbscheme"}
    runner = FakeRunner(json.dumps(payload))
    config = EngineConfig(search_path=("/ql/packs",))
    assert resolve_library_path(config, "/q/Q.ql", runner=runner) == payload
    assert runner.calls[0][1:] == [
        "resolve",
        "library-path",
        "--format=json",
        "--query=/q/Q.ql",
        "--search-path=/ql/packs",
    ]


def test_metadata_values_are_strings() -> None:
    runner = FakeRunner(json.dumps({"id": "js/xss", "precision": 1, "tags": None}))
    assert resolve_metadata(EngineConfig(), "/q/Q.ql", runner=runner) == {
        "id": "js/xss",
        "precision": "1",
    }


def test_bqrs_info() -> None:
    runner = FakeRunner(json.dumps({"resultSets": []}))
    assert bqrs_info(EngineConfig(), "/tmp/r.bqrs", runner=runner) == {"resultSets": []}
    assert runner.calls[0][-1] == "/tmp/r.bqrs"


def test_nonzero_exit_raises_with_stderr() -> None:
    runner = FakeRunner(returncode=2, stderr="A fatal error occurred\n")
    with pytest.raises(EngineToolError, match="A fatal error occurred"):
        resolve_ram(EngineConfig(), runner=runner)


def test_invalid_json_raises() -> None:
    with pytest.raises(EngineToolError, match="invalid JSON"):
        resolve_ram(EngineConfig(), runner=FakeRunner("not json"))


def test_wrong_shape_raises() -> None:
    with pytest.raises(EngineToolError):
        resolve_ram(EngineConfig(), runner=FakeRunner(json.dumps({"a": 1})))


def test_missing_binary_raises() -> None:
    def _runner(*_args, **_kwargs):
        raise FileNotFoundError("codeql")

    with pytest.raises(EngineToolError, match="Could not run codeql"):
        resolve_ram(EngineConfig(), runner=_runner)
