from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT / "src", ROOT):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from qlrun.config import EngineConfig
from qlrun.session import Session
from tests.engine_helpers import FakeEngine, RecordingLoader, RecordingReporter


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def loader() -> RecordingLoader:
    return RecordingLoader()


@pytest.fixture
def make_session(engine: FakeEngine, reporter: RecordingReporter, loader: RecordingLoader):
    def _make(config: EngineConfig | None = None) -> Session:
        return Session(
            config or EngineConfig(),
            reporter=reporter,
            loader=loader,
            transport_factory=engine,
            resource_options=lambda _config: ["-J-Xmx1024M"],
        )

    return _make
