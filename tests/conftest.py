"""Shared pytest fixtures for the tier escalation test suite.

Non-fixture helpers (record builders, scripted attempt callbacks) are in helpers.py.
"""

import json
import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from audit_sink import SqliteAuditSink  # noqa: E402
from config import TierEscalationConfig  # noqa: E402
from models import WorkingContext  # noqa: E402


RAW_TIER_CONFIG = {
    "tiers": [
        {
            "name": "local",
            "mode": "simple",
            "maxIterations": 2,
            "models": {"artisan": "llama3"},
        },
        {
            "name": "mid",
            "mode": "full",
            "maxIterations": 3,
            "models": {"artisan": "gpt-4", "librarian": "gemini-1.5-flash", "critic": "gpt-4"},
        },
        {
            "name": "frontier",
            "mode": "full",
            "maxIterations": 2,
            "models": {"artisan": "claude-opus-4", "librarian": "claude-sonnet-4.5"},
        },
    ],
}


@pytest.fixture
def raw_tier_config() -> dict:
    return json.loads(json.dumps(RAW_TIER_CONFIG))


@pytest.fixture
def tier_config(raw_tier_config: dict) -> TierEscalationConfig:
    return TierEscalationConfig.model_validate(raw_tier_config)


@pytest.fixture
def tier_config_file(tmp_path: Path, raw_tier_config: dict) -> Path:
    path = tmp_path / "tiers.json"
    path.write_text(json.dumps(raw_tier_config), encoding="utf-8")
    return path


@pytest.fixture
def working_context(tmp_path: Path) -> WorkingContext:
    return WorkingContext(
        objective="Make the parser handle empty input",
        working_directory=str(tmp_path),
        test_command="pytest -q",
    )


@pytest.fixture
def sqlite_sink(tmp_path: Path):
    sink = SqliteAuditSink(tmp_path / "audit" / "tiers.db")
    yield sink
    sink.close()
