"""Tests for config module."""

import json
import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from config import (
    LoopSettings,
    Result,
    TierConfig,
    TierEscalationConfig,
    TierModels,
    load_tier_config,
    validate_tier_config,
)


class TestResult:
    def test_ok(self) -> None:
        result = Result.ok(42)
        assert result.success
        assert result.data == 42
        assert result.error is None

    def test_fail(self) -> None:
        result = Result.fail("boom", "NOT_FOUND")
        assert not result.success
        assert result.error == "boom"
        assert result.error_code == "NOT_FOUND"


class TestTierModels:
    def test_by_role_skips_unconfigured_roles(self) -> None:
        models = TierModels(artisan="gpt-4", critic="claude-opus-4")
        assert models.by_role() == {"artisan": "gpt-4", "critic": "claude-opus-4"}

    def test_artisan_required(self) -> None:
        with pytest.raises(ValidationError):
            TierModels(librarian="gpt-4")

    def test_empty_model_id_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TierModels(artisan="")


class TestTierConfig:
    def test_accepts_camel_case_and_field_name(self) -> None:
        by_alias = TierConfig.model_validate(
            {"name": "t", "mode": "simple", "maxIterations": 4, "models": {"artisan": "llama3"}}
        )
        by_name = TierConfig(name="t", mode="simple", max_iterations=4, models={"artisan": "llama3"})
        assert by_alias == by_name

    def test_iteration_bounds(self) -> None:
        for bad in (0, 101):
            with pytest.raises(ValidationError):
                TierConfig(name="t", mode="simple", max_iterations=bad, models={"artisan": "x"})

    def test_unknown_mode_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TierConfig(name="t", mode="turbo", max_iterations=1, models={"artisan": "x"})

    def test_frozen(self) -> None:
        tier = TierConfig(name="t", mode="simple", max_iterations=1, models={"artisan": "x"})
        with pytest.raises(ValidationError):
            tier.max_iterations = 5


class TestTierEscalationConfig:
    def test_global_alias(self, raw_tier_config: dict) -> None:
        raw_tier_config["global"] = {"maxTotalCostUsd": 3.5, "auditDbPath": "/tmp/a.db"}
        config = TierEscalationConfig.model_validate(raw_tier_config)
        assert config.global_settings.max_total_cost_usd == 3.5
        assert config.global_settings.audit_db_path == "/tmp/a.db"
        assert config.global_settings.max_total_duration_minutes is None

    def test_defaults_without_global(self, tier_config: TierEscalationConfig) -> None:
        assert [t.name for t in tier_config.tiers] == ["local", "mid", "frontier"]
        assert tier_config.global_settings.max_total_cost_usd is None

    def test_empty_tier_list_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TierEscalationConfig.model_validate({"tiers": []})

    def test_duplicate_names_rejected(self, raw_tier_config: dict) -> None:
        raw_tier_config["tiers"][1]["name"] = "local"
        with pytest.raises(ValidationError, match="duplicate tier name: local"):
            TierEscalationConfig.model_validate(raw_tier_config)


class TestLoopSettings:
    def test_defaults(self) -> None:
        settings = LoopSettings()
        assert settings.max_cost_usd == 2.0
        assert settings.max_duration_minutes == 15.0
        assert settings.entropy_threshold == 3
        assert settings.context_reset_frequency == 1
        assert any("sk-ant" in p for p in settings.log_redact_patterns)

    def test_entropy_threshold_bounds(self) -> None:
        with pytest.raises(ValidationError):
            LoopSettings(entropy_threshold=1)
        with pytest.raises(ValidationError):
            LoopSettings(entropy_threshold=21)

    def test_sparse_reset_frequency_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="config"):
            settings = LoopSettings(context_reset_frequency=5)
        assert settings.context_reset_frequency == 5
        assert "context_reset_frequency=5" in caplog.text

    def test_default_reset_frequency_does_not_warn(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="config"):
            LoopSettings()
        assert caplog.text == ""


class TestValidateTierConfig:
    def test_valid_config_has_no_issues(self, raw_tier_config: dict) -> None:
        assert validate_tier_config(raw_tier_config) == []

    def test_reports_path_of_each_issue(self, raw_tier_config: dict) -> None:
        del raw_tier_config["tiers"][0]["models"]["artisan"]
        raw_tier_config["tiers"][2]["mode"] = "turbo"

        issues = validate_tier_config(raw_tier_config)
        assert len(issues) == 2
        assert issues[0].startswith("tiers.0.models.artisan: ")
        assert issues[1].startswith("tiers.2.mode: ")

    def test_non_mapping_input(self) -> None:
        issues = validate_tier_config(["not", "a", "config"])
        assert issues
        assert issues[0].startswith("<root>: ")


class TestLoadTierConfig:
    def test_load_valid_config(self, tier_config_file: Path) -> None:
        result = load_tier_config(tier_config_file)
        assert result.success
        assert result.data is not None
        assert len(result.data.tiers) == 3
        assert result.data.tiers[1].models.librarian == "gemini-1.5-flash"

    def test_missing_file(self, tmp_path: Path) -> None:
        result = load_tier_config(tmp_path / "nope.json")
        assert not result.success
        assert result.error_code == "NOT_FOUND"

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "tiers.json"
        path.write_text("not json {{{", encoding="utf-8")
        result = load_tier_config(path)
        assert not result.success
        assert result.error_code == "JSON_ERROR"

    def test_schema_violation_lists_issues(self, tmp_path: Path, raw_tier_config: dict) -> None:
        raw_tier_config["tiers"][0]["maxIterations"] = 0
        path = tmp_path / "tiers.json"
        path.write_text(json.dumps(raw_tier_config), encoding="utf-8")

        result = load_tier_config(path)
        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"
        assert "tiers.0.maxIterations" in result.error
