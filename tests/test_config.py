"""
Tests for the engine rules schema and YAML loader.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from context_engine.config import loader
from context_engine.config.loader import find_default_config, load_engine_rules
from context_engine.config.schema import (
    DEFAULT_RULES,
    BackendKind,
    EngineRules,
    StorageConfig,
)
from context_engine.exceptions import EngineConfigError


class TestSchema:

    def test_defaults(self):
        rules = EngineRules()
        assert rules.findings.max_key_facts == 10
        assert rules.findings.max_risks == 5
        assert rules.token_budgets.sequence_state == 500
        assert rules.token_budgets.per_step_ceiling == 3800
        assert rules.compact_when.references_exceed == 20
        assert rules.compact_when.strict_archive is False
        assert rules.max_summary_words == 100

    def test_key_fact_trigger_below_cap_rejected(self):
        with pytest.raises(ValidationError, match="key_facts_exceed"):
            EngineRules(
                findings={"max_key_facts": 12},
                compact_when={"key_facts_exceed": 10},
            )

    def test_caps_must_be_positive(self):
        with pytest.raises(ValidationError):
            EngineRules(findings={"max_risks": 0})

    def test_storage_config_defaults(self):
        config = StorageConfig(organization_id="org-1")
        assert config.backend == BackendKind.SUPABASE_STORAGE
        assert config.resolved_bucket == "skill-outputs"
        assert config.resolved_table == "skill_output_storage"

    def test_storage_config_requires_organization(self):
        with pytest.raises(ValidationError):
            StorageConfig(organization_id="")


class TestLoader:

    def test_repo_config_matches_defaults(self):
        assert find_default_config() is not None
        assert load_engine_rules() == DEFAULT_RULES

    def test_explicit_file(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("findings:\n  max_key_facts: 8\ncompact_when:\n  references_exceed: 12\n")

        rules = load_engine_rules(path)
        assert rules.findings.max_key_facts == 8
        assert rules.compact_when.references_exceed == 12
        assert rules.findings.max_action_items == 10

    def test_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / "rules.yaml"
        path.write_text("max_summary_words: 60\n")
        monkeypatch.setenv(loader.CONFIG_ENV_VAR, str(path))

        assert load_engine_rules().max_summary_words == 60

    def test_cached_per_path(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("max_summary_words: 60\n")
        assert load_engine_rules(path) is load_engine_rules(path)

        loader.clear_cache()
        assert load_engine_rules(path) is not None

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(EngineConfigError, match="Config not found") as exc_info:
            load_engine_rules(tmp_path / "nope.yaml")
        assert exc_info.value.config_path.endswith("nope.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(EngineConfigError, match="empty"):
            load_engine_rules(path)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("findings:\n  max_key_facts: -1\n")
        with pytest.raises(EngineConfigError, match="Invalid engine rules"):
            load_engine_rules(path)

    def test_inconsistent_trigger(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("findings:\n  max_key_facts: 15\n")
        with pytest.raises(EngineConfigError):
            load_engine_rules(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(EngineConfigError):
            load_engine_rules(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("findings: [unclosed\n")
        with pytest.raises(EngineConfigError, match="not valid YAML"):
            load_engine_rules(path)
