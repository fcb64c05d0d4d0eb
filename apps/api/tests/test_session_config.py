"""
Tests for the rules configuration loader.
"""
import logging

import pytest

from services.session_generation.config import ConfigService
from services.session_generation.constants import FITNESS_WEIGHTS, GENETIC_DEFAULTS


@pytest.fixture
def rules_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(ConfigService, "rules_dir", tmp_path)
    return tmp_path


def write_rules(rules_dir, text, name="generation_rules.yaml"):
    (rules_dir / name).write_text(text, encoding="utf-8")
    ConfigService.reload()


class TestShippedRules:

    def test_success_model(self):
        model = ConfigService.get_success_model()

        assert model["bias"] == -1.4
        assert model["weights"]["duration_fit"] == 1.2

    def test_template_library_present(self):
        assert len(ConfigService.get_template_library()) > 0


class TestOverrides:

    def test_defaults_without_files(self, rules_dir, caplog):
        with caplog.at_level(logging.WARNING):
            ConfigService.reload()

        assert ConfigService.get_fitness_weights() == FITNESS_WEIGHTS
        assert ConfigService.get_genetic_rules() == GENETIC_DEFAULTS
        assert ConfigService.get_template_library() == []
        assert "generation_rules.yaml missing" in caplog.text

    def test_file_replaces_named_sections_only(self, rules_dir):
        write_rules(rules_dir, "fitness_weights:\n  success: 0.7\n  constraints: 0.2\n  efficiency: 0.1\n")

        assert ConfigService.get_fitness_weights() == {"success": 0.7, "constraints": 0.2, "efficiency": 0.1}
        assert ConfigService.get_genetic_rules() == GENETIC_DEFAULTS

    def test_unparseable_file_ignored(self, rules_dir, caplog):
        with caplog.at_level(logging.ERROR):
            write_rules(rules_dir, "fitness_weights: [unclosed\n")

        assert ConfigService.get_fitness_weights() == FITNESS_WEIGHTS
        assert "unreadable rules file" in caplog.text

    def test_non_mapping_file_ignored(self, rules_dir, caplog):
        with caplog.at_level(logging.ERROR):
            write_rules(rules_dir, "- success\n- constraints\n")

        assert ConfigService.get_fitness_weights() == FITNESS_WEIGHTS
        assert "not a mapping" in caplog.text

    def test_getters_return_copies(self, rules_dir):
        ConfigService.reload()
        ConfigService.get_fitness_weights()["success"] = 0.0

        assert ConfigService.get_fitness_weights() == FITNESS_WEIGHTS


class TestReload:

    def test_files_read_once_until_reload(self, rules_dir):
        write_rules(rules_dir, "genetic:\n  generations: 4\n")
        (rules_dir / "generation_rules.yaml").write_text("genetic:\n  generations: 8\n", encoding="utf-8")

        assert ConfigService.get_genetic_rules() == {"generations": 4}

        ConfigService.reload()

        assert ConfigService.get_genetic_rules() == {"generations": 8}
