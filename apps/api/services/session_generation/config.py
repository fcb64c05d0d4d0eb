"""
Rules configuration.

Two YAML files ship in rules/:
- generation_rules.yaml: fitness weights, success model, genetic rules
- template_library.yaml: baseline templates, validated later by the catalog

Each file overrides the defaults from constants.py key by key. Files are
read once per process; reload() rereads them.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .constants import FITNESS_WEIGHTS, GENETIC_DEFAULTS, SUCCESS_MODEL_BIAS, SUCCESS_MODEL_WEIGHTS

logger = logging.getLogger(__name__)

RULE_FILES = {
    "generation_rules": "generation_rules.yaml",
    "template_library": "template_library.yaml",
}


def _defaults() -> Dict[str, Dict[str, Any]]:
    return {
        "generation_rules": {
            "fitness_weights": dict(FITNESS_WEIGHTS),
            "success_model": {"weights": dict(SUCCESS_MODEL_WEIGHTS), "bias": SUCCESS_MODEL_BIAS},
            "genetic": dict(GENETIC_DEFAULTS),
        },
        "template_library": {"templates": []},
    }


def _read(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning(f"Rules file {path.name} missing, using defaults")
        return {}
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Ignoring unreadable rules file {path.name}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.error(f"Ignoring rules file {path.name}: top level is not a mapping")
        return {}
    return data


class ConfigService:
    """
    Usage:
        weights = ConfigService.get_fitness_weights()
        ConfigService.reload()
    """

    rules_dir: Path = Path(__file__).parent / "rules"
    _sections: Optional[Dict[str, Dict[str, Any]]] = None
    _lock = threading.Lock()

    @classmethod
    def _loaded(cls) -> Dict[str, Dict[str, Any]]:
        with cls._lock:
            if cls._sections is None:
                sections = _defaults()
                for name, filename in RULE_FILES.items():
                    sections[name].update(_read(cls.rules_dir / filename))
                cls._sections = sections
            return cls._sections

    @classmethod
    def reload(cls):
        with cls._lock:
            cls._sections = None
        cls._loaded()
        logger.info(f"Rules reloaded from {cls.rules_dir}")

    @classmethod
    def get_fitness_weights(cls) -> Dict[str, float]:
        return dict(cls._loaded()["generation_rules"].get("fitness_weights") or {})

    @classmethod
    def get_success_model(cls) -> Dict[str, Any]:
        return dict(cls._loaded()["generation_rules"].get("success_model") or {})

    @classmethod
    def get_genetic_rules(cls) -> Dict[str, Any]:
        return dict(cls._loaded()["generation_rules"].get("genetic") or {})

    @classmethod
    def get_template_library(cls) -> List[Dict[str, Any]]:
        """Raw baseline template definitions."""
        return list(cls._loaded()["template_library"].get("templates") or [])
