"""
Configuration loader for the Sequence Context Engine.

Loads the engine rules YAML, validates it against the Pydantic schema,
and caches the result per path so repeated managers share one object.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from context_engine.config.schema import EngineRules
from context_engine.exceptions import EngineConfigError

CONFIG_ENV_VAR = "CONTEXT_ENGINE_CONFIG"

# Module-level cache: resolved path (or "<defaults>") -> EngineRules
_loaded_rules: dict[str, EngineRules] = {}


def find_default_config() -> Optional[Path]:
    """Locate config/engine.yaml relative to the project root, if present."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        candidate = parent / "config" / "engine.yaml"
        if candidate.is_file():
            return candidate
    return None


def load_engine_rules(config_path: Optional[str | Path] = None) -> EngineRules:
    """
    Load and validate the engine rules.

    Resolution order: explicit config_path, then $CONTEXT_ENGINE_CONFIG,
    then config/engine.yaml. With none of these present the built-in
    defaults are returned.

    Raises:
        EngineConfigError: If an explicitly named file is missing, empty,
            or fails validation.
    """
    explicit = config_path or os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise EngineConfigError(
                f"Config not found: {path}", config_path=str(path)
            )
    else:
        path = find_default_config()
        if path is None:
            return _loaded_rules.setdefault("<defaults>", EngineRules())

    key = str(path.resolve())
    if key in _loaded_rules:
        return _loaded_rules[key]

    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise EngineConfigError(
            f"Config file is not valid YAML: {path}", config_path=str(path)
        ) from e

    if raw is None:
        raise EngineConfigError(
            f"Config file is empty: {path}", config_path=str(path)
        )

    try:
        rules = EngineRules(**raw)
    except (ValidationError, TypeError) as e:
        raise EngineConfigError(
            f"Invalid engine rules in {path}:\n{e}", config_path=str(path)
        ) from e

    _loaded_rules[key] = rules
    return rules


def clear_cache() -> None:
    """Clear the rules cache. Useful for testing."""
    _loaded_rules.clear()
