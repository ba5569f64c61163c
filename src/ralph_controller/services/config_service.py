"""Build a RalphConfig from a JSON file, RALPH_* environment variables and overrides."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ralph_controller.constants import ENV_PREFIX
from ralph_controller.models.config import RalphConfig
from ralph_controller.models.multi_model import ModelSpec, MultiModelConfig

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Configuration file or values are invalid."""


# Config key table: (json_dotted_path, env_var suffix, RalphConfig field, type)
# Precedence (highest to lowest): overrides > env vars > JSON file > model defaults.
_CONFIG_KEYS: List[Tuple[str, str, str, type]] = [
    ("target_directory",                       "TARGET_DIRECTORY",            "target_directory",             str),
    ("provider",                               "PROVIDER",                    "provider",                     str),
    ("model",                                  "MODEL",                       "model",                        str),
    ("executable_path",                        "EXECUTABLE_PATH",             "executable_path",              str),
    ("prompt_file",                            "PROMPT_FILE",                 "prompt_file",                  str),
    ("plan_file",                              "PLAN_FILE",                   "plan_file",                    str),
    ("agents_file",                            "AGENTS_FILE",                 "agents_file",                  str),
    ("specs_directory",                        "SPECS_DIRECTORY",             "specs_directory",              str),
    ("limits.max_iterations",                  "MAX_ITERATIONS",              "max_iterations",               int),
    ("limits.iteration_delay",                 "ITERATION_DELAY",             "iteration_delay",              float),
    ("limits.max_calls_per_hour",              "MAX_CALLS_PER_HOUR",          "max_calls_per_hour",           int),
    ("limits.cost_per_hour",                   "COST_PER_HOUR",               "cost_per_hour",                float),
    ("limits.force_stop_grace_period",         "FORCE_STOP_GRACE_PERIOD",     "force_stop_grace_period",      float),
    ("limits.provider_rate_limit_fallback",    "PROVIDER_RATE_LIMIT_FALLBACK", "provider_rate_limit_fallback", float),
    ("circuit_breaker.no_progress_threshold",  "NO_PROGRESS_THRESHOLD",       "no_progress_threshold",        int),
    ("circuit_breaker.same_error_threshold",   "SAME_ERROR_THRESHOLD",        "same_error_threshold",         int),
    ("analyzer.completion_signal_threshold",   "COMPLETION_SIGNAL_THRESHOLD", "completion_signal_threshold",  int),
    ("analyzer.test_only_loop_threshold",      "TEST_ONLY_LOOP_THRESHOLD",    "test_only_loop_threshold",     int),
    ("features.enable_circuit_breaker",        "ENABLE_CIRCUIT_BREAKER",      "enable_circuit_breaker",       bool),
    ("features.enable_response_analyzer",      "ENABLE_RESPONSE_ANALYZER",    "enable_response_analyzer",     bool),
    ("features.auto_exit_on_completion",       "AUTO_EXIT_ON_COMPLETION",     "auto_exit_on_completion",      bool),
    ("features.enable_final_verification",     "ENABLE_FINAL_VERIFICATION",   "enable_final_verification",    bool),
]

# multi_model has no env var mapping
VALID_TOP_LEVEL_KEYS = {path.split(".")[0] for path, _, _, _ in _CONFIG_KEYS} | {"multi_model"}

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _get_json_value(data: dict, dotted_key: str) -> Optional[Any]:
    """Retrieve a value from nested JSON using dotted key (e.g., 'limits.max_iterations')."""
    obj: Any = data
    for part in dotted_key.split("."):
        if not isinstance(obj, dict) or part not in obj:
            return None
        obj = obj[part]
    return obj


def _coerce(value: Any, typ: type, source: str) -> Any:
    if typ is bool:
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_VALUES
        return bool(value)
    try:
        return typ(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {source}: {value!r}") from e


def _parse_env(env_var: str, typ: type) -> Optional[Any]:
    """Read env var; return None if unset or empty string (treated as unset)."""
    raw = os.environ.get(env_var)
    if raw is None or raw == "":
        return None
    return _coerce(raw, typ, env_var)


def _read_json_file(path: str) -> dict:
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    unknown = set(data.keys()) - VALID_TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(
            f"Unknown config keys: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(sorted(VALID_TOP_LEVEL_KEYS))}"
        )
    return data


def parse_multi_model(data: Dict[str, Any]) -> MultiModelConfig:
    """Build a MultiModelConfig from its JSON form.

    Entries of ``models`` may be ``provider:model`` strings or full objects.
    """
    if not isinstance(data, dict):
        raise ConfigError("multi_model must be a JSON object")

    payload = dict(data)
    models = []
    for entry in payload.get("models", []):
        if isinstance(entry, str):
            try:
                models.append(ModelSpec.parse(entry))
            except ValueError as e:
                raise ConfigError(str(e)) from e
        else:
            models.append(entry)
    payload["models"] = models

    try:
        config = MultiModelConfig.model_validate(payload)
    except ValidationError as e:
        raise ConfigError(f"Invalid multi_model configuration: {e}") from e

    if len(config.models) < config.required_models:
        raise ConfigError(
            f"Strategy '{config.strategy.value}' needs more models than the "
            f"{len(config.models)} configured"
        )
    if not config.is_valid:
        raise ConfigError(
            f"verifier_index {config.verification.verifier_index} is out of range "
            f"for {len(config.models)} models"
        )
    return config


def load_config(
    path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None
) -> RalphConfig:
    """Load config from an optional JSON file, env vars and explicit overrides.

    Empty env vars are treated as unset, as are None values in ``overrides``.
    Fields left unset keep the RalphConfig defaults.
    """
    json_data = _read_json_file(path) if path else {}

    values: Dict[str, Any] = {}
    for json_path, env_suffix, field, typ in _CONFIG_KEYS:
        json_val = _get_json_value(json_data, json_path)
        if json_val is not None:
            values[field] = _coerce(json_val, typ, json_path)
        env_val = _parse_env(f"{ENV_PREFIX}{env_suffix}", typ)
        if env_val is not None:
            values[field] = env_val

    if "multi_model" in json_data and json_data["multi_model"] is not None:
        values["multi_model"] = parse_multi_model(json_data["multi_model"])

    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    values["target_directory"] = os.path.abspath(values.get("target_directory") or os.getcwd())

    try:
        config = RalphConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.debug(f"Loaded config for {config.target_directory} (provider={config.provider.value})")
    return config
