"""
stepseal - Configuration

Loads config from:
  1. Defaults
  2. Global user config (CLI --config or ~/.stepseal/config.yaml,
     $STEPSEAL_HOME/config.yaml when set)
  3. Workspace override (<workspace>/.stepseal.yaml)
  4. Environment variables (STEPSEAL_*)

Only engine tuning lives here. Keys, roots and the policy itself are never
read from config; they come from the policy envelope and the pinned trust
material given on the command line.
"""

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "max_workers": 4,
    "timeout_seconds": None,  # None: no deadline
    "timestamps": {
        "mode": "any",  # "any" (OR across tokens) or "all"
        "require_for_keyless": True,
    },
    "log_level": "WARNING",
}

TIMESTAMP_MODES = ("any", "all")


@dataclass(frozen=True)
class EngineSettings:
    """The subset of config the orchestrator consumes."""
    max_workers: int = 4
    timeout_seconds: Optional[float] = None
    require_all_timestamps: bool = False
    require_timestamp_for_keyless: bool = True

    @classmethod
    def from_config(cls, config: dict) -> "EngineSettings":
        ts = config.get("timestamps") or {}
        timeout = config.get("timeout_seconds")
        return cls(
            max_workers=max(1, int(config.get("max_workers") or 1)),
            timeout_seconds=float(timeout) if timeout else None,
            require_all_timestamps=ts.get("mode", "any") == "all",
            require_timestamp_for_keyless=bool(ts.get("require_for_keyless", True)),
        )


def config_home() -> Path:
    home = os.environ.get("STEPSEAL_HOME")
    return Path(home) if home else Path.home() / ".stepseal"


def load_config(config_path: Optional[Path] = None, workspace: Optional[Path] = None) -> dict:
    """Load engine config.

    `config_path` (CLI --config) replaces the global user layer. If
    `workspace` is given, <workspace>/.stepseal.yaml is merged on top.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    loaded: list[Path] = []

    # Tests must not pick up the real user config
    is_pytest = bool(os.environ.get("PYTEST_CURRENT_TEST"))

    global_path: Optional[Path] = config_path or config_home() / "config.yaml"
    if is_pytest and config_path is None:
        global_path = None
    if global_path is not None and global_path.exists():
        global_cfg = _read_yaml(global_path)
        if global_cfg:
            config = _merge(config, global_cfg)
            loaded.append(global_path)

    if workspace is not None:
        ws_path = Path(workspace) / ".stepseal.yaml"
        if ws_path.exists():
            ws_cfg = _read_yaml(ws_path)
            if ws_cfg:
                config = _merge(config, ws_cfg)
                loaded.append(ws_path)

    for path in loaded:
        logger.debug("config loaded from %s", path)

    _apply_env_overrides(config)
    _validate(config)
    return config


def _read_yaml(path: Path) -> dict:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (yaml.YAMLError, OSError) as e:
        logger.warning("could not read %s: %s", path, e)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("ignoring %s: top level must be a mapping", path)
        return {}
    return data


def _merge(base: dict, override: dict) -> dict:
    """Deep merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(config: dict) -> None:
    """Apply explicit env var overrides after file/default loading."""
    workers = os.environ.get("STEPSEAL_MAX_WORKERS")
    if workers:
        try:
            config["max_workers"] = int(workers)
        except ValueError:
            logger.warning("invalid STEPSEAL_MAX_WORKERS=%r", workers)

    timeout = os.environ.get("STEPSEAL_TIMEOUT_SECONDS")
    if timeout:
        try:
            config["timeout_seconds"] = float(timeout)
        except ValueError:
            logger.warning("invalid STEPSEAL_TIMEOUT_SECONDS=%r", timeout)

    mode = os.environ.get("STEPSEAL_TIMESTAMP_MODE")
    if mode:
        config.setdefault("timestamps", {})["mode"] = mode.strip().lower()

    require = os.environ.get("STEPSEAL_REQUIRE_TIMESTAMP")
    if require is not None:
        config.setdefault("timestamps", {})["require_for_keyless"] = _to_bool(require)

    level = os.environ.get("STEPSEAL_LOG_LEVEL")
    if level:
        config["log_level"] = level.strip().upper()


def _validate(config: dict) -> None:
    ts = config.setdefault("timestamps", {})
    if ts.get("mode") not in TIMESTAMP_MODES:
        logger.warning("unknown timestamps.mode %r; using 'any'", ts.get("mode"))
        ts["mode"] = "any"
    if not isinstance(config.get("max_workers"), int) or config["max_workers"] < 1:
        logger.warning("max_workers must be a positive integer; using 1")
        config["max_workers"] = 1
    if str(config.get("log_level", "")).upper() not in logging.getLevelNamesMapping():
        config["log_level"] = "WARNING"


def _to_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


__all__ = ["DEFAULT_CONFIG", "EngineSettings", "config_home", "load_config"]
