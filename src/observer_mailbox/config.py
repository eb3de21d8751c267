"""YAML settings for the store, retention, dispatch and injection layers.

Where the file comes from, first match wins:
1. the ``path`` argument
2. the OBSERVER_MAILBOX_CONFIG environment variable
3. ``config/default.yaml`` (built-in DEFAULTS when that is missing too)

Single keys can then be overridden with ``OBSERVER_MAILBOX__SECTION__KEY``
variables (e.g. OBSERVER_MAILBOX__STORE__DEFAULT_TTL_STEPS=4); values are
coerced to bool, None, int or float when they look like one.

The ``*_from`` builders turn the parsed sections into typed objects.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .context import InjectionConfig
from .dispatch import DispatchCoordinator, RetryPolicy
from .errors import ConfigurationError
from .retention import RetentionEngine, RetentionPolicy
from .store import MailboxConfig, MessageStore

logger = logging.getLogger(__name__)

ENV_PATH = "OBSERVER_MAILBOX_CONFIG"
ENV_PREFIX = "OBSERVER_MAILBOX__"
DEFAULT_PATH = "config/default.yaml"

DEFAULTS: Dict[str, Any] = {
    "store": {
        "dedupe_window_steps": 5,
        "max_messages_per_thread": 50,
        "snapshot_retention_steps": 10,
        "default_ttl_steps": 10,
        "incorporated_retention_steps": 10,
    },
    "dispatch": {"max_retries": 0, "base_delay": 0.1, "stop_on_error": False},
    "injection": {"target": "end-of-history", "max_messages_per_turn": 3, "min_confidence": 0.6},
    "logging": {"level": "INFO"},
}


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    if value.lower() in {"null", "none"}:
        return None
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix OBSERVER_MAILBOX__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., OBSERVER_MAILBOX__STORE__MAX_MESSAGES_PER_THREAD -> cfg["store"]["max_messages_per_thread"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Read the settings file and layer it over DEFAULTS.

    A missing file is not an error: the defaults are used and a warning is
    logged. Unparseable YAML, or a top level that is not a mapping, raises
    ``RuntimeError``. Environment overrides are applied last.
    """
    if path is None:
        path = os.environ.get(ENV_PATH, DEFAULT_PATH)

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s; using defaults", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded))


# -----------------------------
# Builders
# -----------------------------
def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = cfg.get(name) or {}
    if not isinstance(sec, dict):
        raise ConfigurationError(f"config section '{name}' must be a mapping")
    return sec


def mailbox_config_from(cfg: Dict[str, Any]) -> MailboxConfig:
    return MailboxConfig.from_dict(_section(cfg, "store"))


def retry_policy_from(cfg: Dict[str, Any]) -> RetryPolicy:
    sec = _section(cfg, "dispatch")
    return RetryPolicy(
        max_retries=int(sec.get("max_retries", 0)),
        base_delay=float(sec.get("base_delay", 0.1)),
    )


def injection_config_from(cfg: Dict[str, Any]) -> InjectionConfig:
    sec = _section(cfg, "injection")
    return InjectionConfig(
        target=sec.get("target", "end-of-history"),
        max_messages_per_turn=int(sec.get("max_messages_per_turn", 3)),
        min_confidence=float(sec.get("min_confidence", 0.6)),
    )


def retention_engine_from(cfg: Dict[str, Any], **kwargs: Any) -> RetentionEngine:
    """Build a RetentionEngine; a missing ``retention`` section gives the stock policies.

    Expected shape::

        retention:
          global_max_messages: 15
          default_policy: {max_count: 5, dedupe: true, priority: newest}
          policies:
            - {category: insight, max_count: 5, dedupe: true, priority: highest-confidence}
    """
    sec = _section(cfg, "retention")
    policies: Optional[List[RetentionPolicy]] = None
    if "policies" in sec:
        raw = sec.get("policies") or []
        if not isinstance(raw, list):
            raise ConfigurationError("retention.policies must be a list")
        try:
            policies = [RetentionPolicy(**p) for p in raw]
        except TypeError as e:
            raise ConfigurationError(f"invalid retention policy: {e}") from e
    if "global_max_messages" in sec:
        kwargs["global_max_messages"] = sec["global_max_messages"]
    if "default_policy" in sec:
        kwargs["default_policy"] = sec["default_policy"]
    return RetentionEngine(policies, **kwargs)


def store_from(cfg: Dict[str, Any], **kwargs: Any) -> MessageStore:
    return MessageStore(mailbox_config_from(cfg), **kwargs)


def coordinator_from(cfg: Dict[str, Any], store: MessageStore, **kwargs: Any) -> DispatchCoordinator:
    """Coordinator with retry and stop-on-error taken from the ``dispatch`` section."""
    sec = _section(cfg, "dispatch")
    kwargs.setdefault("stop_on_error", bool(sec.get("stop_on_error", False)))
    return DispatchCoordinator(store, retry=retry_policy_from(cfg), **kwargs)
