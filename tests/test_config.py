from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from observer_mailbox.config import (
    DEFAULTS,
    coordinator_from,
    injection_config_from,
    load_config,
    mailbox_config_from,
    retention_engine_from,
    store_from,
)
from observer_mailbox.demo import main, run
from observer_mailbox.errors import ConfigurationError
from observer_mailbox.logging_setup import LOGGER_NAME, setup_logging


@pytest.fixture
def reset_package_logger():
    logger = logging.getLogger(LOGGER_NAME)
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


def write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_missing_file_falls_back_to_defaults(tmp_path: Path, clean_env, caplog):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    assert cfg == DEFAULTS
    assert cfg is not DEFAULTS
    assert "config file not found" in caplog.text


def test_yaml_is_merged_over_defaults(tmp_path: Path, clean_env):
    path = write(tmp_path, "store:\n  default_ttl_steps: 3\ndispatch:\n  max_retries: 4\n")
    cfg = load_config(path)
    assert cfg["store"]["default_ttl_steps"] == 3
    assert cfg["store"]["dedupe_window_steps"] == 5
    assert cfg["dispatch"]["max_retries"] == 4


def test_config_path_from_environment(tmp_path: Path, clean_env, monkeypatch):
    monkeypatch.setenv("OBSERVER_MAILBOX_CONFIG", write(tmp_path, "injection:\n  max_messages_per_turn: 1\n"))
    assert load_config()["injection"]["max_messages_per_turn"] == 1


def test_env_overrides(tmp_path: Path, clean_env, monkeypatch):
    monkeypatch.setenv("OBSERVER_MAILBOX__STORE__DEFAULT_TTL_STEPS", "null")
    monkeypatch.setenv("OBSERVER_MAILBOX__DISPATCH__STOP_ON_ERROR", "true")
    monkeypatch.setenv("OBSERVER_MAILBOX__DISPATCH__BASE_DELAY", "0.25")
    monkeypatch.setenv("OBSERVER_MAILBOX__LOGGING__LEVEL", "DEBUG")

    cfg = load_config(str(tmp_path / "nope.yaml"))

    assert cfg["store"]["default_ttl_steps"] is None
    assert cfg["dispatch"]["stop_on_error"] is True
    assert cfg["dispatch"]["base_delay"] == 0.25
    assert cfg["logging"]["level"] == "DEBUG"


def test_invalid_yaml_raises(tmp_path: Path, clean_env):
    with pytest.raises(RuntimeError):
        load_config(write(tmp_path, "store: [unclosed\n"))
    with pytest.raises(RuntimeError):
        load_config(write(tmp_path, "- just\n- a list\n"))


def test_shipped_default_config_loads(project_root: Path, clean_env):
    cfg = load_config(str(project_root / "config" / "default.yaml"))
    engine = retention_engine_from(cfg)
    assert engine.global_max_messages == 15
    assert engine.get_policy("insight").priority == "highest-confidence"
    assert cfg["dispatch"]["max_retries"] == 2


def test_builders(clean_env):
    cfg = {
        "store": {"max_messages_per_thread": 7},
        "dispatch": {"max_retries": 3, "base_delay": 0.5, "stop_on_error": True},
        "injection": {"target": "user-message", "min_confidence": 0.2},
    }

    assert mailbox_config_from(cfg).max_messages_per_thread == 7
    inj = injection_config_from(cfg)
    assert (inj.target, inj.max_messages_per_turn, inj.min_confidence) == ("user-message", 3, 0.2)

    store = store_from(cfg)
    coordinator = coordinator_from(cfg, store)
    assert store.config.max_messages_per_thread == 7
    assert coordinator.retry.max_retries == 3
    assert coordinator.retry.base_delay == 0.5
    assert coordinator.stop_on_error is True


def test_builders_reject_bad_sections():
    with pytest.raises(ConfigurationError):
        mailbox_config_from({"store": {"ttl": 3}})
    with pytest.raises(ConfigurationError):
        mailbox_config_from({"store": ["not", "a", "mapping"]})
    with pytest.raises(ConfigurationError):
        retention_engine_from({"retention": {"policies": [{"category": "insight", "limit": 2}]}})
    with pytest.raises(ConfigurationError):
        retention_engine_from({"retention": {"policies": [{"category": "gossip"}]}})
    with pytest.raises(ConfigurationError):
        retention_engine_from({"retention": {"policies": {"insight": 3}}})


def test_retention_section_overrides():
    engine = retention_engine_from({
        "retention": {
            "global_max_messages": None,
            "default_policy": {"max_count": 1},
            "policies": [{"category": "warning", "max_count": 9}],
        }
    })
    assert engine.global_max_messages is None
    assert engine.get_policy("warning").max_count == 9
    assert engine.get_policy("insight").max_count == 1


def test_setup_logging_is_idempotent(tmp_path: Path, reset_package_logger):
    log_file = tmp_path / "mailbox.log"
    logger = setup_logging("debug", log_file=str(log_file))
    setup_logging("debug", log_file=str(log_file))

    assert logger is reset_package_logger
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 2

    logging.getLogger("observer_mailbox.store").debug("hello from store")
    for handler in logger.handlers:
        handler.flush()
    assert "hello from store" in log_file.read_text(encoding="utf-8")


def test_setup_logging_unknown_level_defaults_to_info(reset_package_logger):
    assert setup_logging("chatty").level == logging.INFO


def test_demo_loop_summary(tmp_path: Path, clean_env):
    cfg = load_config(str(tmp_path / "nope.yaml"))

    summary = asyncio.run(run(cfg))

    assert summary == {
        "steps": 5,
        "messages_sent": 3,
        "messages_injected": 3,
        "remaining": 2,
        "snapshots": 5,
        "steps_completed": 5,
        "observer_failures": 0,
    }


def test_demo_main(tmp_path: Path, clean_env, reset_package_logger):
    summary = main(["--config", str(tmp_path / "nope.yaml"), "--log-level", "WARNING"])
    assert summary["steps"] == 5
    assert reset_package_logger.level == logging.WARNING
