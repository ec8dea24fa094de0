from __future__ import annotations

import pytest

from jobmatch.config import ACK_EARLY, ACK_LATE, create_worker_settings_from_env


def test_worker_settings_defaults():
    settings = create_worker_settings_from_env({})
    assert settings.concurrency == 3
    assert settings.queue_name == "sessions"
    assert settings.ack_mode == ACK_LATE
    assert settings.fetch_policy.max_attempts == 3
    assert settings.oracle_policy.max_attempts == 2
    assert settings.persist_policy.max_attempts == 3
    assert settings.fetch_policy.delay_ms(1) == 500


def test_worker_settings_from_env_overrides():
    settings = create_worker_settings_from_env(
        {
            "WORKER_CONCURRENCY": "8",
            "WORKER_QUEUE_NAME": "resume-sessions",
            "WORKER_ACK_MODE": "EARLY",
            "WORKER_RETRY_BASE_MS": "100",
            "WORKER_ORACLE_MAX_ATTEMPTS": "4",
        }
    )
    assert settings.concurrency == 8
    assert settings.queue_name == "resume-sessions"
    assert settings.ack_mode == ACK_EARLY
    assert settings.oracle_policy.max_attempts == 4
    assert settings.oracle_policy.delay_ms(2) == 200


def test_worker_settings_clamp_and_ignore_garbage():
    settings = create_worker_settings_from_env({"WORKER_CONCURRENCY": "0", "WORKER_FETCH_MAX_ATTEMPTS": "many"})
    assert settings.concurrency == 1
    assert settings.fetch_max_attempts == 3


def test_worker_settings_reject_unknown_ack_mode():
    with pytest.raises(ValueError, match="WORKER_ACK_MODE"):
        create_worker_settings_from_env({"WORKER_ACK_MODE": "never"})
