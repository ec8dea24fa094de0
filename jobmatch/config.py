from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from jobmatch.retry import RetryPolicy

ACK_EARLY = "early"
ACK_LATE = "late"


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class WorkerSettings:
    concurrency: int = 3
    queue_name: str = "sessions"
    poll_interval_ms: int = 200
    ack_mode: str = ACK_LATE
    retry_base_ms: int = 500
    fetch_max_attempts: int = 3
    oracle_max_attempts: int = 2
    persist_max_attempts: int = 3

    @property
    def fetch_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.fetch_max_attempts, base_delay_ms=self.retry_base_ms)

    @property
    def oracle_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.oracle_max_attempts, base_delay_ms=self.retry_base_ms)

    @property
    def persist_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.persist_max_attempts, base_delay_ms=self.retry_base_ms)


def create_worker_settings_from_env(environ: Mapping[str, str] | None = None) -> WorkerSettings:
    env = os.environ if environ is None else environ
    ack_mode = str(env.get("WORKER_ACK_MODE", ACK_LATE)).strip().lower() or ACK_LATE
    if ack_mode not in {ACK_EARLY, ACK_LATE}:
        raise ValueError(f"unsupported WORKER_ACK_MODE: {ack_mode}")
    return WorkerSettings(
        concurrency=_env_int(env, "WORKER_CONCURRENCY", default=3, minimum=1),
        queue_name=str(env.get("WORKER_QUEUE_NAME", "sessions")).strip() or "sessions",
        poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
        ack_mode=ack_mode,
        retry_base_ms=_env_int(env, "WORKER_RETRY_BASE_MS", default=500, minimum=0),
        fetch_max_attempts=_env_int(env, "WORKER_FETCH_MAX_ATTEMPTS", default=3, minimum=1),
        oracle_max_attempts=_env_int(env, "WORKER_ORACLE_MAX_ATTEMPTS", default=2, minimum=1),
        persist_max_attempts=_env_int(env, "WORKER_PERSIST_MAX_ATTEMPTS", default=3, minimum=1),
    )
