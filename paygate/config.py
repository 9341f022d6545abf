"""Core application configuration & tunable reconciliation rules.

All policy knobs that may evolve (poll backoff, optimistic trust threshold,
job timeout, pricing, circuit thresholds, registry backend) are centralized
here so they can be adjusted without diving into service logic. Values are
module constants seeded from environment variables; tests either monkeypatch
the dicts or build an ``EngineSettings`` with explicit overrides.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional_float(name: str) -> float | None:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return None
	return float(raw)


_seed_env = os.getenv("INTEGRATIONS_RANDOM_SEED")
INTEGRATIONS_RANDOM_SEED: int | None = int(_seed_env) if _seed_env and _seed_env.strip() else None

# Shared across mock integrations (probability of simulated failure)
MOCK_FAILURE_RATE: float = float(os.getenv("MOCK_FAILURE_RATE", "0.05"))

# ------------------------------ Poll Scheduler ----------------------------- #
POLL_POLICY: dict[str, int | float] = {
	# First status check waits this long after invoice issuance.
	"initial_delay_seconds": float(os.getenv("POLL_INITIAL_DELAY", "5")),
	"factor": float(os.getenv("POLL_FACTOR", "1.5")),
	"max_delay_seconds": float(os.getenv("POLL_MAX_DELAY", "60")),
	# Global tick only bounds check granularity, not check frequency.
	"tick_interval_seconds": float(os.getenv("GLOBAL_TICK_INTERVAL", "1")),
	"max_concurrent_jobs": int(os.getenv("POLL_MAX_CONCURRENT_JOBS", "8")),
}

# ---------------------------- Optimistic Policy ---------------------------- #
OPTIMISTIC_POLICY: dict[str, int | float | None] = {
	"threshold": int(os.getenv("OPTIMISTIC_THRESHOLD", "3")),
	# None => one backoff interval at the failing attempt count.
	"retry_cooldown_seconds": _env_optional_float("OPTIMISTIC_RETRY_COOLDOWN"),
}

# ---------------------------------- Jobs ----------------------------------- #
JOB_SETTINGS: dict[str, int | float | bool | str] = {
	"timeout_seconds": float(os.getenv("JOB_TIMEOUT", "600")),  # 10 minutes
	"allow_free_jobs": _env_bool("ALLOW_FREE_JOBS", False),
	"invoice_memo_prefix": os.getenv("INVOICE_MEMO_PREFIX", "Compute job"),
	# Max characters kept in history summaries
	"summary_length": 120,
}

# --------------------------------- Pricing --------------------------------- #
# Quote used when a submission carries no explicit price: a floor plus a
# per-1k-token rate over the estimated prompt size (~4 chars per token).
PRICING: dict[str, int | float | str] = {
	"min_price_units": int(os.getenv("MIN_PRICE_UNITS", "10")),
	"price_per_1k_tokens": float(os.getenv("PRICE_PER_1K_TOKENS", "2")),
	"chars_per_token": 4,
	"default_model": os.getenv("DEFAULT_MODEL", "gemma2:2b"),
}

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,          # Consecutive failures before OPEN
	"open_cooldown_seconds": 60,     # Stay OPEN for 1 minute
	"half_open_probe_count": 3,      # Probes allowed in HALF_OPEN
}

# -------------------------------- Registry --------------------------------- #
REGISTRY_SETTINGS: dict[str, str | bool | float] = {
	"use_redis": _env_bool("REGISTRY_USE_REDIS", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_key_prefix": os.getenv("REDIS_KEY_PREFIX", "paygate"),
	"redis_health_check_timeout": 2.0,
}

# -------------------------------- Executor --------------------------------- #
EXECUTOR_SETTINGS: dict[str, str | float] = {
	"backend": os.getenv("EXECUTOR_BACKEND", "mock"),  # mock | ollama
	"ollama_base_url": os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
	"request_timeout_seconds": float(os.getenv("EXECUTOR_TIMEOUT", "120")),
}

# ------------------------------- Rate Limits ------------------------------- #
RATE_LIMIT_SETTINGS: dict[str, dict[str, int]] = {
	"default": {"limit": 1000, "window_seconds": 3600},
	"job_submit": {"limit": 60, "window_seconds": 60},
	"job_query": {"limit": 600, "window_seconds": 60},
}

# ------------------------------ Event Log ---------------------------------- #
EVENT_LOG_SETTINGS: dict[str, int] = {
	"max_events_per_job": 50,
	"max_jobs_tracked": 5000,
}


@dataclass(frozen=True)
class EngineSettings:
	"""Snapshot of the tunables the reconciliation engine and scheduler use."""

	optimistic_threshold: int = 3
	optimistic_retry_cooldown: float | None = None
	poll_initial_delay: float = 5.0
	poll_factor: float = 1.5
	poll_max_delay: float = 60.0
	global_tick_interval: float = 1.0
	max_concurrent_jobs: int = 8
	job_timeout: float = 600.0
	allow_free_jobs: bool = False
	invoice_memo_prefix: str = "Compute job"

	@classmethod
	def from_config(cls, **overrides: Any) -> "EngineSettings":
		"""Build settings from the module dicts, applying keyword overrides."""
		settings = cls(
			optimistic_threshold=int(OPTIMISTIC_POLICY["threshold"]),  # type: ignore[arg-type]
			optimistic_retry_cooldown=OPTIMISTIC_POLICY.get("retry_cooldown_seconds"),  # type: ignore[arg-type]
			poll_initial_delay=float(POLL_POLICY["initial_delay_seconds"]),
			poll_factor=float(POLL_POLICY["factor"]),
			poll_max_delay=float(POLL_POLICY["max_delay_seconds"]),
			global_tick_interval=float(POLL_POLICY["tick_interval_seconds"]),
			max_concurrent_jobs=int(POLL_POLICY["max_concurrent_jobs"]),
			job_timeout=float(JOB_SETTINGS["timeout_seconds"]),
			allow_free_jobs=bool(JOB_SETTINGS["allow_free_jobs"]),
			invoice_memo_prefix=str(JOB_SETTINGS["invoice_memo_prefix"]),
		)
		known = {f.name for f in fields(cls)}
		unknown = set(overrides) - known
		if unknown:
			raise ValueError(f"Unknown engine settings: {sorted(unknown)}")
		return replace(settings, **overrides) if overrides else settings


if INTEGRATIONS_RANDOM_SEED is not None:
	import random
	random.seed(INTEGRATIONS_RANDOM_SEED)

__all__ = [
	"INTEGRATIONS_RANDOM_SEED",
	"MOCK_FAILURE_RATE",
	# Rule groups
	"POLL_POLICY",
	"OPTIMISTIC_POLICY",
	"JOB_SETTINGS",
	"PRICING",
	"CIRCUIT_BREAKER",
	"REGISTRY_SETTINGS",
	"EXECUTOR_SETTINGS",
	"RATE_LIMIT_SETTINGS",
	"EVENT_LOG_SETTINGS",
	"EngineSettings",
]
