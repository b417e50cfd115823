"""Core application configuration & tunable pipeline rules.

Every knob that governs delivery semantics (visibility timeout, receive
ceiling before dead-lettering, batch size, worker concurrency, poison
policy) is centralized here so it can be adjusted without diving into
service logic. Values are module constants seeded from environment
variables; tests monkeypatch the dicts directly.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in ("1", "true", "yes", "on")


# --------------------------------- Orders --------------------------------- #
ORDER_SETTINGS: dict[str, str] = {
	"service_name": os.getenv("SERVICE_NAME", "orders-api"),
	"default_currency": os.getenv("DEFAULT_CURRENCY", "EUR"),
	# Inbound header carrying a caller supplied correlation id (case-insensitive)
	"correlation_header": os.getenv("CORRELATION_HEADER", "X-Correlation-ID"),
	# Single-table key prefix, used for both partition and sort key
	"key_prefix": "ORDER#",
	# Fallback when neither body nor attributes carry an order id.
	# Known limitation: every such message collides on this one key.
	"unknown_order_id": "unknown",
}

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, str | int | float | bool] = {
	"use_redis": _env_bool("USE_REDIS_QUEUE", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_key_prefix": os.getenv("REDIS_KEY_PREFIX", "orders"),
	# Park messages in process memory while Redis is down. Off: sends are rejected
	# (500) so the client retries; parked messages are lost if this process exits
	"redis_fallback_to_memory": _env_bool("REDIS_FALLBACK_TO_MEMORY", False),
	"redis_health_check_timeout": float(os.getenv("REDIS_HEALTH_CHECK_TIMEOUT", "2.0")),
	# Hidden window after a receive; unacked messages reappear afterwards
	"visibility_timeout_seconds": float(os.getenv("QUEUE_VISIBILITY_TIMEOUT", "30")),
	# Deliveries before a message is moved to the dead-letter list
	"max_receive_count": int(os.getenv("QUEUE_MAX_RECEIVE_COUNT", "5")),
	"dead_letter_retention_seconds": float(os.getenv("DLQ_RETENTION_SECONDS", str(14 * 24 * 3600))),
	"warn_depth": 1000,
	"max_in_memory": 5000,
}

# --------------------------------- Worker --------------------------------- #
WORKER_SETTINGS: dict[str, str | int | float | bool] = {
	"enabled": _env_bool("ENABLE_WORKER", True),
	"function_name": os.getenv("WORKER_FUNCTION_NAME", "ProcessOrderFn"),
	"batch_size": int(os.getenv("WORKER_BATCH_SIZE", "10")),
	# Concurrency ceiling protecting the order store; excess batches wait in the queue
	"max_concurrency": int(os.getenv("WORKER_MAX_CONCURRENCY", "2")),
	"poll_timeout_seconds": float(os.getenv("WORKER_POLL_TIMEOUT", "1.0")),
	# "discard": log and consume malformed bodies
	# "dead_letter": raise so the queue eventually dead-letters them
	"poison_message_policy": os.getenv("POISON_MESSAGE_POLICY", "discard"),
	# "whole_batch": any persist failure fails the whole batch
	# "report_item_failures": only the failed messages are redelivered
	"batch_failure_mode": os.getenv("BATCH_FAILURE_MODE", "whole_batch"),
}

POISON_POLICIES = frozenset({"discard", "dead_letter"})
BATCH_FAILURE_MODES = frozenset({"whole_batch", "report_item_failures"})

__all__ = [
	"ORDER_SETTINGS",
	"QUEUE_SETTINGS",
	"WORKER_SETTINGS",
	"POISON_POLICIES",
	"BATCH_FAILURE_MODES",
]
