"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

log = logging.getLogger(__name__)


REQUEST_COUNTER = Counter(
	"libertalk_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"libertalk_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"libertalk_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"libertalk_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

RATE_LIMITED_EVENTS = Counter(
	"libertalk_rate_limited_total",
	"Requests dropped due to rate limiting",
	["kind"],
)

QUEUE_JOINS = Counter(
	"libertalk_queue_joins_total",
	"Queue joins accepted",
	["result"],
)

QUEUE_LEAVES = Counter(
	"libertalk_queue_leaves_total",
	"Queue entries removed",
	["reason"],
)

QUEUE_HEARTBEATS = Counter(
	"libertalk_queue_heartbeats_total",
	"Presence heartbeats accepted",
)

QUEUE_WAITING = Gauge(
	"libertalk_queue_waiting",
	"Live searching entries at the last stats snapshot",
)

MATCH_SEARCHES = Counter(
	"libertalk_match_searches_total",
	"findMatch outcomes",
	["result"],
)

MATCHES_CLAIMED = Counter(
	"libertalk_matches_claimed_total",
	"Pairs claimed per tier",
	["tier"],
)

CAS_CONFLICTS = Counter(
	"libertalk_store_conflicts_total",
	"Conditional updates that lost a race",
	["op", "kind"],
)

CONFIRMATIONS = Counter(
	"libertalk_confirmations_total",
	"Confirmation acknowledgements",
	["result"],
)

ATTEMPTS_CLOSED = Counter(
	"libertalk_match_attempts_closed_total",
	"Match attempts leaving the pending state",
	["status", "reason"],
)

SESSIONS_ENDED = Counter(
	"libertalk_chat_sessions_ended_total",
	"Chat sessions ended",
	["reason"],
)

REAPER_ACTIONS = Counter(
	"libertalk_reaper_actions_total",
	"Rows touched by the reaper",
	["action"],
)

REAPER_DURATION = Histogram(
	"libertalk_reaper_sweep_duration_seconds",
	"Duration of reaper sweeps",
	buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

EVENT_EMIT_FAILURES = Counter(
	"libertalk_event_emit_failures_total",
	"Matchmaking events that could not be delivered",
	["channel"],
)

REDIS_UP = Gauge(
	"libertalk_redis_up",
	"Redis availability (1=up, 0=down)",
)

REDIS_LATENCY = Histogram(
	"libertalk_redis_ping_seconds",
	"Redis ping latency",
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
)

JOB_RUNS = Counter(
	"libertalk_job_runs_total",
	"Background job executions",
	["job", "result"],
)

JOB_DURATION = Histogram(
	"libertalk_job_duration_seconds",
	"Background job duration",
	["job"],
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_rate_limited(kind: str) -> None:
	RATE_LIMITED_EVENTS.labels(kind=kind).inc()


def inc_queue_join(result: str) -> None:
	QUEUE_JOINS.labels(result=result).inc()


def inc_queue_leave(reason: str) -> None:
	QUEUE_LEAVES.labels(reason=reason).inc()


def inc_heartbeat() -> None:
	QUEUE_HEARTBEATS.inc()


def set_queue_waiting(count: int) -> None:
	QUEUE_WAITING.set(float(count))


def inc_match_search(result: str) -> None:
	MATCH_SEARCHES.labels(result=result).inc()


def inc_match_claimed(tier: int) -> None:
	MATCHES_CLAIMED.labels(tier=str(tier)).inc()


def inc_cas_conflict(op: str, kind: str) -> None:
	CAS_CONFLICTS.labels(op=op, kind=kind).inc()


def inc_confirmation(result: str) -> None:
	CONFIRMATIONS.labels(result=result).inc()


def inc_attempt_closed(status: str, reason: str) -> None:
	ATTEMPTS_CLOSED.labels(status=status, reason=reason).inc()


def inc_session_ended(reason: str) -> None:
	SESSIONS_ENDED.labels(reason=reason).inc()


def inc_reaper_action(action: str, count: int = 1) -> None:
	if count:
		REAPER_ACTIONS.labels(action=action).inc(count)


def observe_reaper_sweep(duration_seconds: float) -> None:
	REAPER_DURATION.observe(duration_seconds)


def inc_event_emit_failure(channel: str) -> None:
	EVENT_EMIT_FAILURES.labels(channel=channel).inc()


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	JOB_RUNS.labels(job=name, result=result).inc()
	if duration_seconds is not None:
		JOB_DURATION.labels(job=name).observe(duration_seconds)
