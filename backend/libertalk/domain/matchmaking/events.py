"""Outbound notifications for matchmaking transitions.

Each event is appended to a Redis Stream for downstream consumers and pushed to
the participant's Socket.IO room. Delivery failures are logged and counted;
they never roll back the transition that produced them.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from libertalk.domain.matchmaking import sockets
from libertalk.infra.redis import redis_client
from libertalk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

MATCHMAKING_EVENT_STREAM = "x:matchmaking.events"
STREAM_MAXLEN = 10_000

MATCH_FOUND = "match:found"
MATCH_CONFIRMED = "match:confirmed"
MATCH_CANCELLED = "match:cancelled"
SESSION_ENDED = "session:ended"


def _stringify_fields(fields: Mapping[str, Any]) -> dict[str, str]:
	result: dict[str, str] = {}
	for key, value in fields.items():
		if value is None:
			continue
		if isinstance(value, (dict, list, tuple)):
			result[key] = json.dumps(value, separators=(",", ":"))
		elif isinstance(value, bool):
			result[key] = "1" if value else "0"
		else:
			result[key] = str(value)
	return result


async def publish(event: str, user_id: str, payload: Mapping[str, Any]) -> None:
	fields: dict[str, Any] = {"event": event, "user_id": user_id}
	fields.update(payload)
	try:
		await redis_client.xadd(
			MATCHMAKING_EVENT_STREAM,
			_stringify_fields(fields),
			maxlen=STREAM_MAXLEN,
			approximate=True,
		)
	except Exception:
		obs_metrics.inc_event_emit_failure("stream")
		logger.warning("matchmaking event %s not appended for %s", event, user_id, exc_info=True)
	try:
		await sockets.emit_to_user(user_id, event, {"userId": user_id, **payload})
	except Exception:
		obs_metrics.inc_event_emit_failure("socket")
		logger.warning("matchmaking event %s not pushed to %s", event, user_id, exc_info=True)


async def publish_many(event: str, payloads: Mapping[str, Mapping[str, Any]]) -> None:
	"""Publish one event per participant; ``payloads`` is keyed by user id."""
	for user_id, payload in payloads.items():
		await publish(event, user_id, payload)


__all__ = [
	"MATCHMAKING_EVENT_STREAM",
	"MATCH_FOUND",
	"MATCH_CONFIRMED",
	"MATCH_CANCELLED",
	"SESSION_ENDED",
	"publish",
	"publish_many",
]
