"""Presence store: waiting entries, heartbeats and queue placement."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from libertalk.domain.matchmaking.errors import SessionLostError, ValidationError
from libertalk.domain.matchmaking.geo import valid_coordinates
from libertalk.domain.matchmaking.models import DEFAULT_LANGUAGE, UNKNOWN_REGION, WaitingEntry
from libertalk.domain.matchmaking.store import (
	ENTRIES_INDEX,
	MatchStore,
	RowUpdate,
	device_key,
	entry_key,
	heartbeat_key,
	partners_key,
)
from libertalk.domain.matchmaking.tiers import QueueSnapshot
from libertalk.obs import metrics as obs_metrics
from libertalk.settings import settings

logger = logging.getLogger(__name__)

MAX_DEVICE_ID_LENGTH = 128
MAX_REGION_LENGTH = 64
MAX_LANGUAGE_LENGTH = 16
MAX_USER_AGENT_LENGTH = 512
SECONDS_PER_QUEUE_SLOT = 5
MIN_ESTIMATED_WAIT_SECONDS = 10


def _clean(value: Optional[str], default: str, limit: int, field_name: str) -> str:
	text = (value or "").strip()
	if not text:
		return default
	if len(text) > limit:
		raise ValidationError(message=f"{field_name} too long")
	return text


@dataclass(slots=True)
class JoinProfile:
	continent: str = UNKNOWN_REGION
	country: str = UNKNOWN_REGION
	city: str = UNKNOWN_REGION
	language: str = DEFAULT_LANGUAGE
	lat: Optional[float] = None
	lon: Optional[float] = None
	user_agent: Optional[str] = None

	def validated(self) -> "JoinProfile":
		"""Return a normalised copy or raise :class:`ValidationError`."""
		if (self.lat is None) != (self.lon is None):
			raise ValidationError(message="lat and lon must be given together")
		if self.lat is not None and not valid_coordinates(float(self.lat), float(self.lon)):  # type: ignore[arg-type]
			raise ValidationError(message="coordinates out of range")
		user_agent = (self.user_agent or "").strip()[:MAX_USER_AGENT_LENGTH] or None
		return JoinProfile(
			continent=_clean(self.continent, UNKNOWN_REGION, MAX_REGION_LENGTH, "continent"),
			country=_clean(self.country, UNKNOWN_REGION, MAX_REGION_LENGTH, "country"),
			city=_clean(self.city, UNKNOWN_REGION, MAX_REGION_LENGTH, "city"),
			language=_clean(self.language, DEFAULT_LANGUAGE, MAX_LANGUAGE_LENGTH, "language").lower(),
			lat=float(self.lat) if self.lat is not None else None,
			lon=float(self.lon) if self.lon is not None else None,
			user_agent=user_agent,
		)


@dataclass(slots=True)
class QueuePlacement:
	entry: WaitingEntry
	queue_position: int
	estimated_wait_seconds: int
	total_waiting: int


def estimate_wait_seconds(queue_position: int) -> int:
	return max(queue_position * SECONDS_PER_QUEUE_SLOT, MIN_ESTIMATED_WAIT_SECONDS)


def validate_device_id(device_id: str) -> str:
	device_id = (device_id or "").strip()
	if not device_id or len(device_id) > MAX_DEVICE_ID_LENGTH:
		raise ValidationError("invalid_device_id", message="device id is required")
	return device_id


def validate_quality(quality: int) -> int:
	try:
		value = int(quality)
	except (TypeError, ValueError) as exc:
		raise ValidationError(message="connection quality must be an integer") from exc
	if not 0 <= value <= 100:
		raise ValidationError(message="connection quality must be within 0..100")
	return value


class PresenceStore:
	def __init__(self, store: MatchStore, *, clock: Callable[[], float] = time.time) -> None:
		self._store = store
		self._clock = clock

	async def join(self, device_id: str, profile: JoinProfile) -> WaitingEntry:
		"""Upsert the device's entry as a fresh searching participant.

		A device that already has an entry keeps its participant id and partner
		history but gets a new session id, heartbeat and attempt counter. Callers
		detach any prior match or chat first.
		"""
		device_id = validate_device_id(device_id)
		profile = profile.validated()
		now = self._clock()
		owner = await self._store.device_owner(device_id)
		existing = await self._store.get_entry(owner) if owner else None
		entry = WaitingEntry(
			id=owner or str(uuid.uuid4()),
			device_id=device_id,
			session_id=str(uuid.uuid4()),
			continent=profile.continent,
			country=profile.country,
			city=profile.city,
			language=profile.language,
			joined_at=now,
			last_heartbeat=now,
			status="searching",
			lat=profile.lat,
			lon=profile.lon,
			user_agent=profile.user_agent,
			connection_quality=settings.default_connection_quality,
			search_attempts=0,
			updated_at=now,
		)
		if existing is not None:
			entry_expect = {
				"status": existing.status,
				"current_match_id": existing.current_match_id,
				"current_chat_id": existing.current_chat_id,
			}
		else:
			entry_expect = {"id": None}
		hb_ttl = max(1, int(settings.liveness_window_seconds * 4))

		def _effects(pipe) -> None:
			pipe.zadd(ENTRIES_INDEX, {entry.id: now})
			pipe.hset(
				heartbeat_key(entry.id),
				mapping={"last_heartbeat": str(now), "connection_quality": str(entry.connection_quality)},
			)
			pipe.expire(heartbeat_key(entry.id), hb_ttl)
			pipe.persist(device_key(device_id))
			pipe.persist(partners_key(entry.id))

		await self._store.compare_and_set(
			[
				RowUpdate(device_key(device_id), expect={"user_id": owner}, values={"user_id": entry.id}),
				RowUpdate(
					entry_key(entry.id),
					expect=entry_expect,
					values=entry.to_row(),
					unset=("current_match_id", "current_chat_id", "lat", "lon", "user_agent"),
				),
			],
			side_effects=_effects,
			op="join",
		)
		obs_metrics.inc_queue_join("rejoined" if owner else "new")
		logger.info("queue join", extra={"participant": entry.id, "rejoin": owner is not None})
		return entry

	async def heartbeat(self, user_id: str, quality: int) -> None:
		quality = validate_quality(quality)
		if not await self._store.entry_exists(user_id):
			raise SessionLostError()
		await self._store.write_heartbeat(user_id, now=self._clock(), quality=quality)
		obs_metrics.inc_heartbeat()
		logger.debug("heartbeat", extra={"participant": user_id, "quality": quality})

	async def get(self, user_id: str, *, with_partners: bool = False) -> WaitingEntry:
		entry = await self._store.get_entry(user_id, with_partners=with_partners)
		if entry is None:
			raise SessionLostError()
		return entry

	async def remove(self, user_id: str, *, reason: str = "left") -> bool:
		"""Delete the entry and its heartbeat. Returns False if already gone."""
		entry = await self._store.get_entry(user_id)
		if entry is None:
			await self._store.drop_index_members(ENTRIES_INDEX, [user_id])
			return False
		retention = max(1, int(settings.identity_retention_seconds))

		def _effects(pipe) -> None:
			pipe.zrem(ENTRIES_INDEX, user_id)
			pipe.delete(heartbeat_key(user_id))
			# device id and partner history outlive the entry
			pipe.expire(device_key(entry.device_id), retention)
			pipe.expire(partners_key(user_id), retention)

		await self._store.compare_and_set(
			[
				RowUpdate(
					entry_key(user_id),
					expect={"status": entry.status, "current_match_id": entry.current_match_id},
					delete=True,
				)
			],
			side_effects=_effects,
			op="remove",
		)
		obs_metrics.inc_queue_leave(reason)
		logger.info("queue entry removed", extra={"participant": user_id, "reason": reason})
		return True

	async def requeue(self, entry: WaitingEntry, *, reason: str) -> None:
		"""Put an entry whose match or chat pointer went stale back to searching."""
		await self._store.compare_and_set(
			[
				RowUpdate(
					entry_key(entry.id),
					expect={
						"status": entry.status,
						"current_match_id": entry.current_match_id,
						"current_chat_id": entry.current_chat_id,
					},
					values={"status": "searching", "updated_at": str(self._clock())},
					unset=("current_match_id", "current_chat_id"),
				)
			],
			op="requeue",
		)
		logger.info("entry requeued", extra={"participant": entry.id, "reason": reason})

	async def snapshot(self) -> QueueSnapshot:
		return QueueSnapshot.from_entries(
			await self._store.list_entries(),
			now=self._clock(),
			liveness_window_seconds=settings.liveness_window_seconds,
		)

	async def placement(self, entry: WaitingEntry) -> QueuePlacement:
		snapshot = await self.snapshot()
		ahead = sum(
			1
			for other in snapshot.entries
			if other.id != entry.id and other.joined_at < entry.joined_at
		)
		return QueuePlacement(
			entry=entry,
			queue_position=ahead,
			estimated_wait_seconds=estimate_wait_seconds(ahead),
			total_waiting=len(snapshot),
		)
