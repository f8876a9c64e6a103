"""Redis-backed store for waiting entries, match attempts and chat sessions.

Every mutation of an entry, attempt or chat row goes through
:meth:`MatchStore.compare_and_set`, an optimistic conditional update built on
``WATCH``/``MULTI``/``EXEC``. Heartbeat rows and secondary indexes are written
outside that protocol so that liveness refreshes never abort a claim.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Sequence

from redis.exceptions import WatchError

from libertalk.domain.matchmaking.errors import ConflictError
from libertalk.domain.matchmaking.models import ChatSession, MatchAttempt, WaitingEntry
from libertalk.infra.redis import redis_client
from libertalk.obs import metrics as obs_metrics
from libertalk.settings import settings

logger = logging.getLogger(__name__)

ENTRIES_INDEX = "mm:entries"
PENDING_ATTEMPTS_INDEX = "mm:attempts:pending"
CLOSED_ATTEMPTS_INDEX = "mm:attempts:closed"
OPEN_CHATS_INDEX = "mm:chats:open"
ENDED_CHATS_INDEX = "mm:chats:ended"


def entry_key(user_id: str) -> str:
	return f"mm:entry:{user_id}"


def heartbeat_key(user_id: str) -> str:
	return f"mm:hb:{user_id}"


def device_key(device_id: str) -> str:
	return f"mm:device:{device_id}"


def partners_key(user_id: str) -> str:
	return f"mm:prev:{user_id}"


def attempt_key(match_id: str) -> str:
	return f"mm:attempt:{match_id}"


def chat_key(chat_id: str) -> str:
	return f"mm:chat:{chat_id}"


@dataclass(slots=True)
class RowUpdate:
	"""One guarded row write inside a conditional update.

	``expect`` maps field names to the value the row must currently hold; a
	``None`` value means the field must be absent, so ``{"id": None}`` asserts
	that the row does not exist yet.
	"""

	key: str
	expect: Mapping[str, Optional[str]] = field(default_factory=dict)
	values: Mapping[str, str] = field(default_factory=dict)
	# Fields removed from the row; names also present in ``values`` are kept
	unset: Sequence[str] = ()
	delete: bool = False


SideEffects = Callable[[object], None]


def _expectations_hold(update: RowUpdate, current: Mapping[str, str]) -> bool:
	for name, expected in update.expect.items():
		if current.get(name) != expected:
			return False
	return True


class MatchStore:
	"""Single access point for matchmaking state in Redis."""

	def __init__(self, client=None) -> None:
		self._client = client if client is not None else redis_client

	@property
	def client(self):
		return self._client

	# --- conditional update -------------------------------------------------

	async def compare_and_set(
		self,
		updates: Sequence[RowUpdate],
		*,
		side_effects: SideEffects | None = None,
		op: str = "write",
	) -> None:
		"""Apply ``updates`` atomically iff every row still matches its expectation.

		Raises :class:`ConflictError` when a guard fails or when concurrent writers
		keep invalidating the watched rows.
		"""
		keys = [update.key for update in updates]
		attempts = max(1, int(settings.store_watch_retries))
		for attempt in range(attempts):
			async with self._client.pipeline(transaction=True) as pipe:
				try:
					await pipe.watch(*keys)
					for update in updates:
						if not update.expect:
							continue
						current = await pipe.hgetall(update.key)
						if not _expectations_hold(update, current or {}):
							obs_metrics.inc_cas_conflict(op, "guard")
							raise ConflictError(message=f"{op}: guard failed on {update.key}")
					pipe.multi()
					for update in updates:
						if update.delete:
							pipe.delete(update.key)
							continue
						if update.values:
							pipe.hset(update.key, mapping=dict(update.values))
						stale = [name for name in update.unset if name not in update.values]
						if stale:
							pipe.hdel(update.key, *stale)
					if side_effects is not None:
						side_effects(pipe)
					await pipe.execute()
					return
				except WatchError:
					obs_metrics.inc_cas_conflict(op, "watch")
					logger.debug("conditional update %s aborted by concurrent write (try %s)", op, attempt + 1)
		raise ConflictError(message=f"{op}: concurrent writers kept winning")

	# --- reads ----------------------------------------------------------------

	async def get_entry(self, user_id: str, *, with_partners: bool = False) -> Optional[WaitingEntry]:
		async with self._client.pipeline(transaction=False) as pipe:
			pipe.hgetall(entry_key(user_id))
			pipe.hgetall(heartbeat_key(user_id))
			if with_partners:
				pipe.smembers(partners_key(user_id))
			results = await pipe.execute()
		row, heartbeat = results[0], results[1]
		if not row or "id" not in row:
			return None
		partners = results[2] if with_partners else ()
		return WaitingEntry.from_row(row, heartbeat, partners)

	async def get_entries(self, user_ids: Iterable[str]) -> list[WaitingEntry]:
		ids = list(user_ids)
		if not ids:
			return []
		async with self._client.pipeline(transaction=False) as pipe:
			for user_id in ids:
				pipe.hgetall(entry_key(user_id))
				pipe.hgetall(heartbeat_key(user_id))
			results = await pipe.execute()
		entries: list[WaitingEntry] = []
		for idx in range(len(ids)):
			row, heartbeat = results[idx * 2], results[idx * 2 + 1]
			if row and "id" in row:
				entries.append(WaitingEntry.from_row(row, heartbeat))
		return entries

	async def entry_ids(self) -> list[str]:
		"""All indexed entry ids, oldest join first."""
		return list(await self._client.zrange(ENTRIES_INDEX, 0, -1))

	async def list_entries(self) -> list[WaitingEntry]:
		return await self.get_entries(await self.entry_ids())

	async def device_owner(self, device_id: str) -> Optional[str]:
		return await self._client.hget(device_key(device_id), "user_id")

	async def get_attempt(self, match_id: str) -> Optional[MatchAttempt]:
		row = await self._client.hgetall(attempt_key(match_id))
		return MatchAttempt.from_row(row) if row and "id" in row else None

	async def get_chat(self, chat_id: str) -> Optional[ChatSession]:
		row = await self._client.hgetall(chat_key(chat_id))
		return ChatSession.from_row(row) if row and "id" in row else None

	async def due_attempt_ids(self, now: float) -> list[str]:
		return list(await self._client.zrangebyscore(PENDING_ATTEMPTS_INDEX, "-inf", now))

	async def open_chat_ids(self) -> list[str]:
		return list(await self._client.zrange(OPEN_CHATS_INDEX, 0, -1))

	async def closed_attempt_ids(self, before: float) -> list[str]:
		return list(await self._client.zrangebyscore(CLOSED_ATTEMPTS_INDEX, "-inf", before))

	async def ended_chat_ids(self, before: float) -> list[str]:
		return list(await self._client.zrangebyscore(ENDED_CHATS_INDEX, "-inf", before))

	async def count_pending_attempts(self) -> int:
		return int(await self._client.zcard(PENDING_ATTEMPTS_INDEX))

	async def count_open_chats(self) -> int:
		return int(await self._client.zcard(OPEN_CHATS_INDEX))

	# --- unguarded writes -------------------------------------------------------

	async def write_heartbeat(self, user_id: str, *, now: float, quality: int) -> None:
		ttl = max(1, int(settings.liveness_window_seconds * 4))
		async with self._client.pipeline(transaction=True) as pipe:
			pipe.hset(heartbeat_key(user_id), mapping={"last_heartbeat": str(now), "connection_quality": str(quality)})
			pipe.expire(heartbeat_key(user_id), ttl)
			await pipe.execute()

	async def entry_exists(self, user_id: str) -> bool:
		return bool(await self._client.exists(entry_key(user_id)))

	async def bump_search_attempts(self, user_id: str) -> Optional[int]:
		"""Count one fruitless search. Returns None once the entry is gone."""
		key = entry_key(user_id)
		for _ in range(max(1, int(settings.store_watch_retries))):
			async with self._client.pipeline(transaction=True) as pipe:
				try:
					await pipe.watch(key)
					if not await pipe.hexists(key, "id"):
						return None
					pipe.multi()
					pipe.hincrby(key, "search_attempts", 1)
					(count,) = await pipe.execute()
					return int(count)
				except WatchError:
					obs_metrics.inc_cas_conflict("search_attempts", "watch")
		raise ConflictError(message="search_attempts: concurrent writers kept winning")

	async def touch_chat(self, chat_id: str, now: float) -> None:
		await self._client.hset(chat_key(chat_id), "last_activity_at", str(now))

	async def drop_index_members(self, index: str, members: Sequence[str]) -> None:
		if members:
			await self._client.zrem(index, *members)

	async def purge_rows(self, index: str, keys: Sequence[str], members: Sequence[str]) -> None:
		if not members:
			return
		async with self._client.pipeline(transaction=True) as pipe:
			pipe.delete(*keys)
			pipe.zrem(index, *members)
			await pipe.execute()


__all__ = [
	"MatchStore",
	"RowUpdate",
	"ENTRIES_INDEX",
	"PENDING_ATTEMPTS_INDEX",
	"CLOSED_ATTEMPTS_INDEX",
	"OPEN_CHATS_INDEX",
	"ENDED_CHATS_INDEX",
	"entry_key",
	"heartbeat_key",
	"device_key",
	"partners_key",
	"attempt_key",
	"chat_key",
]
