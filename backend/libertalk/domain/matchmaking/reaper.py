"""Background cleanup for the matchmaking queue.

One sweep evicts dead entries, expires overdue confirmations, ends idle or
abandoned chats and repairs entries whose match or chat pointer went stale.
Every write reuses the conditional updates of the presence store and the
confirmation coordinator, so a sweep racing a live request simply loses and
the item is retried on the next pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from libertalk.domain.matchmaking.confirmation import ConfirmationCoordinator
from libertalk.domain.matchmaking.errors import ConflictError, MatchmakingError
from libertalk.domain.matchmaking.models import WaitingEntry
from libertalk.domain.matchmaking.presence import PresenceStore
from libertalk.domain.matchmaking.store import (
	CLOSED_ATTEMPTS_INDEX,
	ENDED_CHATS_INDEX,
	ENTRIES_INDEX,
	OPEN_CHATS_INDEX,
	PENDING_ATTEMPTS_INDEX,
	MatchStore,
	attempt_key,
	chat_key,
)
from libertalk.obs import metrics as obs_metrics
from libertalk.settings import settings

logger = logging.getLogger(__name__)

# Entries silent for this many liveness windows are removed from the queue
EVICTION_WINDOWS = 2


@dataclass(slots=True)
class SweepReport:
	evicted: int = 0
	expired: int = 0
	ended: int = 0
	repaired: int = 0
	purged_attempts: int = 0
	purged_chats: int = 0
	conflicts: int = 0

	def as_dict(self) -> dict[str, int]:
		return asdict(self)

	def total(self) -> int:
		return self.evicted + self.expired + self.ended + self.repaired + self.purged_attempts + self.purged_chats


class Reaper:
	def __init__(
		self,
		store: MatchStore,
		presence: PresenceStore,
		coordinator: ConfirmationCoordinator,
		*,
		clock: Callable[[], float] = time.time,
	) -> None:
		self._store = store
		self._presence = presence
		self._coordinator = coordinator
		self._clock = clock

	async def sweep_once(self) -> SweepReport:
		started = time.perf_counter()
		report = SweepReport()
		await self._evict_entries(report)
		await self._expire_attempts(report)
		await self._end_chats(report)
		await self._repair_entries(report)
		for action in ("evicted", "expired", "ended", "repaired"):
			obs_metrics.inc_reaper_action(action, getattr(report, action))
		if report.conflicts:
			obs_metrics.inc_reaper_action("conflict", report.conflicts)
		obs_metrics.observe_reaper_sweep(time.perf_counter() - started)
		if report.total():
			logger.info("reaper sweep", extra=report.as_dict())
		return report

	async def _evict_entries(self, report: SweepReport) -> None:
		now = self._clock()
		cutoff = settings.liveness_window_seconds * EVICTION_WINDOWS
		ids = await self._store.entry_ids()
		entries = {entry.id: entry for entry in await self._store.get_entries(ids)}
		dangling = [user_id for user_id in ids if user_id not in entries]
		await self._store.drop_index_members(ENTRIES_INDEX, dangling)
		for entry in entries.values():
			stale = now - entry.last_heartbeat >= cutoff
			if not stale and entry.status != "disconnected":
				continue
			reason = "stale" if stale else "disconnected"
			try:
				await self._coordinator.release(entry.id, reason=reason)
				if await self._presence.remove(entry.id, reason=reason):
					report.evicted += 1
			except ConflictError:
				report.conflicts += 1

	async def _expire_attempts(self, report: SweepReport) -> None:
		now = self._clock()
		stray: list[str] = []
		for match_id in await self._store.due_attempt_ids(now):
			attempt = await self._store.get_attempt(match_id)
			if attempt is None or attempt.status != "pending":
				stray.append(match_id)
				continue
			try:
				if await self._coordinator.expire(match_id):
					report.expired += 1
			except ConflictError:
				report.conflicts += 1
		await self._store.drop_index_members(PENDING_ATTEMPTS_INDEX, stray)

	async def _end_chats(self, report: SweepReport) -> None:
		now = self._clock()
		stray: list[str] = []
		for chat_id in await self._store.open_chat_ids():
			chat = await self._store.get_chat(chat_id)
			if chat is None or chat.status != "active":
				stray.append(chat_id)
				continue
			attached = [
				entry
				for entry in await self._store.get_entries(chat.participants())
				if entry.current_chat_id == chat.id and entry.status != "disconnected"
			]
			if len(attached) < 2:
				reason, guard = "abandoned", False
			elif now - chat.last_activity_at >= settings.chat_inactivity_seconds:
				reason, guard = "inactive", True
			else:
				continue
			try:
				await self._coordinator.end_chat(chat, reason=reason, guard_activity=guard)
				report.ended += 1
			except ConflictError:
				report.conflicts += 1
		await self._store.drop_index_members(OPEN_CHATS_INDEX, stray)

	async def _repair_entries(self, report: SweepReport) -> None:
		for entry in await self._store.list_entries():
			if entry.status not in ("matched", "connecting", "connected"):
				continue
			if await self._pointer_is_open(entry):
				continue
			try:
				await self._presence.requeue(entry, reason="stale_pointer")
				report.repaired += 1
			except ConflictError:
				report.conflicts += 1

	async def _pointer_is_open(self, entry: WaitingEntry) -> bool:
		if entry.status == "matched":
			if not entry.current_match_id:
				return False
			attempt = await self._store.get_attempt(entry.current_match_id)
			return attempt is not None and attempt.status == "pending" and attempt.includes(entry.id)
		if not entry.current_chat_id:
			return False
		chat = await self._store.get_chat(entry.current_chat_id)
		return chat is not None and chat.status == "active" and chat.includes(entry.id)

	async def purge_history(self, report: Optional[SweepReport] = None) -> SweepReport:
		"""Drop closed attempts and ended chats older than their retention."""
		report = report or SweepReport()
		now = self._clock()
		attempt_ids = await self._store.closed_attempt_ids(now - settings.attempt_retention_seconds)
		await self._store.purge_rows(
			CLOSED_ATTEMPTS_INDEX, [attempt_key(match_id) for match_id in attempt_ids], attempt_ids
		)
		chat_ids = await self._store.ended_chat_ids(now - settings.chat_retention_seconds)
		await self._store.purge_rows(ENDED_CHATS_INDEX, [chat_key(chat_id) for chat_id in chat_ids], chat_ids)
		report.purged_attempts += len(attempt_ids)
		report.purged_chats += len(chat_ids)
		obs_metrics.inc_reaper_action("purged_attempts", len(attempt_ids))
		obs_metrics.inc_reaper_action("purged_chats", len(chat_ids))
		if attempt_ids or chat_ids:
			logger.info(
				"reaper purge",
				extra={"purged_attempts": len(attempt_ids), "purged_chats": len(chat_ids)},
			)
		return report


async def run_reaper(reaper: Reaper, interval_s: Optional[float] = None) -> None:
	"""Sweep forever on a fixed interval until cancelled."""
	interval = max(1.0, float(interval_s or settings.reaper_interval_seconds))
	while True:
		await asyncio.sleep(interval)
		try:
			await reaper.sweep_once()
		except asyncio.CancelledError:
			raise
		except MatchmakingError as exc:
			logger.warning("reaper sweep aborted: %s", exc.code)
		except Exception:  # pragma: no cover
			logger.exception("reaper sweep failed")


async def purge_job(reaper: Reaper) -> None:
	started = time.perf_counter()
	try:
		await reaper.purge_history()
	except Exception:
		obs_metrics.record_job_run("mm_purge", result="error", duration_seconds=time.perf_counter() - started)
		logger.exception("retention purge failed")
		return
	obs_metrics.record_job_run("mm_purge", result="ok", duration_seconds=time.perf_counter() - started)


__all__ = ["Reaper", "SweepReport", "run_reaper", "purge_job", "EVICTION_WINDOWS"]
