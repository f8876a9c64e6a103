"""Matchmaking service: the single entry point for queue operations.

The HTTP routes, the socket namespace and the background reaper all go through
:class:`MatchmakingService`, which wires the presence store, the match finder,
the confirmation coordinator and the reaper to one :class:`MatchStore` and
applies rate limits and retry policies around them.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from libertalk.domain.matchmaking.backoff import (
	BackoffPolicy,
	conflict_policy,
	polling_policy,
	transient_policy,
)
from libertalk.domain.matchmaking.confirmation import ConfirmationCoordinator, ConfirmResult
from libertalk.domain.matchmaking.errors import ConflictError, MatchmakingError, TransientError
from libertalk.domain.matchmaking.finder import MatchFinder, SearchOutcome
from libertalk.domain.matchmaking.presence import (
	JoinProfile,
	PresenceStore,
	QueuePlacement,
	validate_device_id,
)
from libertalk.domain.matchmaking.reaper import Reaper, SweepReport
from libertalk.domain.matchmaking.stats import QueueStats, StatsAggregator
from libertalk.domain.matchmaking.store import MatchStore
from libertalk.infra.rate_limit import RateLimitExceeded, allow
from libertalk.obs import metrics as obs_metrics
from libertalk.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class EntryStatusView:
	user_id: str
	status: str
	live: bool
	match_id: Optional[str]
	chat_id: Optional[str]
	search_attempts: int
	last_heartbeat: float


class MatchmakingService:
	def __init__(
		self,
		store: Optional[MatchStore] = None,
		*,
		clock: Callable[[], float] = time.time,
		rng: Callable[[], float] = random.random,
		conflict: Optional[BackoffPolicy] = None,
		transient: Optional[BackoffPolicy] = None,
		polling: Optional[BackoffPolicy] = None,
	) -> None:
		self.store = store or MatchStore()
		self._clock = clock
		self._rng = rng
		self._conflict = conflict or conflict_policy()
		self._transient = transient or transient_policy()
		self.presence = PresenceStore(self.store, clock=clock)
		self.coordinator = ConfirmationCoordinator(self.store, clock=clock)
		self.finder = MatchFinder(
			self.store,
			clock=clock,
			polling=polling or polling_policy(),
			presence=self.presence,
			coordinator=self.coordinator,
		)
		self.reaper = Reaper(self.store, self.presence, self.coordinator, clock=clock)
		self.stats_aggregator = StatsAggregator(self.store, clock=clock)

	async def _call(self, fn: Callable[[], Awaitable[T]], *, conflict: bool = True) -> T:
		"""Run ``fn`` with store-outage retries and, optionally, conflict retries."""

		async def _once() -> T:
			try:
				return await fn()
			except (RedisConnectionError, RedisTimeoutError) as exc:
				raise TransientError(message=str(exc) or "store unavailable") from exc

		async def _with_transient() -> T:
			return await self._transient.run(_once, retry_on=(TransientError,))

		if not conflict:
			return await _with_transient()
		return await self._conflict.run(_with_transient, retry_on=(ConflictError,))

	async def _enforce(self, kind: str, actor_id: str, limit: int) -> None:
		if not await self._call(lambda: allow(kind, actor_id, limit=limit), conflict=False):
			obs_metrics.inc_rate_limited(kind)
			raise RateLimitExceeded(kind)

	# --- presence ---------------------------------------------------------------

	async def join(self, device_id: str, profile: JoinProfile) -> QueuePlacement:
		device_id = validate_device_id(device_id)
		await self._enforce("mm_join", device_id, settings.join_rate_limit_per_minute)

		async def _join():
			owner = await self.store.device_owner(device_id)
			if owner:
				await self.coordinator.release(owner, reason="rejoined")
			return await self.presence.join(device_id, profile)

		entry = await self._call(_join)
		placement = await self._call(lambda: self.presence.placement(entry), conflict=False)
		if self._rng() < settings.reaper_sweep_probability:
			try:
				await self._call(self.reaper.sweep_once, conflict=False)
			except MatchmakingError as exc:
				logger.warning("opportunistic sweep failed: %s", exc.code)
		return placement

	async def heartbeat(self, user_id: str, quality: int = 100) -> None:
		await self._call(lambda: self.presence.heartbeat(user_id, quality), conflict=False)

	async def leave(self, user_id: str) -> bool:
		"""Remove ``user_id`` from the queue, releasing any partner. Idempotent."""

		async def _leave() -> bool:
			await self.coordinator.release(user_id, reason="left")
			return await self.presence.remove(user_id, reason="left")

		return await self._call(_leave)

	async def status(self, user_id: str) -> EntryStatusView:
		entry = await self._call(lambda: self.presence.get(user_id), conflict=False)
		return EntryStatusView(
			user_id=entry.id,
			status=entry.status,
			live=entry.is_live(self._clock(), settings.liveness_window_seconds),
			match_id=entry.current_match_id,
			chat_id=entry.current_chat_id,
			search_attempts=entry.search_attempts,
			last_heartbeat=entry.last_heartbeat,
		)

	# --- matching ---------------------------------------------------------------

	async def find_match(self, user_id: str) -> SearchOutcome:
		await self._enforce("mm_match", user_id, settings.match_rate_limit_per_minute)
		return await self._call(lambda: self.finder.find_match(user_id))

	async def confirm(self, user_id: str, match_id: str) -> ConfirmResult:
		return await self._call(lambda: self.coordinator.confirm(user_id, match_id))

	async def skip(self, user_id: str, match_id: str) -> str:
		return await self._call(lambda: self.coordinator.skip(user_id, match_id))

	# --- chat sessions ------------------------------------------------------------

	async def end_session(self, user_id: str, chat_id: str) -> str:
		return await self._call(lambda: self.coordinator.end_session(user_id, chat_id))

	async def touch_session(self, user_id: str, chat_id: str) -> None:
		await self._call(lambda: self.coordinator.touch_session(user_id, chat_id), conflict=False)

	# --- maintenance --------------------------------------------------------------

	async def stats(self) -> QueueStats:
		return await self._call(self.stats_aggregator.snapshot, conflict=False)

	async def sweep(self) -> SweepReport:
		report = await self._call(self.reaper.sweep_once, conflict=False)
		return await self._call(lambda: self.reaper.purge_history(report), conflict=False)


_service: Optional[MatchmakingService] = None


def get_service() -> MatchmakingService:
	global _service
	if _service is None:
		_service = MatchmakingService()
	return _service


def reset_service(service: Optional[MatchmakingService] = None) -> None:
	global _service
	_service = service


__all__ = ["MatchmakingService", "EntryStatusView", "get_service", "reset_service"]
