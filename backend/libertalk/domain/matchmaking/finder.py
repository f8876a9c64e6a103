"""Match finder: tiered candidate search plus the atomic pair claim."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Sequence, Union

import ulid

from libertalk.domain.matchmaking import events
from libertalk.domain.matchmaking.backoff import BackoffPolicy, polling_policy
from libertalk.domain.matchmaking.confirmation import ConfirmationCoordinator
from libertalk.domain.matchmaking.errors import SessionLostError, StateError
from libertalk.domain.matchmaking.models import MatchAttempt, WaitingEntry
from libertalk.domain.matchmaking.presence import PresenceStore
from libertalk.domain.matchmaking.scoring import same_continent, same_language
from libertalk.domain.matchmaking.store import (
	PENDING_ATTEMPTS_INDEX,
	MatchStore,
	RowUpdate,
	attempt_key,
	entry_key,
	partners_key,
)
from libertalk.domain.matchmaking.tiers import (
	TIERS,
	Candidate,
	QueueSnapshot,
	Tier,
	TierPolicy,
	find_candidates,
)
from libertalk.obs import metrics as obs_metrics
from libertalk.settings import settings

logger = logging.getLogger(__name__)

_SEARCHING_GUARD = {"status": "searching", "current_match_id": None}


@dataclass(slots=True)
class MatchOffer:
	attempt: MatchAttempt
	requester_id: str
	partner: Optional[WaitingEntry] = None

	@property
	def partner_id(self) -> str:
		return self.attempt.partner_of(self.requester_id)

	@property
	def requires_confirmation(self) -> bool:
		return self.attempt.status == "pending"


@dataclass(slots=True)
class NoCandidate:
	total_waiting: int
	search_attempts: int
	retry_in_seconds: float


SearchOutcome = Union[MatchOffer, NoCandidate]


def current_tier_policy() -> TierPolicy:
	return TierPolicy(
		max_distance_km=settings.max_distance_km,
		desperate_after_attempts=settings.desperate_after_attempts,
	)


class MatchFinder:
	def __init__(
		self,
		store: MatchStore,
		*,
		clock: Callable[[], float] = time.time,
		polling: Optional[BackoffPolicy] = None,
		tiers: Sequence[Tier] = TIERS,
		presence: Optional[PresenceStore] = None,
		coordinator: Optional[ConfirmationCoordinator] = None,
	) -> None:
		self._store = store
		self._clock = clock
		self._presence = presence or PresenceStore(store, clock=clock)
		self._coordinator = coordinator or ConfirmationCoordinator(store, clock=clock)
		self._polling = polling or polling_policy()
		self._tiers = tuple(tiers)

	async def find_match(self, user_id: str) -> SearchOutcome:
		requester = await self._store.get_entry(user_id, with_partners=True)
		if requester is None:
			raise SessionLostError()
		now = self._clock()
		# Polling for a match is itself a sign of life
		await self._store.write_heartbeat(user_id, now=now, quality=requester.connection_quality)

		if requester.status in ("matched", "connecting", "connected") and requester.current_match_id:
			attempt = await self._store.get_attempt(requester.current_match_id)
			if attempt is None or not attempt.includes(user_id) or not attempt.is_open():
				# the pointer outlived its attempt; fall back to searching
				await self._presence.requeue(requester, reason="stale_match")
				requester = replace(requester, status="searching", current_match_id=None, current_chat_id=None)
			elif attempt.status == "pending" and now >= attempt.deadline:
				# an overdue offer is never handed out; time it out and search again
				await self._coordinator.expire(attempt.id)
				requester = await self._store.get_entry(user_id, with_partners=True)
				if requester is None:
					raise SessionLostError()
			else:
				partner = await self._store.get_entry(attempt.partner_of(user_id))
				obs_metrics.inc_match_search("existing")
				return MatchOffer(attempt=attempt, requester_id=user_id, partner=partner)
		if requester.status != "searching":
			raise StateError("not_searching", message=f"entry is {requester.status}")

		snapshot = await self.snapshot(now)
		found = find_candidates(snapshot, requester, current_tier_policy(), self._tiers)
		if found is None:
			attempts = await self._store.bump_search_attempts(user_id)
			if attempts is None:
				raise SessionLostError()
			obs_metrics.inc_match_search("none")
			return NoCandidate(
				total_waiting=len(snapshot),
				search_attempts=attempts,
				retry_in_seconds=self._polling.delay(attempts - 1),
			)
		tier, candidates = found
		attempt = await self.claim(requester, candidates[0], now=now)
		obs_metrics.inc_match_search("claimed")
		return MatchOffer(attempt=attempt, requester_id=user_id, partner=candidates[0].entry)

	async def snapshot(self, now: Optional[float] = None) -> QueueSnapshot:
		return QueueSnapshot.from_entries(
			await self._store.list_entries(),
			now=self._clock() if now is None else now,
			liveness_window_seconds=settings.liveness_window_seconds,
		)

	async def candidates_for(self, user_id: str) -> Optional[tuple[Tier, list[Candidate]]]:
		"""Evaluate the tiers for ``user_id`` without claiming anything."""
		requester = await self._store.get_entry(user_id, with_partners=True)
		if requester is None:
			raise SessionLostError()
		return find_candidates(await self.snapshot(), requester, current_tier_policy(), self._tiers)

	async def claim(self, requester: WaitingEntry, candidate: Candidate, *, now: Optional[float] = None) -> MatchAttempt:
		"""Flip both entries from searching to matched and create the attempt.

		Both rows are guarded on still being unclaimed; if either guard fails the
		whole write is dropped and :class:`ConflictError` propagates so the caller
		can search again from the top.
		"""
		now = self._clock() if now is None else now
		partner = candidate.entry
		attempt = MatchAttempt(
			id=ulid.new().str,
			user_a=requester.id,
			user_b=partner.id,
			chat_id=ulid.new().str,
			score=candidate.score,
			tier=candidate.tier,
			deadline=now + settings.confirmation_timeout_seconds,
			created_at=now,
			status="pending",
			distance_km=round(candidate.distance_km, 2) if candidate.distance_km is not None else None,
			language_match=same_language(requester, partner),
			continent_match=same_continent(requester, partner),
		)
		matched = {
			"status": "matched",
			"current_match_id": attempt.id,
			"search_attempts": "0",
			"updated_at": str(now),
		}

		def _effects(pipe) -> None:
			pipe.zadd(PENDING_ATTEMPTS_INDEX, {attempt.id: attempt.deadline})
			pipe.sadd(partners_key(requester.id), partner.id)
			pipe.sadd(partners_key(partner.id), requester.id)

		await self._store.compare_and_set(
			[
				RowUpdate(entry_key(requester.id), expect=_SEARCHING_GUARD, values=matched),
				RowUpdate(entry_key(partner.id), expect=_SEARCHING_GUARD, values=matched),
				RowUpdate(attempt_key(attempt.id), expect={"id": None}, values=attempt.to_row()),
			],
			side_effects=_effects,
			op="claim",
		)
		obs_metrics.inc_match_claimed(attempt.tier)
		logger.info(
			"match claimed",
			extra={"match_id": attempt.id, "tier": attempt.tier, "score": attempt.score},
		)
		await events.publish_many(
			events.MATCH_FOUND,
			{
				participant: {
					"matchId": attempt.id,
					"partnerId": attempt.partner_of(participant),
					"chatId": attempt.chat_id,
					"score": attempt.score,
					"tier": attempt.tier,
					"distanceKm": attempt.distance_km,
					"deadline": attempt.deadline,
					"status": "matched",
				}
				for participant in attempt.participants()
			},
		)
		return attempt
