"""Ranked candidate strategies for the match finder.

Each tier is a pure function ``(snapshot, requester, policy) -> candidates``.
:func:`find_candidates` walks them in order and stops at the first tier that
returns anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Sequence

from libertalk.domain.matchmaking.geo import distance_between
from libertalk.domain.matchmaking.models import WaitingEntry
from libertalk.domain.matchmaking.scoring import same_continent, same_language, score_match


@dataclass(slots=True, frozen=True)
class TierPolicy:
	max_distance_km: float = 500.0
	desperate_after_attempts: int = 10


@dataclass(slots=True)
class QueueSnapshot:
	"""Live searching entries at one instant, oldest join first."""

	now: float
	entries: list[WaitingEntry]

	@classmethod
	def from_entries(
		cls,
		entries: Iterable[WaitingEntry],
		*,
		now: float,
		liveness_window_seconds: float,
	) -> "QueueSnapshot":
		live = [
			entry
			for entry in entries
			if entry.status == "searching" and entry.is_live(now, liveness_window_seconds)
		]
		live.sort(key=lambda entry: (entry.joined_at, entry.id))
		return cls(now=now, entries=live)

	def __len__(self) -> int:
		return len(self.entries)


@dataclass(slots=True, frozen=True)
class Candidate:
	entry: WaitingEntry
	tier: int
	distance_km: Optional[float]
	score: int


Strategy = Callable[[QueueSnapshot, WaitingEntry, TierPolicy], list[Candidate]]


@dataclass(slots=True, frozen=True)
class Tier:
	number: int
	name: str
	select: Strategy


def _eligible(
	snapshot: QueueSnapshot,
	requester: WaitingEntry,
	*,
	exclude_previous: bool = True,
) -> Iterator[WaitingEntry]:
	for entry in snapshot.entries:
		if entry.id == requester.id or entry.device_id == requester.device_id:
			continue
		if exclude_previous and entry.id in requester.previous_partners:
			continue
		yield entry


def _build(tier: int, entries: Iterable[WaitingEntry], requester: WaitingEntry, now: float) -> list[Candidate]:
	result: list[Candidate] = []
	for entry in entries:
		distance = distance_between(requester, entry)
		result.append(
			Candidate(
				entry=entry,
				tier=tier,
				distance_km=distance,
				score=score_match(tier, requester, entry, distance, now),
			)
		)
	return result


def _fifo(candidates: list[Candidate]) -> list[Candidate]:
	return sorted(candidates, key=lambda c: (c.entry.joined_at, -c.score, c.entry.id))


def nearby_same_language(snapshot: QueueSnapshot, requester: WaitingEntry, policy: TierPolicy) -> list[Candidate]:
	if not requester.has_location:
		return []
	pool = [
		entry
		for entry in _eligible(snapshot, requester)
		if entry.has_location and same_continent(requester, entry) and same_language(requester, entry)
	]
	candidates = [
		candidate
		for candidate in _build(1, pool, requester, snapshot.now)
		if candidate.distance_km is not None and candidate.distance_km <= policy.max_distance_km
	]
	return sorted(candidates, key=lambda c: (c.distance_km, c.entry.joined_at, -c.score, c.entry.id))


def continent_and_language(snapshot: QueueSnapshot, requester: WaitingEntry, policy: TierPolicy) -> list[Candidate]:
	pool = [
		entry
		for entry in _eligible(snapshot, requester)
		if same_continent(requester, entry) and same_language(requester, entry)
	]
	return _fifo(_build(2, pool, requester, snapshot.now))


def continent_only(snapshot: QueueSnapshot, requester: WaitingEntry, policy: TierPolicy) -> list[Candidate]:
	pool = [entry for entry in _eligible(snapshot, requester) if same_continent(requester, entry)]
	return _fifo(_build(3, pool, requester, snapshot.now))


def language_only(snapshot: QueueSnapshot, requester: WaitingEntry, policy: TierPolicy) -> list[Candidate]:
	pool = [entry for entry in _eligible(snapshot, requester) if same_language(requester, entry)]
	return _fifo(_build(4, pool, requester, snapshot.now))


def anyone_waiting(snapshot: QueueSnapshot, requester: WaitingEntry, policy: TierPolicy) -> list[Candidate]:
	return _fifo(_build(5, _eligible(snapshot, requester), requester, snapshot.now))


def desperate(snapshot: QueueSnapshot, requester: WaitingEntry, policy: TierPolicy) -> list[Candidate]:
	if requester.search_attempts < policy.desperate_after_attempts:
		return []
	pool = _eligible(snapshot, requester, exclude_previous=False)
	return _fifo(_build(6, pool, requester, snapshot.now))


TIERS: tuple[Tier, ...] = (
	Tier(1, "nearby_same_language", nearby_same_language),
	Tier(2, "continent_and_language", continent_and_language),
	Tier(3, "continent_only", continent_only),
	Tier(4, "language_only", language_only),
	Tier(5, "anyone_waiting", anyone_waiting),
	Tier(6, "desperate", desperate),
)


def find_candidates(
	snapshot: QueueSnapshot,
	requester: WaitingEntry,
	policy: TierPolicy,
	tiers: Sequence[Tier] = TIERS,
) -> Optional[tuple[Tier, list[Candidate]]]:
	"""Return the first tier with a non-empty candidate list, best candidate first."""
	for tier in tiers:
		candidates = tier.select(snapshot, requester, policy)
		if candidates:
			return tier, candidates
	return None
