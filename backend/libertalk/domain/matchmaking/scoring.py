"""Match score computation.

The score is diagnostic: it is reported with every match and used as the last
ordering key inside a tier, never to decide correctness.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from libertalk.domain.matchmaking.models import UNKNOWN_REGION, WaitingEntry

TIER_BASE_SCORES: dict[int, int] = {
	1: 100,
	2: 80,
	3: 60,
	4: 40,
	5: 20,
	6: 10,
}

LANGUAGE_BONUS = 30
CONTINENT_BONUS = 20
# (upper bound in km, bonus), checked in order
DISTANCE_BUCKETS: tuple[tuple[float, int], ...] = (
	(100.0, 25),
	(500.0, 15),
	(1000.0, 10),
	(2000.0, 5),
)
MAX_WAIT_BONUS = 30


@dataclass(slots=True, frozen=True)
class ScoreBreakdown:
	base: int
	language: int
	continent: int
	distance: int
	wait: int
	quality: int

	@property
	def total(self) -> int:
		return self.base + self.language + self.continent + self.distance + self.wait + self.quality


def same_language(a: WaitingEntry, b: WaitingEntry) -> bool:
	return a.language.lower() == b.language.lower()


def same_continent(a: WaitingEntry, b: WaitingEntry) -> bool:
	if a.continent == UNKNOWN_REGION or b.continent == UNKNOWN_REGION:
		return False
	return a.continent == b.continent


def distance_bonus(distance_km: Optional[float]) -> int:
	if distance_km is None:
		return 0
	for limit, bonus in DISTANCE_BUCKETS:
		if distance_km < limit:
			return bonus
	return 0


def wait_bonus(candidate: WaitingEntry, now: float) -> int:
	minutes = int(candidate.waited_seconds(now) // 60)
	return min(MAX_WAIT_BONUS, minutes)


def quality_bonus(candidate: WaitingEntry) -> int:
	quality = max(0, min(100, int(candidate.connection_quality)))
	return quality // 10


def score_breakdown(
	tier: int,
	requester: WaitingEntry,
	candidate: WaitingEntry,
	distance_km: Optional[float],
	now: float,
) -> ScoreBreakdown:
	return ScoreBreakdown(
		base=TIER_BASE_SCORES.get(tier, 0),
		language=LANGUAGE_BONUS if same_language(requester, candidate) else 0,
		continent=CONTINENT_BONUS if same_continent(requester, candidate) else 0,
		distance=distance_bonus(distance_km),
		wait=wait_bonus(candidate, now),
		quality=quality_bonus(candidate),
	)


def score_match(
	tier: int,
	requester: WaitingEntry,
	candidate: WaitingEntry,
	distance_km: Optional[float],
	now: float,
) -> int:
	return score_breakdown(tier, requester, candidate, distance_km, now).total
