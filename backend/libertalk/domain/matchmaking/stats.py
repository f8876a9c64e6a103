"""Read-only queue composition snapshot."""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable

from libertalk.domain.matchmaking.store import MatchStore
from libertalk.domain.matchmaking.tiers import QueueSnapshot
from libertalk.obs import metrics as obs_metrics
from libertalk.settings import settings


@dataclass(slots=True)
class QueueStats:
	total_waiting: int
	by_continent: dict[str, int] = field(default_factory=dict)
	by_language: dict[str, int] = field(default_factory=dict)
	average_wait_seconds: float = 0.0
	pending_matches: int = 0
	active_sessions: int = 0


class StatsAggregator:
	"""Eventually consistent counts over live searching entries; never writes rows."""

	def __init__(self, store: MatchStore, *, clock: Callable[[], float] = time.time) -> None:
		self._store = store
		self._clock = clock

	async def snapshot(self) -> QueueStats:
		now = self._clock()
		queue = QueueSnapshot.from_entries(
			await self._store.list_entries(),
			now=now,
			liveness_window_seconds=settings.liveness_window_seconds,
		)
		continents = Counter(entry.continent for entry in queue.entries)
		languages = Counter(entry.language for entry in queue.entries)
		waits = [entry.waited_seconds(now) for entry in queue.entries]
		average = round(sum(waits) / len(waits), 1) if waits else 0.0
		obs_metrics.set_queue_waiting(len(queue))
		return QueueStats(
			total_waiting=len(queue),
			by_continent=dict(continents),
			by_language=dict(languages),
			average_wait_seconds=average,
			pending_matches=await self._store.count_pending_attempts(),
			active_sessions=await self._store.count_open_chats(),
		)
