"""Retry and polling backoff policy."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from libertalk.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class BackoffPolicy:
	"""Capped exponential backoff with proportional jitter.

	``delay(n)`` is the wait before retry ``n`` (0-based) and always lies within
	``[base_delay, max_delay]``. ``run`` stops after ``max_attempts`` calls or once
	the next wait would overrun ``timeout`` seconds, re-raising the last error.
	"""

	max_attempts: int = 3
	base_delay: float = 0.1
	max_delay: float = 1.0
	multiplier: float = 2.0
	jitter: float = 0.1
	timeout: Optional[float] = None
	rng: Callable[[], float] = field(default=random.random, repr=False)

	def delay(self, attempt: int) -> float:
		raw = self.base_delay * (self.multiplier ** max(0, attempt))
		capped = min(self.max_delay, raw)
		if self.jitter > 0:
			spread = (self.rng() * 2.0 - 1.0) * self.jitter
			capped = capped * (1.0 + spread)
		return round(max(self.base_delay, min(self.max_delay, capped)), 3)

	async def run(
		self,
		fn: Callable[[], Awaitable[T]],
		*,
		retry_on: Tuple[Type[BaseException], ...] = (Exception,),
		sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
		clock: Callable[[], float] = time.monotonic,
	) -> T:
		started = clock()
		attempt = 0
		while True:
			try:
				return await fn()
			except retry_on as exc:
				attempt += 1
				if attempt >= self.max_attempts:
					raise
				wait = self.delay(attempt - 1)
				if self.timeout is not None and (clock() - started) + wait > self.timeout:
					raise
				logger.debug("retrying after %s (attempt %s, wait %.3fs)", type(exc).__name__, attempt, wait)
				await sleep(wait)


def polling_policy() -> BackoffPolicy:
	"""Hint handed to clients polling findMatch."""
	return BackoffPolicy(
		max_attempts=1_000_000,
		base_delay=settings.poll_base_delay_seconds,
		max_delay=settings.poll_max_delay_seconds,
		multiplier=settings.poll_multiplier,
		jitter=settings.poll_jitter,
	)


def conflict_policy() -> BackoffPolicy:
	return BackoffPolicy(
		max_attempts=settings.conflict_max_attempts,
		base_delay=settings.conflict_base_delay_seconds,
		max_delay=settings.conflict_max_delay_seconds,
		multiplier=2.0,
		jitter=0.5,
	)


def transient_policy() -> BackoffPolicy:
	return BackoffPolicy(
		max_attempts=settings.transient_max_attempts,
		base_delay=settings.transient_base_delay_seconds,
		max_delay=settings.transient_max_delay_seconds,
		multiplier=2.0,
		jitter=0.2,
		timeout=settings.transient_timeout_seconds,
	)


__all__ = ["BackoffPolicy", "polling_policy", "conflict_policy", "transient_policy"]
