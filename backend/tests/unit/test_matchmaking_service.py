import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from libertalk.domain.matchmaking.backoff import BackoffPolicy
from libertalk.domain.matchmaking.errors import SessionLostError, TransientError
from libertalk.domain.matchmaking.presence import JoinProfile
from libertalk.domain.matchmaking.service import MatchmakingService
from libertalk.domain.matchmaking.store import MatchStore
from libertalk.infra.rate_limit import RateLimitExceeded
from libertalk.settings import settings


@pytest.mark.asyncio
async def test_join_reports_queue_position_and_wait(service, clock):
	await service.join("d1", JoinProfile())
	clock.advance(1)
	placement = await service.join("d2", JoinProfile())
	assert placement.queue_position == 1
	assert placement.total_waiting == 2
	assert placement.estimated_wait_seconds == 10


@pytest.mark.asyncio
async def test_rejoin_releases_previous_match(service):
	x = (await service.join("dx", JoinProfile())).entry.id
	y = (await service.join("dy", JoinProfile())).entry.id
	offer = await service.find_match(x)

	again = await service.join("dx", JoinProfile())
	assert again.entry.id == x
	assert again.entry.status == "searching"
	assert (await service.store.get_attempt(offer.attempt.id)).status == "rejected"
	assert (await service.store.get_entry(y)).status == "searching"


@pytest.mark.asyncio
async def test_leave_is_idempotent(service):
	x = (await service.join("dx", JoinProfile())).entry.id
	assert await service.leave(x) is True
	assert await service.leave(x) is False
	assert await service.leave("never-joined") is False


@pytest.mark.asyncio
async def test_status_view(service, clock):
	x = (await service.join("dx", JoinProfile())).entry.id
	view = await service.status(x)
	assert (view.status, view.live, view.match_id) == ("searching", True, None)
	clock.advance(settings.liveness_window_seconds)
	assert (await service.status(x)).live is False
	with pytest.raises(SessionLostError):
		await service.status("missing")


@pytest.mark.asyncio
async def test_stats_snapshot(service):
	await service.join("d1", JoinProfile(continent="Europe", language="fr"))
	await service.join("d2", JoinProfile(continent="Europe", language="en"))
	a = (await service.join("d3", JoinProfile(continent="Asia", language="en"))).entry.id
	await service.find_match(a)

	stats = await service.stats()
	# the matched pair is no longer waiting
	assert stats.total_waiting == 1
	assert stats.pending_matches == 1
	assert stats.active_sessions == 0
	assert sum(stats.by_continent.values()) == 1
	assert sum(stats.by_language.values()) == 1


@pytest.mark.asyncio
async def test_stats_average_wait(service, clock):
	await service.join("d1", JoinProfile(continent="Europe", language="fr"))
	clock.advance(20)
	await service.join("d2", JoinProfile(continent="Asia", language="en"))
	stats = await service.stats()
	assert stats.total_waiting == 2
	assert stats.by_continent == {"Europe": 1, "Asia": 1}
	assert stats.by_language == {"fr": 1, "en": 1}
	assert stats.average_wait_seconds == 10.0


@pytest.mark.asyncio
async def test_join_rate_limit(service, monkeypatch):
	monkeypatch.setattr(settings, "join_rate_limit_per_minute", 2)
	await service.join("dx", JoinProfile())
	await service.join("dx", JoinProfile())
	with pytest.raises(RateLimitExceeded):
		await service.join("dx", JoinProfile())


@pytest.mark.asyncio
async def test_store_outage_surfaces_as_transient(clock, monkeypatch):
	store = MatchStore()

	async def _down(*args, **kwargs):
		raise RedisConnectionError("connection refused")

	monkeypatch.setattr(store, "entry_exists", _down)
	fast = BackoffPolicy(max_attempts=2, base_delay=0.001, max_delay=0.001, jitter=0.0)
	service = MatchmakingService(store, clock=clock, rng=lambda: 1.0, transient=fast)
	with pytest.raises(TransientError):
		await service.heartbeat("someone", 100)
