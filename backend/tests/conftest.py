import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from libertalk.domain.matchmaking import service as service_module
from libertalk.domain.matchmaking.backoff import BackoffPolicy
from libertalk.domain.matchmaking.service import MatchmakingService
from libertalk.domain.matchmaking.store import MatchStore
from libertalk.main import app
from libertalk.settings import settings


# Ensure a selector-based event loop policy on Windows to avoid Proactor issues with async IO
if hasattr(asyncio, "WindowsSelectorEventLoopPolicy"):
	try:
		asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
	except Exception:
		pass


class FakeClock:
	"""Manually advanced wall clock for deterministic liveness and deadlines."""

	def __init__(self, start: float = 1_700_000_000.0) -> None:
		self.now = start

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> float:
		self.now += seconds
		return self.now


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from libertalk.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def force_test_settings(monkeypatch):
	"""Keep background sweeps out of request paths and use the dev environment."""
	monkeypatch.setattr(settings, "environment", "dev")
	monkeypatch.setattr(settings, "reaper_sweep_probability", 0.0)
	monkeypatch.setattr(settings, "reaper_enabled", False)
	service_module.reset_service()
	yield
	service_module.reset_service()


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


def fast_policy(attempts: int = 4) -> BackoffPolicy:
	return BackoffPolicy(max_attempts=attempts, base_delay=0.001, max_delay=0.005, jitter=0.0)


@pytest.fixture
def service(clock) -> MatchmakingService:
	return MatchmakingService(
		MatchStore(),
		clock=clock,
		rng=lambda: 1.0,
		conflict=fast_policy(),
		transient=fast_policy(2),
	)


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
