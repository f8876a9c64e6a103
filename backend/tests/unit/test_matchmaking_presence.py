import pytest

from libertalk.domain.matchmaking.errors import SessionLostError, ValidationError
from libertalk.domain.matchmaking.presence import JoinProfile, PresenceStore, estimate_wait_seconds
from libertalk.domain.matchmaking.store import MatchStore


@pytest.fixture
def presence(clock):
	return PresenceStore(MatchStore(), clock=clock)


@pytest.mark.asyncio
async def test_join_creates_searching_entry(presence, clock, fake_redis):
	entry = await presence.join("device-1", JoinProfile(continent="Europe", language="FR", lat=48.8, lon=2.3))
	stored = await presence.get(entry.id)
	assert stored.status == "searching"
	assert stored.language == "fr"
	assert stored.last_heartbeat == clock.now
	assert stored.search_attempts == 0
	assert await fake_redis.zscore("mm:entries", entry.id) == clock.now


@pytest.mark.asyncio
async def test_join_is_an_upsert_per_device(presence, clock):
	first = await presence.join("device-1", JoinProfile(continent="Europe"))
	clock.advance(5)
	second = await presence.join("device-1", JoinProfile(continent="Asia"))
	assert second.id == first.id
	assert second.session_id != first.session_id
	stored = await presence.get(first.id)
	assert stored.continent == "Asia"
	assert stored.joined_at == clock.now


@pytest.mark.asyncio
async def test_join_defaults_unknown_region_and_english():
	profile = JoinProfile(continent="  ", country="", language="").validated()
	assert (profile.continent, profile.country, profile.language) == ("Unknown", "Unknown", "en")


@pytest.mark.parametrize(
	"profile",
	[
		JoinProfile(lat=10.0),
		JoinProfile(lat=95.0, lon=0.0),
		JoinProfile(continent="x" * 65),
	],
)
def test_join_profile_validation(profile):
	with pytest.raises(ValidationError):
		profile.validated()


@pytest.mark.asyncio
async def test_join_requires_device_id(presence):
	with pytest.raises(ValidationError):
		await presence.join("  ", JoinProfile())


@pytest.mark.asyncio
async def test_heartbeat_refreshes_liveness(presence, clock):
	entry = await presence.join("device-1", JoinProfile())
	clock.advance(30)
	await presence.heartbeat(entry.id, 70)
	stored = await presence.get(entry.id)
	assert stored.last_heartbeat == clock.now
	assert stored.connection_quality == 70


@pytest.mark.asyncio
async def test_heartbeat_for_unknown_entry_reports_session_lost(presence):
	with pytest.raises(SessionLostError):
		await presence.heartbeat("nobody", 100)


@pytest.mark.asyncio
async def test_heartbeat_rejects_out_of_range_quality(presence):
	entry = await presence.join("device-1", JoinProfile())
	with pytest.raises(ValidationError):
		await presence.heartbeat(entry.id, 101)


@pytest.mark.asyncio
async def test_remove_deletes_entry_and_keeps_identity(presence, fake_redis):
	entry = await presence.join("device-1", JoinProfile())
	assert await presence.remove(entry.id) is True
	assert await presence.remove(entry.id) is False
	with pytest.raises(SessionLostError):
		await presence.get(entry.id)
	assert await fake_redis.zscore("mm:entries", entry.id) is None
	assert await fake_redis.hget("mm:device:device-1", "user_id") == entry.id
	assert await fake_redis.ttl("mm:device:device-1") > 0

	again = await presence.join("device-1", JoinProfile())
	assert again.id == entry.id
	assert await fake_redis.ttl("mm:device:device-1") == -1


@pytest.mark.asyncio
async def test_placement_counts_live_entries_ahead(presence, clock):
	first = await presence.join("device-1", JoinProfile())
	clock.advance(1)
	await presence.join("device-2", JoinProfile())
	clock.advance(1)
	third = await presence.join("device-3", JoinProfile())
	placement = await presence.placement(third)
	assert placement.queue_position == 2
	assert placement.total_waiting == 3
	assert placement.estimated_wait_seconds == 10
	assert (await presence.placement(first)).queue_position == 0


def test_estimated_wait_has_a_floor():
	assert estimate_wait_seconds(0) == 10
	assert estimate_wait_seconds(7) == 35
