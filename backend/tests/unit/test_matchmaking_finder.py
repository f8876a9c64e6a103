import asyncio

import pytest

from libertalk.domain.matchmaking.errors import ConflictError, SessionLostError, StateError
from libertalk.domain.matchmaking.finder import MatchOffer, NoCandidate
from libertalk.domain.matchmaking.presence import JoinProfile
from libertalk.settings import settings

PARIS = (48.8566, 2.3522)


async def _join(service, device, **profile):
	placement = await service.join(device, JoinProfile(**profile))
	return placement.entry.id


async def _assert_consistent(service):
	"""Every matched entry points at one pending attempt that names it."""
	seen: dict[str, str] = {}
	for entry in await service.store.list_entries():
		if entry.status != "matched":
			assert entry.current_match_id is None
			continue
		attempt = await service.store.get_attempt(entry.current_match_id)
		assert attempt is not None and attempt.status == "pending"
		assert attempt.includes(entry.id)
		assert entry.id not in seen
		seen[entry.id] = attempt.id
	for user_id, match_id in seen.items():
		attempt = await service.store.get_attempt(match_id)
		assert seen.get(attempt.partner_of(user_id)) == match_id


@pytest.mark.asyncio
async def test_nearby_pair_matches_in_first_tier(service, clock, fake_redis):
	x = await _join(service, "dx", continent="Europe", language="fr", lat=PARIS[0], lon=PARIS[1])
	clock.advance(0.5)
	y = await _join(service, "dy", continent="Europe", language="fr", lat=PARIS[0] + 0.09, lon=PARIS[1])

	offer = await service.find_match(x)
	assert isinstance(offer, MatchOffer)
	assert offer.partner_id == y
	assert offer.attempt.tier == 1
	assert offer.attempt.distance_km == pytest.approx(10.0, abs=0.5)
	assert offer.requires_confirmation
	assert offer.attempt.deadline == clock.now + settings.confirmation_timeout_seconds

	for user_id in (x, y):
		entry = await service.store.get_entry(user_id)
		assert entry.status == "matched"
		assert entry.current_match_id == offer.attempt.id
	assert await fake_redis.smembers(f"mm:prev:{x}") == {y}
	assert await fake_redis.zscore("mm:attempts:pending", offer.attempt.id) == offer.attempt.deadline
	await _assert_consistent(service)


@pytest.mark.asyncio
async def test_unrelated_pair_matches_in_anyone_tier(service):
	x = await _join(service, "dx", continent="Europe", language="fr")
	z = await _join(service, "dz", continent="Asia", language="en")
	offer = await service.find_match(x)
	assert offer.partner_id == z
	assert offer.attempt.tier == 5
	assert offer.attempt.distance_km is None


@pytest.mark.asyncio
async def test_no_candidate_counts_attempts_and_hints_retry(service):
	x = await _join(service, "dx")
	first = await service.find_match(x)
	second = await service.find_match(x)
	assert isinstance(first, NoCandidate) and isinstance(second, NoCandidate)
	assert (first.search_attempts, second.search_attempts) == (1, 2)
	assert first.total_waiting == 1
	assert settings.poll_base_delay_seconds <= second.retry_in_seconds <= settings.poll_max_delay_seconds


@pytest.mark.asyncio
async def test_stale_entries_are_not_offered(service, clock):
	x = await _join(service, "dx")
	clock.advance(settings.liveness_window_seconds + 1)
	y = await _join(service, "dy")
	outcome = await service.find_match(y)
	assert isinstance(outcome, NoCandidate)
	# polling refreshed y only
	assert (await service.store.get_entry(x)).status == "searching"


@pytest.mark.asyncio
async def test_find_match_is_retriable_and_returns_open_attempt(service):
	x = await _join(service, "dx")
	y = await _join(service, "dy")
	offer = await service.find_match(x)
	again_x = await service.find_match(x)
	from_y = await service.find_match(y)
	assert again_x.attempt.id == offer.attempt.id
	assert from_y.attempt.id == offer.attempt.id
	assert from_y.partner_id == x


@pytest.mark.asyncio
async def test_losing_claim_conflicts_then_sees_winning_attempt(service):
	x = await _join(service, "dx")
	y = await _join(service, "dy")
	x_entry = await service.store.get_entry(x, with_partners=True)
	y_entry = await service.store.get_entry(y, with_partners=True)
	_, x_candidates = await service.finder.candidates_for(x)
	_, y_candidates = await service.finder.candidates_for(y)

	winner = await service.finder.claim(y_entry, y_candidates[0])
	with pytest.raises(ConflictError):
		await service.finder.claim(x_entry, x_candidates[0])

	outcome = await service.find_match(x)
	assert outcome.attempt.id == winner.id
	assert await service.store.count_pending_attempts() == 1
	await _assert_consistent(service)


@pytest.mark.asyncio
async def test_third_party_losing_a_claim_searches_again(service, clock):
	y = await _join(service, "dy")
	clock.advance(1)
	x = await _join(service, "dx")
	clock.advance(1)
	z = await _join(service, "dz")
	x_entry = await service.store.get_entry(x, with_partners=True)
	_, x_candidates = await service.finder.candidates_for(x)
	assert x_candidates[0].entry.id == y

	await service.find_match(z)
	with pytest.raises(ConflictError):
		await service.finder.claim(x_entry, x_candidates[0])
	outcome = await service.find_match(x)
	assert isinstance(outcome, NoCandidate)
	await _assert_consistent(service)


@pytest.mark.asyncio
async def test_concurrent_searches_never_double_book(service):
	users = [await _join(service, f"device-{idx}") for idx in range(6)]
	results = await asyncio.gather(*(service.find_match(user) for user in users), return_exceptions=True)
	for result in results:
		assert isinstance(result, (MatchOffer, NoCandidate, ConflictError))
	await _assert_consistent(service)


@pytest.mark.asyncio
async def test_desperate_tier_reuses_previous_partner_after_n_polls(service, monkeypatch):
	monkeypatch.setattr(settings, "desperate_after_attempts", 3)
	x = await _join(service, "dx")
	y = await _join(service, "dy")
	offer = await service.find_match(x)
	await service.skip(x, offer.attempt.id)

	for expected in (1, 2, 3):
		outcome = await service.find_match(x)
		assert isinstance(outcome, NoCandidate)
		assert outcome.search_attempts == expected
	outcome = await service.find_match(x)
	assert isinstance(outcome, MatchOffer)
	assert outcome.partner_id == y
	assert outcome.attempt.tier == 6


@pytest.mark.asyncio
async def test_stale_match_pointer_is_repaired_before_searching(service, fake_redis):
	x = await _join(service, "dx")
	y = await _join(service, "dy")
	await fake_redis.hset(f"mm:entry:{x}", mapping={"status": "matched", "current_match_id": "gone"})
	outcome = await service.find_match(x)
	assert isinstance(outcome, MatchOffer)
	assert outcome.partner_id == y


@pytest.mark.asyncio
async def test_find_match_requires_a_live_entry(service):
	with pytest.raises(SessionLostError):
		await service.find_match("missing")


@pytest.mark.asyncio
async def test_find_match_rejects_disconnected_entry(service, fake_redis):
	x = await _join(service, "dx")
	await fake_redis.hset(f"mm:entry:{x}", "status", "disconnected")
	with pytest.raises(StateError):
		await service.find_match(x)


@pytest.mark.asyncio
async def test_entry_removed_mid_search_is_reported_lost(service, fake_redis, monkeypatch):
	x = await _join(service, "dx")
	list_entries = service.store.list_entries

	async def _leave_then_list():
		await service.presence.remove(x, reason="left")
		return await list_entries()

	monkeypatch.setattr(service.store, "list_entries", _leave_then_list)
	with pytest.raises(SessionLostError):
		await service.find_match(x)
	assert await fake_redis.exists(f"mm:entry:{x}") == 0


@pytest.mark.asyncio
async def test_overdue_offer_is_expired_instead_of_returned(service, clock):
	x = await _join(service, "dx")
	clock.advance(1)
	y = await _join(service, "dy")
	clock.advance(1)
	z = await _join(service, "dz")
	offer = await service.find_match(x)
	assert offer.partner_id == y

	clock.advance(settings.confirmation_timeout_seconds + 1)
	again = await service.find_match(x)
	assert (await service.store.get_attempt(offer.attempt.id)).status == "timeout"
	assert isinstance(again, MatchOffer)
	assert again.attempt.id != offer.attempt.id
	assert again.partner_id == z
	assert again.attempt.deadline > clock.now
	assert (await service.store.get_entry(y)).status == "searching"
