import pytest

from libertalk.settings import settings


async def _join(api_client, device_id: str, **profile) -> dict:
	resp = await api_client.post("/queue/join", json={"deviceId": device_id, **profile})
	assert resp.status_code == 200, resp.text
	return resp.json()


@pytest.mark.asyncio
async def test_join_returns_camel_case_placement(api_client):
	body = await _join(api_client, "device-1", continent="Europe", country="France", city="Paris", language="fr")
	assert body["success"] is True
	assert body["userId"]
	assert body["sessionId"]
	assert body["queuePosition"] == 0
	assert body["estimatedWaitSeconds"] == 10
	assert body["totalWaiting"] == 1


@pytest.mark.asyncio
async def test_join_validation_error_envelope(api_client):
	resp = await api_client.post("/queue/join", json={"lat": 120}, headers={"X-Request-Id": "req-123"})
	assert resp.status_code == 422
	body = resp.json()
	assert body["success"] is False
	assert body["error"]["code"] == "validation_error"
	assert body["request_id"] == "req-123"
	assert resp.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_join_rejects_half_a_location(api_client):
	resp = await api_client.post("/queue/join", json={"deviceId": "d1", "lat": 10.0})
	assert resp.status_code == 422
	assert resp.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_full_match_confirm_and_end_flow(api_client):
	x = (await _join(api_client, "dx", continent="Europe", language="fr", lat=48.8566, lon=2.3522))["userId"]
	y = (await _join(api_client, "dy", continent="Europe", language="fr", lat=48.9466, lon=2.3522))["userId"]

	resp = await api_client.post("/queue/match", json={"userId": x})
	assert resp.status_code == 200
	match = resp.json()
	assert match["noMatch"] is False
	assert match["partnerId"] == y
	assert match["tier"] == 1
	assert match["requiresConfirmation"] is True
	assert match["confirmationTimeoutSeconds"] == settings.confirmation_timeout_seconds
	assert match["partnerInfo"]["language"] == "fr"
	assert 9.5 < match["distanceKm"] < 10.5
	assert "totalWaiting" not in match

	resp = await api_client.post("/queue/confirm", json={"userId": x, "matchId": match["matchId"]})
	assert resp.json()["bothConfirmed"] is False
	resp = await api_client.post("/queue/confirm", json={"userId": y, "matchId": match["matchId"]})
	confirmed = resp.json()
	assert confirmed["bothConfirmed"] is True
	assert confirmed["chatId"] == match["chatId"]

	status_resp = await api_client.get(f"/queue/status/{x}")
	assert status_resp.json()["status"] == "connected"
	assert status_resp.json()["chatId"] == match["chatId"]

	resp = await api_client.post("/chat/activity", json={"userId": x, "chatId": match["chatId"]})
	assert resp.json() == {"success": True, "ok": True}

	resp = await api_client.post("/chat/end", json={"userId": x, "chatId": match["chatId"]})
	assert resp.status_code == 200
	assert resp.json()["partnerId"] == y
	assert (await api_client.get(f"/queue/status/{y}")).json()["status"] == "searching"


@pytest.mark.asyncio
async def test_match_without_locations_sends_null_distance(api_client):
	x = (await _join(api_client, "dx", continent="Europe", language="fr"))["userId"]
	await _join(api_client, "dy", continent="Europe", language="fr")
	match = (await api_client.post("/queue/match", json={"userId": x})).json()
	assert match["noMatch"] is False
	assert "distanceKm" in match
	assert match["distanceKm"] is None
	assert "totalWaiting" not in match


@pytest.mark.asyncio
async def test_match_without_partner_returns_no_match(api_client):
	x = (await _join(api_client, "dx"))["userId"]
	resp = await api_client.post("/queue/match", json={"userId": x})
	body = resp.json()
	assert body["noMatch"] is True
	assert body["totalWaiting"] == 1
	assert body["searchAttempts"] == 1
	assert body["retryInSeconds"] >= settings.poll_base_delay_seconds
	assert "matchId" not in body


@pytest.mark.asyncio
async def test_skip_returns_partner(api_client):
	x = (await _join(api_client, "dx"))["userId"]
	y = (await _join(api_client, "dy"))["userId"]
	match = (await api_client.post("/queue/match", json={"userId": x})).json()
	resp = await api_client.post("/queue/skip", json={"userId": y, "matchId": match["matchId"]})
	assert resp.json()["partnerId"] == x
	resp = await api_client.post("/queue/confirm", json={"userId": x, "matchId": match["matchId"]})
	assert resp.status_code == 409
	assert resp.json()["error"]["code"] == "match_rejected"


@pytest.mark.asyncio
async def test_heartbeat_for_lost_session(api_client):
	resp = await api_client.post("/queue/heartbeat", json={"userId": "nobody", "connectionQuality": 80})
	assert resp.status_code == 404
	assert resp.json()["error"]["code"] == "session_lost"


@pytest.mark.asyncio
async def test_heartbeat_ok(api_client):
	x = (await _join(api_client, "dx"))["userId"]
	resp = await api_client.post("/queue/heartbeat", json={"userId": x, "connectionQuality": 80})
	assert resp.status_code == 200
	assert resp.json()["ok"] is True


@pytest.mark.asyncio
async def test_confirm_unknown_match(api_client):
	x = (await _join(api_client, "dx"))["userId"]
	resp = await api_client.post("/queue/confirm", json={"userId": x, "matchId": "nope"})
	assert resp.status_code == 404
	assert resp.json()["error"]["code"] == "match_not_found"


@pytest.mark.asyncio
async def test_leave_is_idempotent(api_client):
	x = (await _join(api_client, "dx"))["userId"]
	for _ in range(2):
		resp = await api_client.post("/queue/leave", json={"userId": x})
		assert resp.status_code == 200
	resp = await api_client.get(f"/queue/status/{x}")
	assert resp.status_code == 404


@pytest.mark.asyncio
async def test_stats_endpoint(api_client):
	await _join(api_client, "d1", continent="Europe", language="fr")
	await _join(api_client, "d2", continent="Asia", language="en")
	body = (await api_client.get("/queue/stats")).json()
	assert body["totalWaiting"] == 2
	assert body["byContinent"] == {"Europe": 1, "Asia": 1}
	assert body["byLanguage"] == {"fr": 1, "en": 1}
	assert body["pendingMatches"] == 0
	assert body["activeSessions"] == 0
	assert body["averageWaitSeconds"] >= 0


@pytest.mark.asyncio
async def test_join_rate_limited(api_client, monkeypatch):
	monkeypatch.setattr(settings, "join_rate_limit_per_minute", 1)
	await _join(api_client, "dx")
	resp = await api_client.post("/queue/join", json={"deviceId": "dx"})
	assert resp.status_code == 429
	body = resp.json()
	assert body["error"]["code"] == "rate_limited"
	assert body["error"]["retryable"] is True
