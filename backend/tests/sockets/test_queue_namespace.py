from unittest.mock import AsyncMock

import pytest
import socketio

from libertalk.domain.matchmaking import events, sockets
from libertalk.domain.matchmaking.presence import JoinProfile
from libertalk.domain.matchmaking.service import reset_service
from libertalk.domain.matchmaking.sockets import QueueNamespace


def _scope_with_user(user_id: str) -> dict:
	return {"headers": [(b"x-user-id", user_id.encode())]}


@pytest.fixture
def namespace():
	server = socketio.AsyncServer(async_mode="asgi")
	ns = QueueNamespace()
	server.register_namespace(ns)
	ns.emit = AsyncMock()
	ns.enter_room = AsyncMock()
	ns.leave_room = AsyncMock()
	sockets.set_namespace(ns)
	yield ns
	sockets.set_namespace(None)


@pytest.mark.asyncio
async def test_connect_requires_user_id(namespace):
	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}})


@pytest.mark.asyncio
async def test_connect_joins_user_room(namespace):
	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": _scope_with_user("user-1")})
	namespace.enter_room.assert_awaited_with("sid-1", "user:user-1")
	events_sent = [call.args[0] for call in namespace.emit.await_args_list]
	assert "queue:ack" in events_sent


@pytest.mark.asyncio
async def test_connect_accepts_auth_payload(namespace):
	await namespace.trigger_event("connect", "sid-2", {"asgi.scope": {"headers": []}}, {"userId": "user-2"})
	namespace.enter_room.assert_awaited_with("sid-2", "user:user-2")


@pytest.mark.asyncio
async def test_socket_heartbeat_refreshes_presence(namespace, service, clock):
	reset_service(service)
	entry = (await service.join("device-1", JoinProfile())).entry
	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": _scope_with_user(entry.id)})
	clock.advance(20)
	await namespace.trigger_event("hb", "sid-1", {"connectionQuality": 55})
	stored = await service.store.get_entry(entry.id)
	assert stored.last_heartbeat == clock.now
	assert stored.connection_quality == 55


@pytest.mark.asyncio
async def test_socket_heartbeat_reports_lost_session(namespace, service):
	reset_service(service)
	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": _scope_with_user("ghost")})
	await namespace.trigger_event("hb", "sid-1", {})
	last_event, payload = namespace.emit.await_args.args[:2]
	assert last_event == "queue:error"
	assert payload["code"] == "session_lost"


@pytest.mark.asyncio
async def test_match_found_is_pushed_and_streamed(namespace, service, fake_redis):
	x = (await service.join("dx", JoinProfile())).entry.id
	y = (await service.join("dy", JoinProfile())).entry.id
	offer = await service.find_match(x)

	pushed = {
		call.kwargs["room"]: call.args[1]
		for call in namespace.emit.await_args_list
		if call.args[0] == events.MATCH_FOUND
	}
	assert set(pushed) == {f"user:{x}", f"user:{y}"}
	assert pushed[f"user:{y}"]["partnerId"] == x
	assert pushed[f"user:{y}"]["matchId"] == offer.attempt.id

	entries = await fake_redis.xrange(events.MATCHMAKING_EVENT_STREAM)
	found = [fields for _, fields in entries if fields["event"] == events.MATCH_FOUND]
	assert {fields["user_id"] for fields in found} == {x, y}
	assert all(fields["matchId"] == offer.attempt.id for fields in found)


@pytest.mark.asyncio
async def test_push_failures_do_not_undo_the_transition(namespace, service):
	namespace.emit = AsyncMock(side_effect=RuntimeError("socket down"))
	x = (await service.join("dx", JoinProfile())).entry.id
	await service.join("dy", JoinProfile())
	offer = await service.find_match(x)
	assert (await service.store.get_attempt(offer.attempt.id)).status == "pending"
