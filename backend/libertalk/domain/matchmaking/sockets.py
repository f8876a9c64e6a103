"""Socket.IO namespace pushing queue and match transitions to participants."""

from __future__ import annotations

from typing import Dict, Optional

import socketio

from libertalk.domain.matchmaking.errors import MatchmakingError
from libertalk.obs import metrics as obs_metrics

_namespace: "QueueNamespace" | None = None


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


class QueueNamespace(socketio.AsyncNamespace):
	def __init__(self) -> None:
		super().__init__("/queue")
		self._sessions: Dict[str, str] = {}

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or environ.get("auth") or {}
		user_id = auth_payload.get("userId") or _header(scope, "x-user-id")
		if not user_id:
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError("missing user id")
		self._sessions[sid] = user_id
		await self.enter_room(sid, self.user_room(user_id))
		await self.emit("queue:ack", {"ok": True}, room=sid)

	async def on_disconnect(self, sid: str, *args) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		user_id = self._sessions.pop(sid, None)
		if user_id:
			await self.leave_room(sid, self.user_room(user_id))

	async def on_hb(self, sid: str, payload: Optional[dict] = None) -> None:
		"""Application-level heartbeat; counts as a presence refresh."""
		obs_metrics.socket_event(self.namespace, "hb")
		user_id = self._sessions.get(sid)
		if not user_id:
			raise ConnectionRefusedError("unauthenticated")
		quality = (payload or {}).get("connectionQuality", 100)
		from libertalk.domain.matchmaking.service import get_service

		try:
			await get_service().heartbeat(user_id, quality)
		except MatchmakingError as exc:
			await self.emit("queue:error", {"code": exc.code, "message": exc.message}, room=sid)

	@staticmethod
	def user_room(user_id: str) -> str:
		return f"user:{user_id}"


def set_namespace(namespace: QueueNamespace | None) -> None:
	global _namespace
	_namespace = namespace


async def emit_to_user(user_id: str, event: str, payload: dict) -> None:
	if _namespace is None:
		return
	obs_metrics.socket_event(_namespace.namespace, event)
	await _namespace.emit(event, payload, room=QueueNamespace.user_room(user_id))
