"""Bilateral confirmation handshake and chat session lifecycle.

The coordinator is the only writer that moves a match attempt out of
``pending`` and the only writer that creates or ends chat sessions. Every
transition is one conditional update spanning the attempt (or chat) row and
the participants' entry rows, so a participant can never be left ``matched``
against a closed attempt by this module.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from libertalk.domain.matchmaking import events
from libertalk.domain.matchmaking.errors import (
	MatchRejectedError,
	MatchTimeoutError,
	NotFoundError,
	StateError,
)
from libertalk.domain.matchmaking.models import ChatSession, MatchAttempt
from libertalk.domain.matchmaking.store import (
	CLOSED_ATTEMPTS_INDEX,
	ENDED_CHATS_INDEX,
	OPEN_CHATS_INDEX,
	PENDING_ATTEMPTS_INDEX,
	MatchStore,
	RowUpdate,
	attempt_key,
	chat_key,
	entry_key,
)
from libertalk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_POINTERS = ("current_match_id", "current_chat_id")


@dataclass(slots=True)
class ConfirmResult:
	match_id: str
	partner_id: str
	both_confirmed: bool
	chat_id: Optional[str] = None


def _flag(value: bool) -> str:
	return "1" if value else "0"


class ConfirmationCoordinator:
	def __init__(self, store: MatchStore, *, clock: Callable[[], float] = time.time) -> None:
		self._store = store
		self._clock = clock

	async def _participant_attempt(self, user_id: str, match_id: str) -> MatchAttempt:
		attempt = await self._store.get_attempt(match_id)
		if attempt is None or not attempt.includes(user_id):
			raise NotFoundError("match_not_found")
		return attempt

	async def _participant_chat(self, user_id: str, chat_id: str) -> ChatSession:
		chat = await self._store.get_chat(chat_id)
		if chat is None or not chat.includes(user_id):
			raise NotFoundError("chat_not_found")
		return chat

	# --- handshake -------------------------------------------------------------

	async def confirm(self, user_id: str, match_id: str) -> ConfirmResult:
		"""Record ``user_id``'s acknowledgement; idempotent per participant."""
		attempt = await self._participant_attempt(user_id, match_id)
		partner_id = attempt.partner_of(user_id)
		if attempt.status == "confirmed":
			return ConfirmResult(match_id, partner_id, True, attempt.chat_id)
		if attempt.status == "timeout":
			raise MatchTimeoutError()
		if attempt.status == "rejected":
			raise MatchRejectedError()

		now = self._clock()
		if now >= attempt.deadline:
			await self.expire(match_id)
			raise MatchTimeoutError()

		ack = attempt.ack_field(user_id)
		other_ack = attempt.ack_field(partner_id)
		mine = attempt.confirmed_by(user_id)
		if not attempt.confirmed_by(partner_id):
			if not mine:
				await self._store.compare_and_set(
					[
						RowUpdate(
							attempt_key(match_id),
							expect={"status": "pending", ack: "0", other_ack: "0"},
							values={ack: "1"},
						)
					],
					op="confirm_ack",
				)
				obs_metrics.inc_confirmation("ack")
			return ConfirmResult(match_id, partner_id, False)

		chat = ChatSession(
			id=attempt.chat_id,
			match_id=match_id,
			user_a=attempt.user_a,
			user_b=attempt.user_b,
			created_at=now,
			last_activity_at=now,
			status="active",
		)
		updates = [
			RowUpdate(
				attempt_key(match_id),
				expect={"status": "pending", ack: _flag(mine), other_ack: "1"},
				values={ack: "1", "status": "confirmed"},
			),
			RowUpdate(chat_key(chat.id), expect={"id": None}, values=chat.to_row()),
		]
		for participant in attempt.participants():
			updates.append(
				RowUpdate(
					entry_key(participant),
					expect={"status": "matched", "current_match_id": match_id},
					values={"status": "connected", "current_chat_id": chat.id, "updated_at": str(now)},
				)
			)

		def _effects(pipe) -> None:
			pipe.zrem(PENDING_ATTEMPTS_INDEX, match_id)
			pipe.zadd(OPEN_CHATS_INDEX, {chat.id: now})

		await self._store.compare_and_set(updates, side_effects=_effects, op="confirm_finalize")
		obs_metrics.inc_confirmation("finalized")
		logger.info("match confirmed", extra={"match_id": match_id, "chat_id": chat.id})
		await events.publish_many(
			events.MATCH_CONFIRMED,
			{
				participant: {
					"matchId": match_id,
					"chatId": chat.id,
					"partnerId": attempt.partner_of(participant),
					"status": "confirmed",
				}
				for participant in attempt.participants()
			},
		)
		return ConfirmResult(match_id, partner_id, True, chat.id)

	async def skip(self, user_id: str, match_id: str) -> str:
		"""Reject a pending attempt; both sides go back to searching."""
		attempt = await self._participant_attempt(user_id, match_id)
		partner_id = attempt.partner_of(user_id)
		if attempt.status in ("rejected", "timeout"):
			return partner_id
		if attempt.status == "confirmed":
			raise StateError("match_confirmed", message="match already confirmed; end the session instead")
		await self._close_attempt(attempt, status="rejected", reason="skipped", now=self._clock())
		return partner_id

	async def expire(self, match_id: str) -> bool:
		"""Time out a pending attempt past its deadline. Returns True if this call did it."""
		attempt = await self._store.get_attempt(match_id)
		if attempt is None or attempt.status != "pending":
			return False
		now = self._clock()
		if now < attempt.deadline:
			return False
		await self._close_attempt(attempt, status="timeout", reason="deadline", now=now)
		return True

	async def _close_attempt(
		self,
		attempt: MatchAttempt,
		*,
		status: str,
		reason: str,
		now: float,
		overrides: Mapping[str, str] | None = None,
	) -> None:
		"""Move a pending attempt to ``status`` and roll its participants back.

		Entries still pointing at the attempt go back to ``searching`` unless
		``overrides`` names another target. Entries that are gone or already
		disconnected are left for the reaper.
		"""
		overrides = overrides or {}
		updates = [
			RowUpdate(
				attempt_key(attempt.id),
				expect={"status": "pending"},
				values={"status": status, "closed_at": str(now), "close_reason": reason},
			)
		]
		requeued: set[str] = set()
		for entry in await self._store.get_entries(attempt.participants()):
			if entry.current_match_id != attempt.id or entry.status == "disconnected":
				continue
			target = overrides.get(entry.id, "searching")
			updates.append(
				RowUpdate(
					entry_key(entry.id),
					expect={"status": entry.status, "current_match_id": attempt.id},
					values={"status": target, "updated_at": str(now)},
					unset=_POINTERS,
				)
			)
			if target == "searching":
				requeued.add(entry.id)

		def _effects(pipe) -> None:
			pipe.zrem(PENDING_ATTEMPTS_INDEX, attempt.id)
			pipe.zadd(CLOSED_ATTEMPTS_INDEX, {attempt.id: now})

		await self._store.compare_and_set(updates, side_effects=_effects, op=f"attempt_{status}")
		obs_metrics.inc_attempt_closed(status, reason)
		logger.info(
			"match attempt closed",
			extra={"match_id": attempt.id, "attempt_status": status, "reason": reason},
		)
		await events.publish_many(
			events.MATCH_CANCELLED,
			{
				participant: {
					"matchId": attempt.id,
					"status": status,
					"reason": reason,
					"requeued": participant in requeued,
				}
				for participant in attempt.participants()
			},
		)

	# --- chat sessions ----------------------------------------------------------

	async def end_session(self, user_id: str, chat_id: str) -> str:
		"""End a chat on behalf of ``user_id``. Returns the partner id."""
		chat = await self._participant_chat(user_id, chat_id)
		partner_id = chat.partner_of(user_id)
		if chat.status == "ended":
			return partner_id
		await self.end_chat(chat, reason="ended_by_user", ender=user_id)
		return partner_id

	async def touch_session(self, user_id: str, chat_id: str) -> None:
		chat = await self._participant_chat(user_id, chat_id)
		if chat.status != "active":
			raise StateError("session_ended")
		await self._store.touch_chat(chat_id, self._clock())

	async def end_chat(
		self,
		chat: ChatSession,
		*,
		reason: str,
		ender: Optional[str] = None,
		ender_status: str = "disconnected",
		guard_activity: bool = False,
	) -> None:
		"""End an active chat.

		The ender (if any) moves to ``ender_status``; every other participant still
		attached to the chat is requeued. With ``guard_activity`` the update only
		applies if nobody touched the chat since it was read.
		"""
		now = self._clock()
		chat_expect: dict[str, Optional[str]] = {"status": chat.status}
		if guard_activity:
			chat_expect["last_activity_at"] = str(chat.last_activity_at)
		updates = [
			RowUpdate(
				chat_key(chat.id),
				expect=chat_expect,
				values={"status": "ended", "ended_at": str(now), "end_reason": reason},
			)
		]
		requeued: set[str] = set()
		for entry in await self._store.get_entries(chat.participants()):
			if entry.current_chat_id != chat.id or entry.status == "disconnected":
				continue
			target = ender_status if entry.id == ender else "searching"
			updates.append(
				RowUpdate(
					entry_key(entry.id),
					expect={"status": entry.status, "current_chat_id": chat.id},
					values={"status": target, "updated_at": str(now)},
					unset=_POINTERS,
				)
			)
			if target == "searching":
				requeued.add(entry.id)

		def _effects(pipe) -> None:
			pipe.zrem(OPEN_CHATS_INDEX, chat.id)
			pipe.zadd(ENDED_CHATS_INDEX, {chat.id: now})
			# the ended chat keeps match_id; a confirmed attempt must not outlive its chat
			pipe.delete(attempt_key(chat.match_id))

		await self._store.compare_and_set(updates, side_effects=_effects, op="chat_end")
		obs_metrics.inc_session_ended(reason)
		logger.info("chat session ended", extra={"chat_id": chat.id, "reason": reason})
		await events.publish_many(
			events.SESSION_ENDED,
			{
				participant: {
					"chatId": chat.id,
					"partnerId": chat.partner_of(participant),
					"reason": reason,
					"endedBy": ender,
					"requeued": participant in requeued,
				}
				for participant in chat.participants()
			},
		)

	# --- cancellation -------------------------------------------------------------

	async def release(self, user_id: str, *, reason: str, final_status: str = "disconnected") -> None:
		"""Detach ``user_id`` from any pending attempt or active chat.

		The partner is requeued; ``user_id`` itself ends in ``final_status``.
		"""
		entry = await self._store.get_entry(user_id)
		if entry is None:
			return
		if entry.current_match_id:
			attempt = await self._store.get_attempt(entry.current_match_id)
			if attempt is not None and attempt.status == "pending" and attempt.includes(user_id):
				await self._close_attempt(
					attempt,
					status="rejected",
					reason=reason,
					now=self._clock(),
					overrides={user_id: final_status},
				)
				return
		if entry.current_chat_id:
			chat = await self._store.get_chat(entry.current_chat_id)
			if chat is not None and chat.status == "active" and chat.includes(user_id):
				await self.end_chat(chat, reason=reason, ender=user_id, ender_status=final_status)
				return
		if entry.status == final_status and not (entry.current_match_id or entry.current_chat_id):
			return
		await self._store.compare_and_set(
			[
				RowUpdate(
					entry_key(user_id),
					expect={
						"status": entry.status,
						"current_match_id": entry.current_match_id,
						"current_chat_id": entry.current_chat_id,
					},
					values={"status": final_status, "updated_at": str(self._clock())},
					unset=_POINTERS,
				)
			],
			op="release",
		)
