"""Pydantic schemas for the matchmaking HTTP API (camelCase on the wire)."""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from libertalk.domain.matchmaking.models import DEFAULT_LANGUAGE, UNKNOWN_REGION


class _WireModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JoinRequest(_WireModel):
	device_id: str = Field(min_length=1, max_length=128)
	continent: str = Field(default=UNKNOWN_REGION, max_length=64)
	country: str = Field(default=UNKNOWN_REGION, max_length=64)
	city: str = Field(default=UNKNOWN_REGION, max_length=64)
	language: str = Field(default=DEFAULT_LANGUAGE, max_length=16)
	lat: Optional[float] = Field(default=None, ge=-90, le=90)
	lon: Optional[float] = Field(default=None, ge=-180, le=180)
	user_agent: Optional[str] = None


class HeartbeatRequest(_WireModel):
	user_id: str = Field(min_length=1)
	connection_quality: int = Field(default=100, ge=0, le=100)


class MatchRequest(_WireModel):
	user_id: str = Field(min_length=1)


class LeaveRequest(MatchRequest):
	pass


class ConfirmRequest(_WireModel):
	user_id: str = Field(min_length=1)
	match_id: str = Field(min_length=1)


class SkipRequest(ConfirmRequest):
	pass


class ChatRequest(_WireModel):
	user_id: str = Field(min_length=1)
	chat_id: str = Field(min_length=1)


class EndSessionRequest(ChatRequest):
	pass


class ActivityRequest(ChatRequest):
	pass


class OkResponse(_WireModel):
	success: bool = True
	ok: bool = True


class JoinResponse(_WireModel):
	success: bool = True
	user_id: str
	session_id: str
	queue_position: int
	estimated_wait_seconds: int
	total_waiting: int


class PartnerInfo(_WireModel):
	continent: str
	country: str
	city: str
	language: str


class MatchResponse(_WireModel):
	success: bool = True
	no_match: bool = False
	match_id: Optional[str] = None
	partner_id: Optional[str] = None
	chat_id: Optional[str] = None
	score: Optional[float] = None
	tier: Optional[int] = None
	distance_km: Optional[float] = None
	requires_confirmation: Optional[bool] = None
	confirmation_timeout_seconds: Optional[float] = None
	partner_info: Optional[PartnerInfo] = None
	total_waiting: Optional[int] = None
	search_attempts: Optional[int] = None
	retry_in_seconds: Optional[float] = None


class ConfirmResponse(_WireModel):
	success: bool = True
	match_id: str
	both_confirmed: bool
	partner_id: Optional[str] = None
	chat_id: Optional[str] = None


class PartnerResponse(_WireModel):
	success: bool = True
	ok: bool = True
	partner_id: str


class StatusResponse(_WireModel):
	success: bool = True
	user_id: str
	status: str
	live: bool
	match_id: Optional[str] = None
	chat_id: Optional[str] = None
	search_attempts: int = 0


class StatsResponse(_WireModel):
	success: bool = True
	total_waiting: int
	by_continent: Dict[str, int] = Field(default_factory=dict)
	by_language: Dict[str, int] = Field(default_factory=dict)
	average_wait_seconds: float = 0.0
	pending_matches: int = 0
	active_sessions: int = 0


class SweepResponse(_WireModel):
	success: bool = True
	evicted: int
	expired: int
	ended: int
	repaired: int
	purged_attempts: int
	purged_chats: int
	conflicts: int
