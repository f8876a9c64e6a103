"""Domain models for the matchmaking queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional


EntryStatus = str
AttemptStatus = str
ChatStatus = str

ENTRY_STATUSES: tuple[EntryStatus, ...] = (
	"searching",
	"matched",
	"connecting",
	"connected",
	"disconnected",
)

ATTEMPT_STATUSES: tuple[AttemptStatus, ...] = (
	"pending",
	"confirmed",
	"rejected",
	"timeout",
)

OPEN_ATTEMPT_STATUSES: tuple[AttemptStatus, ...] = ("pending", "confirmed")

CHAT_STATUSES: tuple[ChatStatus, ...] = (
	"connecting",
	"active",
	"ended",
)

UNKNOWN_REGION = "Unknown"
DEFAULT_LANGUAGE = "en"


def _opt_float(value: Optional[str]) -> Optional[float]:
	if value in (None, ""):
		return None
	return float(value)


def _flag(value: Optional[str]) -> bool:
	return value in ("1", "true", "True")


def _compact(fields: Mapping[str, Any]) -> dict[str, str]:
	"""Stringify a row for HSET, dropping unset fields."""
	row: dict[str, str] = {}
	for key, value in fields.items():
		if value is None:
			continue
		if isinstance(value, bool):
			row[key] = "1" if value else "0"
		else:
			row[key] = str(value)
	return row


@dataclass(slots=True)
class WaitingEntry:
	"""A participant's queued presence record."""

	id: str
	device_id: str
	session_id: str
	continent: str
	country: str
	city: str
	language: str
	joined_at: float
	last_heartbeat: float
	status: EntryStatus = "searching"
	lat: Optional[float] = None
	lon: Optional[float] = None
	user_agent: Optional[str] = None
	current_match_id: Optional[str] = None
	current_chat_id: Optional[str] = None
	connection_quality: int = 100
	search_attempts: int = 0
	updated_at: float = 0.0
	# Only populated for the entry a search runs on behalf of
	previous_partners: frozenset[str] = field(default_factory=frozenset)

	@property
	def has_location(self) -> bool:
		return self.lat is not None and self.lon is not None

	def is_live(self, now: float, window_seconds: float) -> bool:
		return (now - self.last_heartbeat) < window_seconds

	def waited_seconds(self, now: float) -> float:
		return max(0.0, now - self.joined_at)

	def to_row(self) -> dict[str, str]:
		return _compact(
			{
				"id": self.id,
				"device_id": self.device_id,
				"session_id": self.session_id,
				"continent": self.continent,
				"country": self.country,
				"city": self.city,
				"language": self.language,
				"joined_at": self.joined_at,
				"status": self.status,
				"lat": self.lat,
				"lon": self.lon,
				"user_agent": self.user_agent,
				"current_match_id": self.current_match_id,
				"current_chat_id": self.current_chat_id,
				"search_attempts": self.search_attempts,
				"updated_at": self.updated_at,
			}
		)

	@classmethod
	def from_row(
		cls,
		row: Mapping[str, str],
		heartbeat: Optional[Mapping[str, str]] = None,
		previous_partners: Iterable[str] = (),
	) -> "WaitingEntry":
		heartbeat = heartbeat or {}
		return cls(
			id=row["id"],
			device_id=row.get("device_id", ""),
			session_id=row.get("session_id", ""),
			continent=row.get("continent", UNKNOWN_REGION),
			country=row.get("country", UNKNOWN_REGION),
			city=row.get("city", UNKNOWN_REGION),
			language=row.get("language", DEFAULT_LANGUAGE),
			joined_at=float(row.get("joined_at", 0.0)),
			# An entry without a heartbeat row is treated as long dead
			last_heartbeat=float(heartbeat.get("last_heartbeat", 0.0)),
			status=row.get("status", "disconnected"),
			lat=_opt_float(row.get("lat")),
			lon=_opt_float(row.get("lon")),
			user_agent=row.get("user_agent") or None,
			current_match_id=row.get("current_match_id") or None,
			current_chat_id=row.get("current_chat_id") or None,
			connection_quality=int(float(heartbeat.get("connection_quality", 100))),
			search_attempts=int(row.get("search_attempts", 0)),
			updated_at=float(row.get("updated_at", 0.0)),
			previous_partners=frozenset(previous_partners),
		)

	def partner_info(self) -> dict[str, str]:
		return {
			"continent": self.continent,
			"country": self.country,
			"city": self.city,
			"language": self.language,
		}


@dataclass(slots=True)
class MatchAttempt:
	"""A proposed pairing awaiting mutual confirmation."""

	id: str
	user_a: str
	user_b: str
	chat_id: str
	score: int
	tier: int
	deadline: float
	created_at: float
	status: AttemptStatus = "pending"
	distance_km: Optional[float] = None
	language_match: bool = False
	continent_match: bool = False
	confirmed_a: bool = False
	confirmed_b: bool = False
	closed_at: Optional[float] = None
	close_reason: Optional[str] = None

	def participants(self) -> tuple[str, str]:
		return (self.user_a, self.user_b)

	def includes(self, user_id: str) -> bool:
		return user_id in self.participants()

	def partner_of(self, user_id: str) -> str:
		return self.user_b if user_id == self.user_a else self.user_a

	def ack_field(self, user_id: str) -> str:
		return "confirmed_a" if user_id == self.user_a else "confirmed_b"

	def confirmed_by(self, user_id: str) -> bool:
		return self.confirmed_a if user_id == self.user_a else self.confirmed_b

	@property
	def both_confirmed(self) -> bool:
		return self.confirmed_a and self.confirmed_b

	def is_open(self) -> bool:
		return self.status in OPEN_ATTEMPT_STATUSES

	def to_row(self) -> dict[str, str]:
		return _compact(
			{
				"id": self.id,
				"user_a": self.user_a,
				"user_b": self.user_b,
				"chat_id": self.chat_id,
				"score": self.score,
				"tier": self.tier,
				"deadline": self.deadline,
				"created_at": self.created_at,
				"status": self.status,
				"distance_km": self.distance_km,
				"language_match": self.language_match,
				"continent_match": self.continent_match,
				"confirmed_a": self.confirmed_a,
				"confirmed_b": self.confirmed_b,
				"closed_at": self.closed_at,
				"close_reason": self.close_reason,
			}
		)

	@classmethod
	def from_row(cls, row: Mapping[str, str]) -> "MatchAttempt":
		return cls(
			id=row["id"],
			user_a=row["user_a"],
			user_b=row["user_b"],
			chat_id=row.get("chat_id", ""),
			score=int(float(row.get("score", 0))),
			tier=int(row.get("tier", 0)),
			deadline=float(row["deadline"]),
			created_at=float(row.get("created_at", 0.0)),
			status=row.get("status", "pending"),
			distance_km=_opt_float(row.get("distance_km")),
			language_match=_flag(row.get("language_match")),
			continent_match=_flag(row.get("continent_match")),
			confirmed_a=_flag(row.get("confirmed_a")),
			confirmed_b=_flag(row.get("confirmed_b")),
			closed_at=_opt_float(row.get("closed_at")),
			close_reason=row.get("close_reason") or None,
		)


@dataclass(slots=True)
class ChatSession:
	"""The conversation created once both sides confirm a match."""

	id: str
	match_id: str
	user_a: str
	user_b: str
	created_at: float
	last_activity_at: float
	status: ChatStatus = "active"
	ended_at: Optional[float] = None
	end_reason: Optional[str] = None

	def participants(self) -> tuple[str, str]:
		return (self.user_a, self.user_b)

	def includes(self, user_id: str) -> bool:
		return user_id in self.participants()

	def partner_of(self, user_id: str) -> str:
		return self.user_b if user_id == self.user_a else self.user_a

	def to_row(self) -> dict[str, str]:
		return _compact(
			{
				"id": self.id,
				"match_id": self.match_id,
				"user_a": self.user_a,
				"user_b": self.user_b,
				"created_at": self.created_at,
				"last_activity_at": self.last_activity_at,
				"status": self.status,
				"ended_at": self.ended_at,
				"end_reason": self.end_reason,
			}
		)

	@classmethod
	def from_row(cls, row: Mapping[str, str]) -> "ChatSession":
		return cls(
			id=row["id"],
			match_id=row.get("match_id", ""),
			user_a=row["user_a"],
			user_b=row["user_b"],
			created_at=float(row.get("created_at", 0.0)),
			last_activity_at=float(row.get("last_activity_at", row.get("created_at", 0.0))),
			status=row.get("status", "active"),
			ended_at=_opt_float(row.get("ended_at")),
			end_reason=row.get("end_reason") or None,
		)
