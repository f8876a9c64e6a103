"""Domain-level exceptions for the matchmaking engine."""

from __future__ import annotations


class MatchmakingError(RuntimeError):
	"""Base class for matchmaking failures.

	Every error carries a machine readable ``code`` and the HTTP status the API
	layer renders it with. ``retryable`` tells callers whether re-issuing the
	same request may succeed.
	"""

	code: str = "matchmaking_error"
	status_code: int = 400
	retryable: bool = False

	def __init__(self, code: str | None = None, *, message: str | None = None) -> None:
		if code:
			self.code = code
		super().__init__(message or self.code)
		self.message = message or self.code


class ValidationError(MatchmakingError):
	code = "validation_error"
	status_code = 422


class NotFoundError(MatchmakingError):
	code = "not_found"
	status_code = 404


class SessionLostError(NotFoundError):
	"""The caller's waiting entry is gone; the client should rejoin."""

	code = "session_lost"


class ConflictError(MatchmakingError):
	"""A conditional update lost the race against a concurrent writer."""

	code = "conflict"
	status_code = 409
	retryable = True


class StateError(MatchmakingError):
	"""The operation does not apply to the row's current state."""

	code = "invalid_state"
	status_code = 409


class MatchRejectedError(StateError):
	code = "match_rejected"


class MatchTimeoutError(MatchmakingError):
	"""The confirmation window elapsed; state has already been downgraded."""

	code = "timeout"
	status_code = 410


class TransientError(MatchmakingError):
	"""The backing store is unavailable."""

	code = "store_unavailable"
	status_code = 503
	retryable = True


__all__ = [
	"MatchmakingError",
	"ValidationError",
	"NotFoundError",
	"SessionLostError",
	"ConflictError",
	"StateError",
	"MatchRejectedError",
	"MatchTimeoutError",
	"TransientError",
]
