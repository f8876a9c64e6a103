"""FastAPI routes for the anonymous chat queue and chat sessions."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from libertalk.domain.matchmaking import schemas
from libertalk.domain.matchmaking.finder import MatchOffer, SearchOutcome
from libertalk.domain.matchmaking.presence import JoinProfile
from libertalk.domain.matchmaking.service import MatchmakingService, get_service
from libertalk.settings import settings

router = APIRouter(prefix="/queue", tags=["queue"])
chat_router = APIRouter(prefix="/chat", tags=["chat"])


def _service() -> MatchmakingService:
	return get_service()


def _match_response(outcome: SearchOutcome) -> schemas.MatchResponse:
	if not isinstance(outcome, MatchOffer):
		return schemas.MatchResponse(
			success=True,
			no_match=True,
			total_waiting=outcome.total_waiting,
			search_attempts=outcome.search_attempts,
			retry_in_seconds=outcome.retry_in_seconds,
		)
	attempt = outcome.attempt
	partner = outcome.partner
	# unset fields are dropped, so offers set all of theirs
	return schemas.MatchResponse(
		success=True,
		no_match=False,
		match_id=attempt.id,
		partner_id=outcome.partner_id,
		chat_id=attempt.chat_id,
		score=attempt.score,
		tier=attempt.tier,
		distance_km=attempt.distance_km,
		requires_confirmation=outcome.requires_confirmation,
		confirmation_timeout_seconds=settings.confirmation_timeout_seconds,
		partner_info=schemas.PartnerInfo(**partner.partner_info()) if partner is not None else None,
	)


@router.post("/join", response_model=schemas.JoinResponse)
async def join_endpoint(
	payload: schemas.JoinRequest,
	service: MatchmakingService = Depends(_service),
) -> schemas.JoinResponse:
	profile = JoinProfile(
		continent=payload.continent,
		country=payload.country,
		city=payload.city,
		language=payload.language,
		lat=payload.lat,
		lon=payload.lon,
		user_agent=payload.user_agent,
	)
	placement = await service.join(payload.device_id, profile)
	return schemas.JoinResponse(
		user_id=placement.entry.id,
		session_id=placement.entry.session_id,
		queue_position=placement.queue_position,
		estimated_wait_seconds=placement.estimated_wait_seconds,
		total_waiting=placement.total_waiting,
	)


@router.post("/heartbeat", response_model=schemas.OkResponse)
async def heartbeat_endpoint(
	payload: schemas.HeartbeatRequest,
	service: MatchmakingService = Depends(_service),
) -> schemas.OkResponse:
	await service.heartbeat(payload.user_id, payload.connection_quality)
	return schemas.OkResponse()


@router.post("/match", response_model=schemas.MatchResponse, response_model_exclude_unset=True)
async def find_match_endpoint(
	payload: schemas.MatchRequest,
	service: MatchmakingService = Depends(_service),
) -> schemas.MatchResponse:
	return _match_response(await service.find_match(payload.user_id))


@router.post("/confirm", response_model=schemas.ConfirmResponse, response_model_exclude_none=True)
async def confirm_endpoint(
	payload: schemas.ConfirmRequest,
	service: MatchmakingService = Depends(_service),
) -> schemas.ConfirmResponse:
	result = await service.confirm(payload.user_id, payload.match_id)
	return schemas.ConfirmResponse(
		match_id=result.match_id,
		both_confirmed=result.both_confirmed,
		partner_id=result.partner_id,
		chat_id=result.chat_id,
	)


@router.post("/skip", response_model=schemas.PartnerResponse)
async def skip_endpoint(
	payload: schemas.SkipRequest,
	service: MatchmakingService = Depends(_service),
) -> schemas.PartnerResponse:
	partner_id = await service.skip(payload.user_id, payload.match_id)
	return schemas.PartnerResponse(partner_id=partner_id)


@router.post("/leave", response_model=schemas.OkResponse)
async def leave_endpoint(
	payload: schemas.LeaveRequest,
	service: MatchmakingService = Depends(_service),
) -> schemas.OkResponse:
	await service.leave(payload.user_id)
	return schemas.OkResponse()


@router.get("/status/{user_id}", response_model=schemas.StatusResponse, response_model_exclude_none=True)
async def status_endpoint(
	user_id: str,
	service: MatchmakingService = Depends(_service),
) -> schemas.StatusResponse:
	view = await service.status(user_id)
	return schemas.StatusResponse(
		user_id=view.user_id,
		status=view.status,
		live=view.live,
		match_id=view.match_id,
		chat_id=view.chat_id,
		search_attempts=view.search_attempts,
	)


@router.get("/stats", response_model=schemas.StatsResponse)
async def stats_endpoint(service: MatchmakingService = Depends(_service)) -> schemas.StatsResponse:
	stats = await service.stats()
	return schemas.StatsResponse(
		total_waiting=stats.total_waiting,
		by_continent=stats.by_continent,
		by_language=stats.by_language,
		average_wait_seconds=stats.average_wait_seconds,
		pending_matches=stats.pending_matches,
		active_sessions=stats.active_sessions,
	)


@chat_router.post("/end", response_model=schemas.PartnerResponse)
async def end_session_endpoint(
	payload: schemas.EndSessionRequest,
	service: MatchmakingService = Depends(_service),
) -> schemas.PartnerResponse:
	partner_id = await service.end_session(payload.user_id, payload.chat_id)
	return schemas.PartnerResponse(partner_id=partner_id)


@chat_router.post("/activity", response_model=schemas.OkResponse)
async def activity_endpoint(
	payload: schemas.ActivityRequest,
	service: MatchmakingService = Depends(_service),
) -> schemas.OkResponse:
	await service.touch_session(payload.user_id, payload.chat_id)
	return schemas.OkResponse()
