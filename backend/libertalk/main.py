"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import partial

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from libertalk.api import matchmaking, ops
from libertalk.api.errors import install_error_handlers
from libertalk.api.middleware_request_id import RequestIdMiddleware
from libertalk.domain.matchmaking.reaper import purge_job, run_reaper
from libertalk.domain.matchmaking.service import get_service
from libertalk.domain.matchmaking.sockets import QueueNamespace, set_namespace
from libertalk.infra.scheduler import MaintenanceScheduler
from libertalk.obs import init as obs_init
from libertalk.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	worker_tasks: list[asyncio.Task] = []
	scheduler: MaintenanceScheduler | None = None
	if settings.reaper_enabled:
		reaper = get_service().reaper
		worker_tasks.append(
			asyncio.create_task(run_reaper(reaper, settings.reaper_interval_seconds), name="matchmaking-reaper")
		)
		scheduler = MaintenanceScheduler()
		scheduler.start()
		scheduler.schedule_hourly(
			"matchmaking-retention-purge",
			partial(purge_job, reaper),
			hours=settings.reaper_purge_interval_hours,
		)
		logger.info("matchmaking maintenance started", extra={"jobs": scheduler.job_ids()})
	try:
		yield
	finally:
		if scheduler is not None:
			scheduler.shutdown()
		if worker_tasks:
			for task in worker_tasks:
				task.cancel()
			await asyncio.gather(*worker_tasks, return_exceptions=True)


app = FastAPI(title="LiberTalk Matchmaking", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []
# Starlette disallows wildcard '*' with allow_credentials=True
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
queue_namespace = QueueNamespace()
sio.register_namespace(queue_namespace)
set_namespace(queue_namespace)

socket_app = socketio.ASGIApp(sio, other_asgi_app=app)

obs_init(app)
app.add_middleware(RequestIdMiddleware)

app.include_router(matchmaking.router)
app.include_router(matchmaking.chat_router)
app.include_router(ops.router)
