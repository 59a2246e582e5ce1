import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from session_relay import errors
from session_relay.config import Settings, get_settings
from session_relay.routers import rooms, signaling
from session_relay.services.connection_tracker import ConnectionTracker
from session_relay.services.relay import SignalingRelay
from session_relay.services.room_registry import RoomRegistry
from session_relay.services.scheduler import Clock, TaskScheduler

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, clock: Optional[Clock] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    app = FastAPI(title="AR/VR Session Relay")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    scheduler = TaskScheduler(clock)
    registry = RoomRegistry(settings, scheduler.clock)
    tracker = ConnectionTracker(registry, scheduler, settings)
    connections = signaling.ConnectionManager()
    registry.schedule_maintenance(scheduler)
    tracker.schedule_maintenance(scheduler)

    app.state.settings = settings
    app.state.scheduler = scheduler
    app.state.connections = connections
    app.state.relay = SignalingRelay(registry, tracker, connections, settings)

    app.include_router(signaling.router)
    app.include_router(rooms.router)

    @app.exception_handler(errors.CoordinationError)
    async def coordination_error_handler(request: Request, exc: errors.CoordinationError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/config")
    async def rtc_config():
        """Expose ICE server config to the frontend.

        Environment variables (optional):
        - STUN_SERVER
        - TURN_URL: e.g. turn:turn.example.com:3478
        - TURN_USERNAME
        - TURN_PASSWORD
        """
        ice_servers = []
        if settings.STUN_SERVER:
            ice_servers.append({"urls": settings.STUN_SERVER})
        # Always include Google public STUN as fallback
        ice_servers.extend([
            {"urls": "stun:stun.l.google.com:19302"},
            {"urls": "stun:stun1.l.google.com:19302"},
        ])

        if settings.TURN_URL and settings.TURN_USERNAME and settings.TURN_PASSWORD:
            ice_servers.append({
                "urls": settings.TURN_URL,
                "username": settings.TURN_USERNAME,
                "credential": settings.TURN_PASSWORD,
            })

        return {"iceServers": ice_servers}

    @app.get("/health")
    async def health_check():
        return app.state.relay.health()

    # Pump background maintenance on the same loop that handles events
    @app.on_event("startup")
    async def start_maintenance():
        app.state.maintenance = asyncio.create_task(scheduler.run(settings.SCHEDULER_TICK))

    @app.on_event("shutdown")
    async def stop_maintenance():
        task = getattr(app.state, "maintenance", None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=get_settings().HOST, port=get_settings().PORT)
