"""
FastAPI entry point for the hub relay bridge.

Wires the hub event client, the local WebSocket fan-out and the cloud relay
session together and exposes the control routes.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from constants import SERVICE_NAME, SERVICE_VERSION
from core.container import container
from core.health import set_startup_time
from core.logging import configure_logging, get_logger
from routers import health, relay, websocket

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    set_startup_time()
    logger.info(f"Starting {SERVICE_NAME}", version=SERVICE_VERSION)

    hub_client = container.hub_client()
    broadcaster = container.broadcaster()
    relay_session = container.relay_session()

    # Hub events fan out to local clients and (conditionally) the relay
    broadcaster.bind_hub_events()
    relay_session.bind_hub_events()

    await hub_client.start()
    started = await relay_session.start()
    logger.info("Services started successfully", relay_started=started)
    yield

    # Shutdown
    logger.info("Shutting down...")
    await relay_session.close()
    await broadcaster.close()
    await hub_client.close()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="RoyaFrame Bridge",
    version=SERVICE_VERSION,
    description="Bridges Home Assistant to local WebSocket clients and the cloud relay",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return ORJSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


# Exception handler middleware BEFORE CORS to catch all errors
app.add_middleware(CatchAllExceptionsMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router)
app.include_router(relay.router)
app.include_router(websocket.router)


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting {SERVICE_NAME}",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        reload_excludes=["*.pyc", "__pycache__", "*.log"] if settings.debug else None,
    )
