# =============================================================================
# app/main.py - FastAPI Application Entry Point
# =============================================================================
# This is the main entry point for the EduDash API.
# It configures the FastAPI application with middleware, routers, and handlers.
#
# Usage:
#   uvicorn app.main:app --reload
# =============================================================================

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.websocket import websocket_manager, WEBSOCKET_CHANNEL
from app.exceptions import EduDashException, edudash_exception_handler
from app.routers import health, tasks, ai, notifications, transcriptions, subscriptions, seats
from app.auth import routes as auth_routes
from app.websocket import routes as websocket_routes

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


_redis_listener_task = None
_shutdown_event = None


async def redis_pubsub_listener():
    """
    Background task that listens to Redis pub/sub and broadcasts to WebSockets.

    Celery workers publish transcription events to WEBSOCKET_CHANNEL; each
    message carries a channel_id (the job id) that selects the clients.
    """
    import redis.asyncio as aioredis

    logger.info("Starting Redis pub/sub listener for WebSocket broadcasts")

    redis_client = None
    pubsub = None
    try:
        redis_client = aioredis.from_url(settings.REDIS_URL)
        pubsub = redis_client.pubsub()
        await pubsub.subscribe(WEBSOCKET_CHANNEL)

        async for message in pubsub.listen():
            if _shutdown_event and _shutdown_event.is_set():
                break

            if message["type"] == "message":
                try:
                    data = json.loads(message["data"])
                    channel_id = data.pop("channel_id", None)

                    if channel_id:
                        await websocket_manager.broadcast(channel_id, data)
                        logger.debug(f"Broadcast {data.get('type')} to channel {channel_id}")

                except json.JSONDecodeError as e:
                    logger.warning(f"Invalid JSON in Redis message: {e}")
                except Exception as e:
                    logger.error(f"Error processing Redis message: {e}")

    except asyncio.CancelledError:
        logger.info("Redis pub/sub listener cancelled")
    except Exception as e:
        logger.error(f"Redis pub/sub listener error: {e}")
    finally:
        try:
            if pubsub is not None:
                await pubsub.unsubscribe(WEBSOCKET_CHANNEL)
            if redis_client is not None:
                await redis_client.close()
        except Exception as e:
            logger.debug(f"Redis listener cleanup failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    - Startup: start the Redis listener that feeds WebSocket clients
    - Shutdown: stop it
    """
    global _redis_listener_task, _shutdown_event

    logger.info(f"Starting EduDash API in {settings.ENVIRONMENT} mode")
    logger.info(f"CORS origins: {settings.cors_origins_list}")

    _shutdown_event = asyncio.Event()
    _redis_listener_task = asyncio.create_task(redis_pubsub_listener())

    yield

    logger.info("Shutting down EduDash API")

    if _shutdown_event:
        _shutdown_event.set()
    if _redis_listener_task:
        _redis_listener_task.cancel()
        try:
            await _redis_listener_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="EduDash API",
    description="""
## Backend for the EduDash preschool platform

Server-side logic for the mobile app and the principal dashboard.

### Areas

| Area | What it does |
|------|--------------|
| **AI** | Claude proxy with quotas, tool calls, usage metering and teacher allocations |
| **Notifications** | Expo push and Resend email for messages, homework, billing and reports |
| **Transcriptions** | Whisper speech-to-text, with chunked jobs streamed over WebSocket |
| **Subscriptions / Seats** | School plans and teacher seat assignment |

### Authentication

Send the Supabase access token as `Authorization: Bearer <jwt>`.

### Quick Start

```bash
curl -X POST http://localhost:8000/api/v1/ai/proxy \\
  -H "Authorization: Bearer $TOKEN" \\
  -H "Content-Type: application/json" \\
  -d '{"scope": "teacher", "service_type": "lesson_generation",
       "payload": {"prompt": "A 20 minute lesson on shapes for 4 year olds"}}'
```
""",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Auth", "description": "Check tokens and the resolved user context"},
        {"name": "AI", "description": "Claude proxy, usage, quotas and allocations"},
        {"name": "Notifications", "description": "Push and email dispatch"},
        {"name": "Transcriptions", "description": "Speech-to-text"},
        {"name": "Subscriptions", "description": "Plans and school subscriptions"},
        {"name": "Seats", "description": "Teacher seat assignment"},
        {"name": "Tasks", "description": "Track background job progress"},
        {"name": "WebSocket", "description": "Live transcription updates"},
        {"name": "Health", "description": "API health and readiness checks"},
    ],
)


# =============================================================================
# Middleware
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list if settings.is_production else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Latency-Ms", "X-Cost-Usd", "X-Quota-Tier", "Retry-After"],
)


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(EduDashException)
async def handle_edudash_exception(request: Request, exc: EduDashException):
    return await edudash_exception_handler(request, exc)


@app.exception_handler(Exception)
async def handle_general_exception(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An unexpected error occurred",
            "code": "INTERNAL_ERROR",
        }
    )


# =============================================================================
# Routers
# =============================================================================

app.include_router(auth_routes.router, prefix="/api/v1")

app.include_router(
    health.router,
    prefix="/api/v1",
    tags=["Health"]
)

app.include_router(
    ai.router,
    prefix="/api/v1/ai",
    tags=["AI"]
)

app.include_router(
    notifications.router,
    prefix="/api/v1/notifications",
    tags=["Notifications"]
)

app.include_router(
    transcriptions.router,
    prefix="/api/v1/transcriptions",
    tags=["Transcriptions"]
)

app.include_router(
    subscriptions.router,
    prefix="/api/v1/subscriptions",
    tags=["Subscriptions"]
)

app.include_router(
    seats.router,
    prefix="/api/v1/seats",
    tags=["Seats"]
)

app.include_router(
    tasks.router,
    prefix="/api/v1/tasks",
    tags=["Tasks"]
)

app.include_router(
    websocket_routes.router,
    tags=["WebSocket"]
)


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get("/", tags=["Root"])
async def root():
    """Root endpoint - returns API info."""
    return {
        "name": "EduDash API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/v1/health",
    }
