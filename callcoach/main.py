"""
CallCoach - Live AI sales-call coaching
Main FastAPI application
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .context import AppContext, build_context
from .database import is_db_configured
from .websocket_handler import manager_endpoint, seller_endpoint

VERSION = "1.0.0"


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ============ LIFESPAN ============

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)

    print("\n" + "=" * 50)
    print("🎧 CallCoach Starting Up...")
    print("=" * 50)

    # Tests hand over a ready context
    owns_context = getattr(app.state, "context", None) is None
    if owns_context:
        app.state.context = build_context(settings)
    ctx: AppContext = app.state.context

    if await ctx.fabric.ping():
        print("✓ Redis connected - distributed cache and pub/sub active")
    else:
        print("⚠ Redis unavailable - using in-memory cache and pub/sub")

    if is_db_configured():
        print("✓ Database initialized")

    if settings.anthropic_api_key:
        print("✓ Anthropic API key configured")
    else:
        print("⚠ ANTHROPIC_API_KEY not set - AI coaching disabled")

    if settings.deepgram_api_key:
        print("✓ Deepgram API key configured")
    else:
        print("⚠ DEEPGRAM_API_KEY not set - audio transcription disabled")

    print("\n" + "=" * 50)
    print("✅ CallCoach Ready")
    print(f"   URL: http://{settings.host}:{settings.port}")
    print("=" * 50 + "\n")

    yield

    print("\n👋 CallCoach Shutting Down...")
    await ctx.wait_idle()
    if owns_context:
        await ctx.close()


# ============ APP SETUP ============

def create_app(context: Optional[AppContext] = None) -> FastAPI:
    app = FastAPI(
        title="CallCoach",
        description="Real-time AI coaching for live sales calls",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============ WEBSOCKET ROUTES ============

    @app.websocket("/ws/call")
    async def call_websocket(websocket: WebSocket):
        """Seller extension: call lifecycle, audio segments, coaching"""
        await seller_endpoint(websocket, websocket.app.state.context)

    @app.websocket("/ws/manager")
    async def manager_websocket(websocket: WebSocket):
        """Manager dashboard: live transcript, media, summaries, whispers"""
        await manager_endpoint(websocket, websocket.app.state.context)

    # ============ HEALTH ============

    @app.get("/health")
    async def health_check():
        """Health check endpoint for load balancers"""
        ctx: AppContext = app.state.context
        return {
            "status": "healthy",
            "app": settings.app_name,
            "version": VERSION,
            "cache": ctx.fabric.mode if ctx else None,
            "database": is_db_configured(),
            "transcription": bool(ctx and ctx.transcriber),
            "ai": bool(ctx and ctx.coach.completion),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("callcoach.main:app", host=settings.host, port=settings.port, reload=settings.debug)
