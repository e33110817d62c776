from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from trainer_agent_loop.agent import Agent

from .dependencies import set_agent
from .router import router as agent_router


def create_app(
    agent: Optional[Agent] = None,
    *,
    allowed_origins: Optional[list[str]] = None,
    close_agent_on_shutdown: bool = False,
) -> FastAPI:
    """Build the HTTP application around an already configured :class:`Agent`."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.background_turns = set()
        if agent is not None:
            set_agent(agent)
        try:
            yield
        finally:
            pending = list(app.state.background_turns)
            if pending:
                logger.info(f"Waiting for {len(pending)} in-flight turn(s) to finish")
                await asyncio.gather(*pending, return_exceptions=True)
            if agent is not None and close_agent_on_shutdown:
                agent.close()

    app = FastAPI(
        title="Trainer Agent Loop",
        description="Session-based tool-calling agent for the trainer chat",
        lifespan=lifespan,
    )
    app.state.background_turns = set()

    origins = allowed_origins or []
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )
        logger.info(f"CORS allowed origins: {origins}")

    app.include_router(agent_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
