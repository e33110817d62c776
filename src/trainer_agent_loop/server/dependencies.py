from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, status
from loguru import logger

from trainer_agent_loop.agent import Agent

_AGENT: Optional[Agent] = None


def set_agent(agent: Optional[Agent]) -> None:
    global _AGENT
    _AGENT = agent
    if agent is not None:
        logger.debug("Agent registered with the HTTP layer")


def get_agent() -> Agent:
    if _AGENT is None:
        raise RuntimeError("Agent has not been initialised")
    return _AGENT


def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Resolve the calling user from the ``X-User-Id`` header."""
    owner_id = (x_user_id or "").strip()
    if not owner_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return owner_id
