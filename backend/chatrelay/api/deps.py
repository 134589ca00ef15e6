"""Dependency injection for API routes."""

import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatrelay.core.config import Settings, settings
from chatrelay.services.chat_orchestrator import ChatOrchestrator
from chatrelay.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


def get_settings() -> Settings:
    """Get application settings."""
    return settings


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def decode_user_id(token: str, config: Settings) -> str:
    """Return the user id carried by a bearer token.

    Raises:
        HTTPException: 403 when the token is invalid or expired
    """
    try:
        payload = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.InvalidTokenError as e:
        logger.warning("Rejected bearer token: %s", e)
        raise HTTPException(status_code=403, detail="Invalid or expired token")

    user_id = payload.get("id")
    if not user_id:
        raise HTTPException(status_code=403, detail="Invalid or expired token")
    return str(user_id)


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    config: Settings = Depends(get_settings),
) -> str:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")
    return decode_user_id(credentials.credentials, config)


def get_chat_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    config: Settings = Depends(get_settings),
) -> Optional[str]:
    """Caller of POST /chat; None for anonymous callers when allowed."""
    if credentials is None:
        if config.allow_anonymous_chat:
            return None
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")
    return decode_user_id(credentials.credentials, config)
