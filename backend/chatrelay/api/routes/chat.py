"""Chat HTTP routes: the streaming exchange and session management."""

import asyncio
import json
import logging
from typing import List, Optional

import databases
from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, TypeAdapter, ValidationError

from chatrelay.api.deps import (
    get_chat_caller,
    get_current_user_id,
    get_orchestrator,
    get_settings,
    get_store,
)
from chatrelay.core.config import Settings
from chatrelay.db.database import get_database
from chatrelay.db.queries import users
from chatrelay.schemas.chat import (
    AttachmentFile,
    ChatExchangeRequest,
    ChatTurn,
    SessionSummary,
)
from chatrelay.services.chat_orchestrator import ChatOrchestrator
from chatrelay.services.conversation_store import ConversationStore
from chatrelay.services.uploads import discard_uploads, save_upload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

_turns_adapter = TypeAdapter(List[ChatTurn])


class SessionTitleUpdate(BaseModel):
    title: Optional[str] = None


def parse_turns(raw: str) -> List[ChatTurn]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid messages JSON")

    if not isinstance(data, list):
        raise HTTPException(status_code=400, detail="messages must be a JSON array")

    try:
        return _turns_adapter.validate_python(data)
    except ValidationError as e:
        logger.info("Rejected malformed messages: %s", e)
        raise HTTPException(status_code=400, detail="Invalid messages format")


async def store_uploads(files: List[UploadFile], config: Settings) -> List[AttachmentFile]:
    if len(files) > config.max_upload_files:
        raise HTTPException(
            status_code=400,
            detail=f"At most {config.max_upload_files} files can be attached",
        )

    contents = []
    for file in files:
        content = await file.read()
        if len(content) > config.max_upload_bytes:
            raise HTTPException(status_code=413, detail=f"File too large: {file.filename}")
        contents.append(content)

    # Nothing is written until every file passed the limits
    return [
        await asyncio.to_thread(
            save_upload, config.upload_dir, file.filename, file.content_type, content
        )
        for file, content in zip(files, contents)
    ]


async def load_personalization(db: databases.Database, user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return None
    try:
        return await users.get_custom_system_prompt(db, user_id)
    except Exception:
        logger.exception("Error fetching user preferences for %s", user_id)
        return None


# ── Chat ──────────────────────────────────────────────────────────────

@router.post("/chat")
async def chat(
    model: Optional[str] = Form(None),
    messages: Optional[str] = Form(None),
    sessionId: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    caller_id: Optional[str] = Depends(get_chat_caller),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    config: Settings = Depends(get_settings),
    db: databases.Database = Depends(get_database),
):
    """Stream one chat exchange as server-sent events."""
    if not model or not messages:
        raise HTTPException(status_code=400, detail="model and messages required")

    prior_turns = parse_turns(messages)
    attachment_files = await store_uploads(files or [], config)

    request = ChatExchangeRequest(
        model=model,
        prior_turns=prior_turns,
        session_id=sessionId or None,
        attachment_files=attachment_files,
        caller_user_id=caller_id,
        personalization_prompt=await load_personalization(db, caller_id),
    )

    try:
        exchange = await orchestrator.start(request)
    except Exception:
        await asyncio.to_thread(discard_uploads, attachment_files)
        raise

    return StreamingResponse(
        exchange.frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ── History & sessions ────────────────────────────────────────────────

@router.get("/history/{session_id}", response_model=List[ChatTurn])
async def get_history(session_id: str, store: ConversationStore = Depends(get_store)):
    """Ordered turns of one session."""
    return await store.history(session_id)


@router.get("/sessions", response_model=List[SessionSummary])
async def list_sessions(
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_store),
):
    return await store.list_for_user(user_id)


@router.put("/sessions/{session_id}")
async def rename_session(
    session_id: str,
    body: SessionTitleUpdate,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_store),
):
    if not body.title:
        raise HTTPException(status_code=400, detail="title is required")

    if not await store.rename(session_id, user_id, body.title):
        raise HTTPException(status_code=404, detail="Session not found")

    return {"sessionId": session_id, "title": body.title}


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_store),
):
    if not await store.delete(session_id, user_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)
