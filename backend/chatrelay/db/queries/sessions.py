"""Chat session and turn database queries."""

from datetime import datetime, timezone
from typing import List, Optional
import databases
import json

from chatrelay.schemas.chat import ChatTurn, SessionDefaults, SessionSummary


def _turn_values(session_id: str, turn: ChatTurn) -> dict:
    return {
        "session_id": session_id,
        "role": turn.role,
        "content": turn.content,
        "attachments": json.dumps([a.model_dump() for a in turn.attachments]) if turn.attachments else None,
        "images": json.dumps(turn.images) if turn.images else None,
        "tool_calls": json.dumps(turn.tool_calls) if turn.tool_calls else None,
        "tool_call_id": turn.tool_call_id,
        "timestamp": turn.timestamp.isoformat(),
    }


def _row_to_turn(row) -> ChatTurn:
    return ChatTurn(
        role=row["role"],
        content=row["content"] or "",
        attachments=json.loads(row["attachmentsJson"]) if row["attachmentsJson"] else [],
        images=json.loads(row["imagesJson"]) if row["imagesJson"] else [],
        tool_calls=json.loads(row["toolCallsJson"]) if row["toolCallsJson"] else None,
        tool_call_id=row["toolCallId"],
        timestamp=row["timestamp"],
    )


async def upsert_append(
    db: databases.Database,
    session_id: str,
    defaults: SessionDefaults,
    turns: List[ChatTurn],
) -> None:
    """Create the session if missing, then append turns, atomically.

    Session-level fields are only written on insert; an existing session
    keeps its title, owner and model.
    """
    now = datetime.now(timezone.utc).isoformat()

    async with db.transaction():
        await db.execute(
            """
            INSERT INTO ChatSession (sessionId, userId, title, model, createdAt)
            VALUES (:session_id, :user_id, :title, :model, :created_at)
            ON CONFLICT(sessionId) DO NOTHING
            """,
            {
                "session_id": session_id,
                "user_id": defaults.userId,
                "title": defaults.title,
                "model": defaults.model,
                "created_at": now,
            },
        )

        for turn in turns:
            await db.execute(
                """
                INSERT INTO ChatTurn (
                    sessionId, role, content, attachmentsJson, imagesJson,
                    toolCallsJson, toolCallId, timestamp
                ) VALUES (
                    :session_id, :role, :content, :attachments, :images,
                    :tool_calls, :tool_call_id, :timestamp
                )
                """,
                _turn_values(session_id, turn),
            )


async def get_session(db: databases.Database, session_id: str) -> Optional[dict]:
    """Get session row by ID."""
    row = await db.fetch_one(
        "SELECT * FROM ChatSession WHERE sessionId = :session_id",
        {"session_id": session_id},
    )
    if not row:
        return None

    return {
        "sessionId": row["sessionId"],
        "userId": row["userId"],
        "title": row["title"],
        "model": row["model"],
        "createdAt": row["createdAt"],
    }


async def list_turns(db: databases.Database, session_id: str) -> List[ChatTurn]:
    """List turns of a session in insertion order."""
    rows = await db.fetch_all(
        "SELECT * FROM ChatTurn WHERE sessionId = :session_id ORDER BY id ASC",
        {"session_id": session_id},
    )
    return [_row_to_turn(row) for row in rows]


async def list_sessions(db: databases.Database, user_id: str) -> List[SessionSummary]:
    """List a user's sessions, newest first."""
    rows = await db.fetch_all(
        """
        SELECT s.sessionId, s.createdAt, s.title,
               (SELECT t.content FROM ChatTurn t
                WHERE t.sessionId = s.sessionId AND t.role = 'user'
                ORDER BY t.id ASC LIMIT 1) AS firstUserContent
        FROM ChatSession s
        WHERE s.userId = :user_id
        ORDER BY s.createdAt DESC
        """,
        {"user_id": user_id},
    )

    summaries = []
    for row in rows:
        title = row["title"]
        if not title:
            first = row["firstUserContent"]
            title = first[:30] if first else "New Chat"
        summaries.append(
            SessionSummary(sessionId=row["sessionId"], createdAt=row["createdAt"], title=title)
        )
    return summaries


async def rename_session(
    db: databases.Database, session_id: str, user_id: str, title: str
) -> bool:
    """Set a new title on a session owned by user_id."""
    session = await get_session(db, session_id)
    if not session or session["userId"] != user_id:
        return False

    await db.execute(
        "UPDATE ChatSession SET title = :title WHERE sessionId = :session_id",
        {"title": title, "session_id": session_id},
    )
    return True


async def delete_session(db: databases.Database, session_id: str, user_id: str) -> bool:
    """Delete a session owned by user_id together with its turns."""
    session = await get_session(db, session_id)
    if not session or session["userId"] != user_id:
        return False

    async with db.transaction():
        await db.execute(
            "DELETE FROM ChatTurn WHERE sessionId = :session_id",
            {"session_id": session_id},
        )
        await db.execute(
            "DELETE FROM ChatSession WHERE sessionId = :session_id",
            {"session_id": session_id},
        )
    return True
