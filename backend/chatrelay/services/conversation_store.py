"""Repository over the chat session tables."""

from typing import List

import databases

from chatrelay.db.queries import sessions
from chatrelay.schemas.chat import ChatTurn, SessionDefaults, SessionSummary


class ConversationStore:
    """Append-only conversation persistence keyed by session id."""

    def __init__(self, db: databases.Database):
        self.db = db

    async def upsert_append(
        self, session_id: str, defaults: SessionDefaults, turns: List[ChatTurn]
    ) -> None:
        await sessions.upsert_append(self.db, session_id, defaults, turns)

    async def history(self, session_id: str) -> List[ChatTurn]:
        return await sessions.list_turns(self.db, session_id)

    async def list_for_user(self, user_id: str) -> List[SessionSummary]:
        return await sessions.list_sessions(self.db, user_id)

    async def rename(self, session_id: str, user_id: str, title: str) -> bool:
        return await sessions.rename_session(self.db, session_id, user_id, title)

    async def delete(self, session_id: str, user_id: str) -> bool:
        return await sessions.delete_session(self.db, session_id, user_id)
