"""User lookups needed by the chat flow. Accounts are managed elsewhere."""

from typing import Optional
import databases


async def get_custom_system_prompt(db: databases.Database, user_id: str) -> Optional[str]:
    """Get the personalization prompt a user saved, if any."""
    row = await db.fetch_one(
        "SELECT customSystemPrompt FROM User WHERE id = :user_id",
        {"user_id": user_id},
    )
    if not row:
        return None
    return row["customSystemPrompt"] or None
