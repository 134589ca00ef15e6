"""Prompt fragments injected into conversations."""

ATTACHMENTS_HEADING = "--- Attached Files Analysis ---"

SEARCHING_STATUS = "_Searching the web..._\n\n"


def build_persona_instruction(custom_prompt: str) -> str:
    """
    Wrap a user's personalization text in standing instructions.

    Args:
        custom_prompt: Free text the user saved in their preferences

    Returns:
        System instruction text
    """
    return f"""
User Personalization / Persona:
{custom_prompt}

IMPORTANT INSTRUCTIONS:
- You must strictly adhere to the persona defined above.
- If asked about your hobbies, personal life, or preferences, answer as the persona would. Invent plausible details if necessary to stay in character.
- Do NOT break character or state you are an AI unless explicitly asked about your underlying architecture or limitations.
- If the persona conflicts with being helpful, prioritize the persona's tone while still attempting to be helpful.
"""


def append_file_context(content: str, file_context: str) -> str:
    return f"{content}\n\n{ATTACHMENTS_HEADING}\n{file_context}"


def session_title(user_content: str) -> str:
    """Title for a new session: first 30 characters of the opening message."""
    return user_content[:30] if user_content else "Chat"
