"""Model config database queries."""

from typing import List, Optional
import databases
import secrets

from chatrelay.schemas.chat import ProviderConfig


def _row_to_config(row) -> ProviderConfig:
    return ProviderConfig(
        displayName=row["displayName"],
        modelIdentifier=row["modelIdentifier"],
        providerKind=row["providerKind"],
        baseUrl=row["baseUrl"],
        encryptedApiKey=row["encryptedApiKey"],
        contextWindowTokens=row["contextWindowTokens"],
        isActive=bool(row["isActive"]),
    )


async def get_model_config(
    db: databases.Database, model_identifier: str
) -> Optional[ProviderConfig]:
    """Get the config stored for a model identifier."""
    row = await db.fetch_one(
        "SELECT * FROM ModelConfig WHERE modelIdentifier = :model",
        {"model": model_identifier},
    )
    if not row:
        return None
    return _row_to_config(row)


async def list_active_model_configs(db: databases.Database) -> List[ProviderConfig]:
    """List configs flagged active, ordered by display name."""
    rows = await db.fetch_all(
        "SELECT * FROM ModelConfig WHERE isActive = 1 ORDER BY displayName ASC"
    )
    return [_row_to_config(row) for row in rows]


async def create_model_config(db: databases.Database, config: ProviderConfig) -> str:
    """Insert a model config. The API key must already be encrypted."""
    config_id = secrets.token_urlsafe(16)

    await db.execute(
        """
        INSERT INTO ModelConfig (
            id, displayName, modelIdentifier, providerKind, baseUrl,
            encryptedApiKey, contextWindowTokens, isActive
        ) VALUES (
            :id, :display_name, :model_identifier, :provider_kind, :base_url,
            :encrypted_api_key, :context_window, :is_active
        )
        """,
        {
            "id": config_id,
            "display_name": config.displayName,
            "model_identifier": config.modelIdentifier,
            "provider_kind": config.providerKind,
            "base_url": config.baseUrl,
            "encrypted_api_key": config.encryptedApiKey,
            "context_window": config.contextWindowTokens,
            "is_active": 1 if config.isActive else 0,
        },
    )
    return config_id
