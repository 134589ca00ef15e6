from typing import List

import databases
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from chatrelay.db.database import get_database
from chatrelay.db.queries import model_configs

router = APIRouter(tags=["models"])


class ModelOption(BaseModel):
    name: str
    value: str
    provider: str
    contextWindow: int


# Offered when no model config has been stored yet
DEFAULT_MODELS = [
    ModelOption(name="Llama 3.2 (Default)", value="llama3.2:3b", provider="ollama", contextWindow=16384),
    ModelOption(name="Ministral 3B", value="ministral-3:3b", provider="ollama", contextWindow=16384),
    ModelOption(name="Qwen 2.5", value="qwen2.5:0.5b", provider="ollama", contextWindow=16384),
]


@router.get("/models", response_model=List[ModelOption])
async def list_models(db: databases.Database = Depends(get_database)):
    """Models a client may pick from."""
    configs = await model_configs.list_active_model_configs(db)
    if not configs:
        return DEFAULT_MODELS

    return [
        ModelOption(
            name=c.displayName,
            value=c.modelIdentifier,
            provider=c.providerKind,
            contextWindow=c.contextWindowTokens,
        )
        for c in configs
    ]
