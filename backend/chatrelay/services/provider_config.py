"""Resolve a model identifier to its provider connection details."""

import databases

from chatrelay.db.queries import model_configs
from chatrelay.schemas.chat import ProviderConfig, ProviderKind


class ProviderConfigResolver:
    """Look up stored model configs, falling back to the local provider."""

    def __init__(
        self,
        db: databases.Database,
        default_base_url: str,
        default_context_window: int,
    ):
        self.db = db
        self.default_base_url = default_base_url
        self.default_context_window = default_context_window

    def default_config(self, model_identifier: str) -> ProviderConfig:
        return ProviderConfig(
            displayName=model_identifier,
            modelIdentifier=model_identifier,
            providerKind=ProviderKind.LOCAL_COMPLETION.value,
            baseUrl=self.default_base_url,
            contextWindowTokens=self.default_context_window,
        )

    async def resolve(self, model_identifier: str) -> ProviderConfig:
        config = await model_configs.get_model_config(self.db, model_identifier)
        if config is None:
            return self.default_config(model_identifier)
        return config
