"""Exceptions raised by the chat orchestration layer."""


class ChatRequestError(ValueError):
    """The caller broke the request contract (maps to a 400 response)."""


class UnsupportedProviderError(Exception):
    """A model config names a provider kind no adapter speaks."""

    def __init__(self, provider_kind: str):
        self.provider_kind = provider_kind
        super().__init__(f"Unsupported provider kind: {provider_kind!r}")


class UpstreamUnavailableError(Exception):
    """The provider failed before producing any event."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
