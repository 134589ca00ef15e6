from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional

import httpx

from chatrelay.core.events import ProviderEvent
from chatrelay.schemas.chat import ChatTurn, UpstreamTarget


class ProviderAdapter(ABC):
    def __init__(
        self,
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.connect_timeout = connect_timeout
        self.transport = transport

    def http_client(self) -> httpx.AsyncClient:
        # Generation can pause for a long time between chunks, so only connecting is bounded
        timeout = httpx.Timeout(None, connect=self.connect_timeout)
        return httpx.AsyncClient(transport=self.transport, timeout=timeout)

    @abstractmethod
    def invoke(
        self,
        turns: List[ChatTurn],
        target: UpstreamTarget,
        tools: Optional[List[dict]] = None,
    ) -> AsyncIterator[ProviderEvent]:
        """
        Run one completion against the upstream provider.

        Args:
            turns: Full turn sequence to send
            target: Resolved model config and decrypted API key
            tools: Tool definitions to offer, or None to disable tool use

        Yields:
            Normalized events, ending with exactly one Completed or Failed
            unless the upstream stream stops without a terminal signal
        """
        ...
