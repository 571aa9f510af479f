"""Provider tag to adapter lookup."""

import logging
from typing import Dict, List, Optional

from ..errors import UnknownProviderError
from .apple import AppleAdapter
from .base import ProviderAdapter
from .google import GoogleAdapter
from .outlook import OutlookAdapter
from .passthrough import PassthroughAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Maps provider tags to adapters.

    Adding a provider is a ``register`` call; nothing that dispatches on the
    tag needs to change.
    """

    def __init__(self, adapters: Optional[List[ProviderAdapter]] = None):
        self._adapters: Dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    @classmethod
    def default(cls) -> "AdapterRegistry":
        """Registry with the built-in Google, Apple and Outlook adapters."""
        return cls([GoogleAdapter(), AppleAdapter(), OutlookAdapter()])

    def register(self, adapter: ProviderAdapter) -> None:
        if not adapter.tag:
            raise ValueError("Adapter must define a provider tag")
        self._adapters[adapter.tag.lower()] = adapter

    @property
    def tags(self) -> List[str]:
        return sorted(self._adapters)

    def get(self, tag: str, api_endpoint: Optional[str] = None) -> ProviderAdapter:
        """Look up the adapter for ``tag``.

        Unknown tags fall back to a pass-through adapter, which needs the
        caller's custom endpoint.

        Raises:
            UnknownProviderError: Unknown tag and no custom endpoint
        """
        adapter = self._adapters.get(tag.lower())
        if adapter is not None:
            return adapter

        if not api_endpoint:
            raise UnknownProviderError(
                f"Unknown provider '{tag}' and no api_endpoint configured"
            )
        logger.warning(
            f"No adapter registered for provider '{tag}', passing events through untransformed "
            f"to {api_endpoint}"
        )
        return PassthroughAdapter(tag.lower())
