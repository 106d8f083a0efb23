"""
Provider adapter interface.

The enforcement core never speaks a provider's HTTP API directly. Adapters
translate a batch of action items into provider calls and report success or
failure per item.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Sequence

from ..core.exceptions import ConfigurationError
from ..models.action import ActionItem, ActionKind
from ..models.provider import ItemResult


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Adapters raise TransientProviderError, RateLimitedError or
    CredentialError for failures of a whole call, and return an
    ItemResult per item for everything else.
    """

    def __init__(self, name: str, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the adapter.

        Args:
            name: Provider name, matching ProviderSettings.name
            config: Adapter-specific configuration
        """
        self.name = name
        self.config = config or {}

    @abstractmethod
    async def apply_batch(
        self,
        owner_id: str,
        action: ActionKind,
        items: Sequence[ActionItem]
    ) -> List[ItemResult]:
        """
        Apply one action to a group of items in as few provider calls as possible.

        Args:
            owner_id: Account whose library is modified
            action: Action applied to every item
            items: Items sharing the action and container. Rollback items
                carry ``target_state``, the snapshot the entity is restored to

        Returns:
            One ItemResult per item; missing results count as failures
        """

    async def capture_state(
        self,
        owner_id: str,
        action: ActionKind,
        items: Sequence[ActionItem]
    ) -> Dict[str, Dict[str, Any]]:
        """
        Snapshot the current state of each item's entity before it is changed.

        Adapters that can query the provider should override this. The default
        derives the snapshot from the action itself.

        Returns:
            Mapping of item id to state snapshot
        """
        return {item.id: item.assumed_before_state() for item in items}

    async def refresh_credential(self, owner_id: str) -> bool:
        """
        Refresh the owner's credential for this provider.

        Returns:
            True if a fresh credential is now available; False if the owner
            must re-authorize
        """
        return False

    async def close(self):
        """Release adapter resources."""
        return None


class ProviderRegistry:
    """Maps provider names to adapters."""

    def __init__(self, adapters: Optional[Sequence[ProviderAdapter]] = None):
        self._adapters: Dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter):
        self._adapters[adapter.name.lower()] = adapter

    def get(self, provider: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider.lower())
        if adapter is None:
            raise ConfigurationError(f"providers.{provider}", "no adapter registered")
        return adapter

    def names(self) -> List[str]:
        return sorted(self._adapters)

    async def close_all(self):
        for adapter in self._adapters.values():
            await adapter.close()
