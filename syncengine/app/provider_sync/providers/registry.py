"""
Provider Registry

Builds adapter instances from ProviderConfig rows.
"""

import json
import logging
from typing import Dict, Type

from sqlalchemy.orm import Session

from .base import BaseBankProvider
from .enable_banking import EnableBankingProvider
from .oauth2 import OAuth2AggregatorProvider
from ..errors import ProviderNotFoundError
from syncengine.app.models import ProviderConfig

logger = logging.getLogger(__name__)

# Adapter classes by ProviderConfig.config_data["adapter"]; falls back to the provider name
ADAPTERS: Dict[str, Type[BaseBankProvider]] = {
    'enable_banking': EnableBankingProvider,
    'oauth2': OAuth2AggregatorProvider,
    'tink': OAuth2AggregatorProvider,
}


def register_adapter(name: str, adapter_class: Type[BaseBankProvider]) -> None:
    """Make an adapter class available under the given key."""
    ADAPTERS[name] = adapter_class


class ProviderRegistry:
    """
    Resolve provider ids to configured adapter instances (cached per registry).
    """

    def __init__(self, db: Session):
        self.db = db
        self._provider_cache: Dict[str, BaseBankProvider] = {}

    def get(self, provider_id: str) -> BaseBankProvider:
        """
        Get provider instance (cached).

        Args:
            provider_id: ProviderConfig.name

        Returns:
            Initialized provider instance

        Raises:
            ProviderNotFoundError: If provider not found, inactive or unsupported
        """
        if provider_id in self._provider_cache:
            return self._provider_cache[provider_id]

        provider_config = self.db.query(ProviderConfig).filter(
            ProviderConfig.name == provider_id
        ).first()
        if not provider_config:
            raise ProviderNotFoundError(
                f"Provider {provider_id} not found",
                context={"provider_id": provider_id}
            )

        if not provider_config.is_active:
            raise ProviderNotFoundError(
                f"Provider {provider_id} is not active",
                context={"provider_id": provider_id}
            )

        try:
            config_data = json.loads(provider_config.config_data) if provider_config.config_data else {}
        except (json.JSONDecodeError, TypeError):
            config_data = {}
        adapter_key = config_data.get('adapter', provider_config.name)

        adapter_class = ADAPTERS.get(adapter_key)
        if adapter_class is None:
            raise ProviderNotFoundError(
                f"Provider {provider_id} is not supported",
                context={"provider_id": provider_id, "adapter": adapter_key}
            )

        provider = adapter_class(provider_config)
        provider.provider_id = provider_config.name

        self._provider_cache[provider_id] = provider
        logger.debug(f"Loaded {adapter_class.__name__} for provider {provider_id}")
        return provider
