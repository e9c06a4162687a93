"""
Factory for creating ledger executors.
"""
from typing import Any, Dict, Optional, Type

from django.conf import settings

from .base import ChainHandler
from .base_chain import BaseChainHandler, BaseSepoliaChainHandler


def get_chain_config() -> Dict[str, Any]:
    """Ledger configuration from Django settings."""
    return {
        'rpc_url': getattr(settings, 'LEDGER_RPC_URL', ''),
        'rpc_timeout_seconds': getattr(settings, 'LEDGER_RPC_TIMEOUT_SECONDS', 10),
        'custody_private_key': getattr(settings, 'CUSTODY_PRIVATE_KEY', ''),
        'custody_address': getattr(settings, 'CUSTODY_ADDRESS', ''),
        'gas_limit': getattr(settings, 'LEDGER_GAS_LIMIT', 100000),
        'tx_timeout_seconds': getattr(settings, 'LEDGER_TX_TIMEOUT_SECONDS', 120),
        'key_provider': getattr(settings, 'WALLET_KEY_PROVIDER', ''),
    }


class ChainHandlerFactory:
    """Factory to create ledger executors based on network name."""

    _handlers: Dict[str, Type[ChainHandler]] = {
        'base': BaseChainHandler,
        'base-sepolia': BaseSepoliaChainHandler,
    }

    @classmethod
    def create(cls, network: str, config: Optional[Dict[str, Any]] = None) -> ChainHandler:
        """
        Create a handler for the specified network.

        Raises:
            ValueError: If network is not supported
        """
        network_lower = network.lower().strip()

        handler_class = cls._handlers.get(network_lower)
        if handler_class is None:
            supported = ', '.join(cls.get_supported_networks())
            raise ValueError(
                f"Unsupported network: {network}. "
                f"Supported networks: {supported}"
            )

        return handler_class(config or {})

    @classmethod
    def from_settings(cls) -> ChainHandler:
        return cls.create(getattr(settings, 'LEDGER_NETWORK', 'base'), get_chain_config())

    @classmethod
    def get_supported_networks(cls) -> list[str]:
        return list(cls._handlers.keys())
