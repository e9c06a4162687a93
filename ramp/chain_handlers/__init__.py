"""
Ledger executors for stablecoin settlement.
"""
from .base import (
    NATIVE,
    USDC,
    ChainHandler,
    DepositVerification,
    GasEstimate,
    TransferResult,
)
from .base_chain import BaseChainHandler, BaseSepoliaChainHandler
from .factory import ChainHandlerFactory, get_chain_config

__all__ = [
    'NATIVE',
    'USDC',
    'BaseChainHandler',
    'BaseSepoliaChainHandler',
    'ChainHandler',
    'ChainHandlerFactory',
    'DepositVerification',
    'GasEstimate',
    'TransferResult',
    'get_chain_config',
]
