"""
Ledger executor interface.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional


USDC = 'USDC'
NATIVE = 'native'


@dataclass
class TransferResult:
    """Result of a stablecoin transfer."""
    success: bool
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    explorer_url: Optional[str] = None
    error_reason: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    # Broadcast but never confirmed; the transaction may still be mined.
    unconfirmed: bool = False


@dataclass
class GasEstimate:
    """Gas needed for one settlement call, priced at the current gas price."""
    gas_units: int
    gas_price_wei: int

    @property
    def cost_wei(self) -> int:
        return self.gas_units * self.gas_price_wei

    @property
    def cost(self) -> Decimal:
        return Decimal(self.cost_wei) / Decimal(10 ** 18)


@dataclass
class DepositVerification:
    """Result of checking a user's stablecoin deposit into custody."""
    is_valid: bool
    sender: Optional[str] = None
    amount: Optional[Decimal] = None
    block_number: Optional[int] = None
    invalid_reason: Optional[str] = None


class ChainHandler(ABC):
    """
    Abstract base class for the ledger executor.
    Each network implements this interface.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the chain handler.

        Args:
            config: Network configuration (RPC URL, custody keys, timeouts)
        """
        self.config = config

    @property
    @abstractmethod
    def chain_name(self) -> str:
        """Return the network name (e.g., 'base')."""
        pass

    @property
    def custody_address(self) -> str:
        return self.config.get('custody_address', '')

    @abstractmethod
    def transfer(
        self,
        amount: Decimal,
        destination: str,
        source_address: Optional[str] = None,
    ) -> TransferResult:
        """
        Move stablecoin on-chain and wait for the receipt.

        Args:
            amount: Stablecoin amount in whole units
            destination: Recipient address
            source_address: Sending wallet; the custodial wallet when omitted

        Returns:
            TransferResult with the transaction hash and block number
        """
        pass

    @abstractmethod
    def read_balance(self, address: str, asset: str = USDC) -> Decimal:
        """
        Read a balance in whole units.

        Raises on RPC failure.
        """
        pass

    @abstractmethod
    def estimate_transfer_gas(
        self,
        amount: Decimal,
        destination: str,
        source_address: Optional[str] = None,
    ) -> GasEstimate:
        """Estimate gas for a stablecoin transfer. Raises on RPC failure."""
        pass

    @abstractmethod
    def verify_deposit(self, tx_hash: str, expected_to: str, min_amount: Decimal) -> DepositVerification:
        """Check that ``tx_hash`` moved at least ``min_amount`` stablecoin to ``expected_to``."""
        pass

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        pass

    def get_explorer_url(self, tx_hash: str) -> str:
        return f"{self.config.get('explorer_url', '')}/tx/{tx_hash}"
