"""
Ledger executor for the EVM-based Base network.
"""
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, Optional

from django.utils.module_loading import import_string
from eth_account import Account
from hexbytes import HexBytes
from loguru import logger
from web3 import HTTPProvider, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound
from web3.logs import DISCARD

from .base import (
    NATIVE,
    USDC,
    ChainHandler,
    DepositVerification,
    GasEstimate,
    TransferResult,
)


ERC20_ABI = [
    {
        'inputs': [
            {'name': 'to', 'type': 'address'},
            {'name': 'value', 'type': 'uint256'},
        ],
        'name': 'transfer',
        'outputs': [{'name': '', 'type': 'bool'}],
        'stateMutability': 'nonpayable',
        'type': 'function',
    },
    {
        'inputs': [{'name': 'account', 'type': 'address'}],
        'name': 'balanceOf',
        'outputs': [{'name': '', 'type': 'uint256'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'anonymous': False,
        'inputs': [
            {'indexed': True, 'name': 'from', 'type': 'address'},
            {'indexed': True, 'name': 'to', 'type': 'address'},
            {'indexed': False, 'name': 'value', 'type': 'uint256'},
        ],
        'name': 'Transfer',
        'type': 'event',
    },
]


class BaseChainHandler(ChainHandler):
    """Handler for Base (Ethereum L2) mainnet."""

    CHAIN_ID = 8453
    USDC_CONTRACT = '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913'
    USDC_DECIMALS = 6
    EXPLORER_URL = 'https://basescan.org'

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.rpc_url = config.get('rpc_url', '')
        self.rpc_timeout_seconds = config.get('rpc_timeout_seconds', 10)
        self.custody_private_key = config.get('custody_private_key', '')
        self.gas_limit = config.get('gas_limit', 100000)
        self.tx_timeout_seconds = config.get('tx_timeout_seconds', 120)
        self.key_provider: Optional[Callable[[str], str]] = None
        if config.get('key_provider'):
            self.key_provider = import_string(config['key_provider'])
        self._web3: Optional[Web3] = None

    @property
    def chain_name(self) -> str:
        return 'base'

    @property
    def custody_address(self) -> str:
        address = self.config.get('custody_address')
        if not address and self.custody_private_key:
            address = Account.from_key(self.custody_private_key).address
        return self._normalize_address(address) if address else ''

    @property
    def web3(self) -> Web3:
        if self._web3 is None:
            if not self.rpc_url:
                raise ValueError('RPC URL not configured')
            self._web3 = Web3(HTTPProvider(
                self.rpc_url, request_kwargs={'timeout': self.rpc_timeout_seconds}))
        return self._web3

    def validate_address(self, address: str) -> bool:
        """Validate Ethereum address format."""
        try:
            Web3.to_checksum_address(address)
            return True
        except (ValueError, TypeError):
            return False

    def _normalize_address(self, address: str) -> str:
        return Web3.to_checksum_address(address)

    def _usdc(self):
        return self.web3.eth.contract(
            address=self._normalize_address(self.USDC_CONTRACT), abi=ERC20_ABI)

    def to_units(self, amount: Decimal) -> int:
        scaled = Decimal(amount) * (10 ** self.USDC_DECIMALS)
        return int(scaled.quantize(Decimal('1'), rounding=ROUND_DOWN))

    def from_units(self, units: int) -> Decimal:
        return Decimal(units) / (10 ** self.USDC_DECIMALS)

    def _signing_key(self, source_address: Optional[str]) -> str:
        if source_address is None:
            if not self.custody_private_key:
                raise ValueError('Custody private key not configured')
            return self.custody_private_key
        if self.key_provider is None:
            raise ValueError('No wallet key provider configured')
        return self.key_provider(source_address)

    def read_balance(self, address: str, asset: str = USDC) -> Decimal:
        owner = self._normalize_address(address)
        if asset == NATIVE:
            return Decimal(Web3.from_wei(self.web3.eth.get_balance(owner), 'ether'))
        if asset != USDC:
            raise ValueError(f'Unsupported asset: {asset}')
        return self.from_units(self._usdc().functions.balanceOf(owner).call())

    def estimate_transfer_gas(
        self,
        amount: Decimal,
        destination: str,
        source_address: Optional[str] = None,
    ) -> GasEstimate:
        sender = self._normalize_address(source_address or self.custody_address)
        transfer_fn = self._usdc().functions.transfer(
            self._normalize_address(destination), self.to_units(amount))
        gas_units = transfer_fn.estimate_gas({'from': sender})
        return GasEstimate(gas_units=gas_units, gas_price_wei=self.web3.eth.gas_price)

    def transfer(
        self,
        amount: Decimal,
        destination: str,
        source_address: Optional[str] = None,
    ) -> TransferResult:
        """
        Execute a USDC ``transfer`` and wait for the receipt.

        Once the transaction is broadcast its hash is always returned, so a
        receipt timeout is reported as unconfirmed rather than as never sent.
        """
        tx_hex: Optional[str] = None
        try:
            private_key = self._signing_key(source_address)
            web3 = self.web3
            account = Account.from_key(private_key)
            sender = self._normalize_address(account.address)
            transfer_fn = self._usdc().functions.transfer(
                self._normalize_address(destination), self.to_units(amount))

            # Pre-flight simulation
            try:
                transfer_fn.call({'from': sender})
            except ContractLogicError as exc:
                error_msg = self._map_contract_error(exc)
                logger.error('Transfer simulation failed: {}', error_msg)
                return TransferResult(success=False, error_reason=error_msg)

            try:
                estimated_gas = transfer_fn.estimate_gas({'from': sender})
            except (ContractLogicError, ValueError) as exc:
                logger.warning('Gas estimation failed, using configured limit: {}', exc)
                estimated_gas = self.gas_limit

            transaction = transfer_fn.build_transaction({
                'chainId': self.CHAIN_ID,
                'from': sender,
                'nonce': web3.eth.get_transaction_count(sender),
                'gas': max(estimated_gas, self.gas_limit),
                'gasPrice': web3.eth.gas_price,
            })
            signed = account.sign_transaction(transaction)
            tx_hash = web3.eth.send_raw_transaction(signed.raw_transaction)
            tx_hex = HexBytes(tx_hash).to_0x_hex()
            logger.info('Stablecoin transfer submitted: {}', tx_hex)

            receipt = web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout_seconds)
            if receipt.status != 1:
                return TransferResult(
                    success=False,
                    tx_hash=tx_hex,
                    error_reason='Transaction reverted on-chain',
                )

            return TransferResult(
                success=True,
                tx_hash=tx_hex,
                block_number=receipt.blockNumber,
                explorer_url=self.get_explorer_url(tx_hex),
                details={'gas_used': receipt.gasUsed},
            )

        except Exception as e:
            if tx_hex:
                logger.error('Base chain transfer {} submitted but not confirmed: {}', tx_hex, e)
                return TransferResult(
                    success=False,
                    tx_hash=tx_hex,
                    explorer_url=self.get_explorer_url(tx_hex),
                    error_reason=f'Transaction submitted but not confirmed: {e}',
                    unconfirmed=True,
                )
            logger.error('Base chain transfer error: {}', e)
            return TransferResult(success=False, error_reason=f'Transfer error: {e}')

    def verify_deposit(self, tx_hash: str, expected_to: str, min_amount: Decimal) -> DepositVerification:
        """
        Sum USDC ``Transfer`` logs into ``expected_to`` from a successful receipt.
        """
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return DepositVerification(is_valid=False, invalid_reason='Deposit transaction not found')

        if receipt.status != 1:
            return DepositVerification(is_valid=False, invalid_reason='Deposit transaction reverted')

        recipient = self._normalize_address(expected_to)
        usdc = self._normalize_address(self.USDC_CONTRACT)
        sender = None
        received = 0
        for event in self._usdc().events.Transfer().process_receipt(receipt, errors=DISCARD):
            if self._normalize_address(event['address']) != usdc:
                continue
            if self._normalize_address(event['args']['to']) != recipient:
                continue
            sender = event['args']['from']
            received += int(event['args']['value'])

        amount = self.from_units(received)
        if received == 0:
            return DepositVerification(
                is_valid=False, invalid_reason='No stablecoin transfer to custody in transaction')
        if received < self.to_units(min_amount):
            return DepositVerification(
                is_valid=False,
                sender=sender,
                amount=amount,
                invalid_reason=f'Deposit amount {amount} is less than required {min_amount}',
            )
        return DepositVerification(
            is_valid=True, sender=sender, amount=amount, block_number=receipt.blockNumber)

    def _map_contract_error(self, exc: ContractLogicError) -> str:
        """Map contract errors to operator-readable messages."""
        message = str(exc).lower()
        if 'amount exceeds balance' in message or 'insufficient balance' in message:
            return 'Sending wallet has insufficient USDC balance'
        if 'insufficient funds' in message:
            return 'Sending wallet has insufficient ETH for gas'
        return 'Transfer reverted on-chain'

    def get_explorer_url(self, tx_hash: str) -> str:
        return f'{self.EXPLORER_URL}/tx/{tx_hash}'


class BaseSepoliaChainHandler(BaseChainHandler):
    """Handler for the Base Sepolia testnet."""

    CHAIN_ID = 84532
    USDC_CONTRACT = '0x036CbD53842c5426634e7929541eC2318f3dCF7e'
    EXPLORER_URL = 'https://sepolia.basescan.org'

    @property
    def chain_name(self) -> str:
        return 'base-sepolia'
