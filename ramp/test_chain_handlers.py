from decimal import Decimal
from unittest.mock import Mock

from django.test import SimpleTestCase, override_settings
from eth_account import Account
from web3.exceptions import TimeExhausted, TransactionNotFound

from .chain_handlers import ChainHandlerFactory
from .chain_handlers.base_chain import BaseChainHandler, BaseSepoliaChainHandler
from .testing import USER_ADDRESS


class ChainHandlerFactoryTests(SimpleTestCase):
    def test_creates_handler_by_network_name(self):
        handler = ChainHandlerFactory.create(' Base-Sepolia ', {})

        self.assertIsInstance(handler, BaseSepoliaChainHandler)
        self.assertEqual(handler.chain_name, 'base-sepolia')
        self.assertEqual(handler.CHAIN_ID, 84532)

    def test_unsupported_network_lists_supported(self):
        with self.assertRaises(ValueError) as ctx:
            ChainHandlerFactory.create('solana')

        self.assertIn('base-sepolia', str(ctx.exception))

    def test_supported_networks(self):
        self.assertEqual(ChainHandlerFactory.get_supported_networks(), ['base', 'base-sepolia'])

    @override_settings(LEDGER_NETWORK='base', LEDGER_RPC_URL='http://localhost:8545', LEDGER_GAS_LIMIT=90000)
    def test_from_settings(self):
        handler = ChainHandlerFactory.from_settings()

        self.assertIsInstance(handler, BaseChainHandler)
        self.assertEqual(handler.rpc_url, 'http://localhost:8545')
        self.assertEqual(handler.gas_limit, 90000)


class BaseChainHandlerTests(SimpleTestCase):
    def setUp(self):
        self.account = Account.create()
        self.handler = BaseChainHandler({'custody_private_key': self.account.key.hex()})

    def test_custody_address_derived_from_key(self):
        self.assertEqual(self.handler.custody_address, self.account.address)

    def test_configured_custody_address_wins(self):
        handler = BaseChainHandler({'custody_address': USER_ADDRESS.lower()})

        self.assertEqual(handler.custody_address, USER_ADDRESS)

    def test_unit_conversion_truncates_to_six_decimals(self):
        self.assertEqual(self.handler.to_units(Decimal('31.2402379')), 31240237)
        self.assertEqual(self.handler.from_units(31240237), Decimal('31.240237'))

    def test_validate_address(self):
        self.assertTrue(self.handler.validate_address(USER_ADDRESS))
        self.assertFalse(self.handler.validate_address('0x1234'))
        self.assertFalse(self.handler.validate_address('not-an-address'))

    def test_missing_rpc_url(self):
        with self.assertRaises(ValueError):
            self.handler.web3

    def test_user_wallet_transfer_without_key_provider(self):
        result = self.handler.transfer(Decimal('5'), USER_ADDRESS, source_address=self.account.address)

        self.assertFalse(result.success)
        self.assertIn('No wallet key provider configured', result.error_reason)

    def _mock_web3(self) -> Mock:
        web3 = Mock()
        web3.eth.get_transaction_count.return_value = 0
        web3.eth.gas_price = 1_000_000_000
        transfer_fn = web3.eth.contract.return_value.functions.transfer.return_value
        transfer_fn.estimate_gas.return_value = 60000
        transfer_fn.build_transaction.return_value = {
            'chainId': BaseChainHandler.CHAIN_ID,
            'to': BaseChainHandler.USDC_CONTRACT,
            'value': 0,
            'data': '0x',
            'nonce': 0,
            'gas': 100000,
            'gasPrice': 1_000_000_000,
        }
        web3.eth.send_raw_transaction.return_value = bytes.fromhex('12' * 32)
        return web3

    def test_receipt_timeout_after_broadcast_returns_hash(self):
        self.handler._web3 = self._mock_web3()
        self.handler._web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted('not mined')

        result = self.handler.transfer(Decimal('5'), USER_ADDRESS)

        self.assertFalse(result.success)
        self.assertTrue(result.unconfirmed)
        self.assertEqual(result.tx_hash, '0x' + '12' * 32)
        self.assertIn('submitted but not confirmed', result.error_reason)

    def test_failure_before_broadcast_has_no_hash(self):
        self.handler._web3 = self._mock_web3()
        self.handler._web3.eth.send_raw_transaction.side_effect = ValueError('nonce too low')

        result = self.handler.transfer(Decimal('5'), USER_ADDRESS)

        self.assertFalse(result.success)
        self.assertFalse(result.unconfirmed)
        self.assertIsNone(result.tx_hash)

    def test_confirmed_transfer(self):
        self.handler._web3 = self._mock_web3()
        self.handler._web3.eth.wait_for_transaction_receipt.return_value = Mock(
            status=1, blockNumber=42, gasUsed=51000)

        result = self.handler.transfer(Decimal('5'), USER_ADDRESS)

        self.assertTrue(result.success)
        self.assertEqual(result.block_number, 42)
        self.assertEqual(result.explorer_url, 'https://basescan.org/tx/0x' + '12' * 32)

    def test_deposit_not_found(self):
        self.handler._web3 = Mock()
        self.handler._web3.eth.get_transaction_receipt.side_effect = TransactionNotFound('missing')

        verification = self.handler.verify_deposit('0xabc', USER_ADDRESS, Decimal('10'))

        self.assertFalse(verification.is_valid)
        self.assertEqual(verification.invalid_reason, 'Deposit transaction not found')

    def test_reverted_deposit(self):
        self.handler._web3 = Mock()
        self.handler._web3.eth.get_transaction_receipt.return_value = Mock(status=0)

        verification = self.handler.verify_deposit('0xabc', USER_ADDRESS, Decimal('10'))

        self.assertFalse(verification.is_valid)
        self.assertEqual(verification.invalid_reason, 'Deposit transaction reverted')

    def test_explorer_url(self):
        self.assertEqual(
            self.handler.get_explorer_url('0xabc'),
            'https://basescan.org/tx/0xabc',
        )
