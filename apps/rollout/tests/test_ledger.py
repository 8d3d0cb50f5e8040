import unittest
from unittest.mock import MagicMock, PropertyMock, patch

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware

from apps.rollout.errors import ConfirmationTimeout, DeploymentRejected, NetworkMismatch, RpcUnreachable
from apps.rollout.ledger import Web3LedgerClient, connect
from apps.rollout.networks import resolve_network
from apps.rollout.tests.fakes import AUTHORITY

HARDHAT_KEY = '0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80'
TX_HASH = '0x' + 'ab' * 32
DEX = Web3.to_checksum_address('0xe7f1725e7734ce288f8367e1bb143e90bb3f0512')


def _receipt(block_number: int = 10, status: int = 1, contract_address: str | None = None) -> dict:
    return {
        'transactionHash': bytes.fromhex(TX_HASH[2:]),
        'blockNumber': block_number,
        'status': status,
        'contractAddress': contract_address
    }


class Web3LedgerClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.web3 = MagicMock()
        self.client = Web3LedgerClient(self.web3, Account.from_key(HARDHAT_KEY), poll_interval_seconds=0.5)

    def test_submit_signs_as_authority_and_prefixes_hash(self) -> None:
        self.web3.eth.send_transaction.return_value = bytes.fromhex('ab' * 32)

        tx_hash = self.client.submit({'to': DEX, 'data': b'\x01'})

        self.assertEqual(tx_hash, TX_HASH)
        self.web3.eth.send_transaction.assert_called_once_with({'to': DEX, 'data': b'\x01', 'from': AUTHORITY})

    def test_node_rejection_is_a_deployment_rejection(self) -> None:
        for error in (Web3RPCError('insufficient funds for gas * price + value'), ValueError('nonce too low')):
            with self.subTest(error=error):
                self.web3.eth.send_transaction.side_effect = error
                with self.assertRaises(DeploymentRejected) as ctx:
                    self.client.submit({'data': b'\x60\x80'})
                self.assertFalse(ctx.exception.retryable)
                self.assertIn('<create>', ctx.exception.detail)

    def test_receipt_wait_exhausted_is_a_confirmation_timeout(self) -> None:
        self.web3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted('not in chain after 60 seconds')

        with self.assertRaises(ConfirmationTimeout) as ctx:
            self.client.wait_confirmed(TX_HASH, 1, 60)
        self.assertTrue(ctx.exception.retryable)

    def test_receipt_fields_and_created_contract(self) -> None:
        self.web3.eth.wait_for_transaction_receipt.return_value = _receipt(
            contract_address='0x5fbdb2315678afecb367f032d93f642f64180aa3'
        )

        receipt = self.client.wait_confirmed(TX_HASH, 1, 60)

        self.assertEqual(receipt.tx_hash, TX_HASH)
        self.assertEqual(receipt.block_number, 10)
        self.assertEqual(receipt.status, 1)
        self.assertEqual(receipt.contract_address, '0x5FbDB2315678afecb367f032d93F642f64180aa3')
        self.web3.eth.wait_for_transaction_receipt.assert_called_once_with(TX_HASH, timeout=60, poll_latency=0.5)

    @patch('apps.rollout.ledger.time')
    def test_waits_until_confirmation_depth(self, mock_time: MagicMock) -> None:
        mock_time.monotonic.return_value = 0.0
        self.web3.eth.wait_for_transaction_receipt.return_value = _receipt(block_number=10)
        type(self.web3.eth).block_number = PropertyMock(side_effect=[10, 11, 12])

        receipt = self.client.wait_confirmed(TX_HASH, 3, 60)

        self.assertEqual(receipt.block_number, 10)
        self.assertEqual(mock_time.sleep.call_count, 2)
        mock_time.sleep.assert_called_with(0.5)

    @patch('apps.rollout.ledger.time')
    def test_depth_not_reached_before_deadline(self, mock_time: MagicMock) -> None:
        mock_time.monotonic.side_effect = [0.0, 0.0, 100.0]
        self.web3.eth.wait_for_transaction_receipt.return_value = _receipt(block_number=10)
        type(self.web3.eth).block_number = PropertyMock(return_value=10)

        with self.assertRaises(ConfirmationTimeout) as ctx:
            self.client.wait_confirmed(TX_HASH, 3, 60)
        self.assertIn('1/3', ctx.exception.detail)
        self.assertEqual(mock_time.sleep.call_count, 1)

    def test_inclusion_is_enough_for_one_confirmation(self) -> None:
        self.web3.eth.wait_for_transaction_receipt.return_value = _receipt(block_number=10)
        type(self.web3.eth).block_number = PropertyMock(side_effect=AssertionError('depth polled'))

        self.assertEqual(self.client.wait_confirmed(TX_HASH, 1, 60).block_number, 10)
        self.assertEqual(self.client.wait_confirmed(TX_HASH, 0, 60).block_number, 10)


@patch('apps.rollout.ledger.Web3')
class ConnectTests(unittest.TestCase):
    def setUp(self) -> None:
        self.account = Account.from_key(HARDHAT_KEY)
        self.network = resolve_network('hardhat-local')

    def _web3(self, web3_cls: MagicMock, chain_id: int = 31337) -> MagicMock:
        web3 = web3_cls.return_value
        web3.is_connected.return_value = True
        web3.eth.chain_id = chain_id
        return web3

    def test_returns_client_for_matching_chain(self, web3_cls: MagicMock) -> None:
        web3 = self._web3(web3_cls)

        client = connect('http://127.0.0.1:8545', self.network, self.account, timeout_seconds=7)

        self.assertIsInstance(client, Web3LedgerClient)
        self.assertIs(client.web3, web3)
        self.assertEqual(client.poll_interval_seconds, self.network.poll_interval_seconds)
        web3_cls.HTTPProvider.assert_called_once_with('http://127.0.0.1:8545', request_kwargs={'timeout': 7})
        injected = [call.args[0] for call in web3.middleware_onion.inject.call_args_list]
        self.assertNotIn(ExtraDataToPOAMiddleware, injected)

    def test_poa_chain_gets_extra_data_middleware(self, web3_cls: MagicMock) -> None:
        web3 = self._web3(web3_cls, chain_id=97)

        connect('https://bsc-testnet.example', resolve_network('bnb-testnet'), self.account)

        web3.middleware_onion.inject.assert_any_call(ExtraDataToPOAMiddleware, layer=0)

    def test_chain_id_mismatch(self, web3_cls: MagicMock) -> None:
        self._web3(web3_cls, chain_id=1)

        with self.assertRaises(NetworkMismatch) as ctx:
            connect('http://127.0.0.1:8545', self.network, self.account)
        self.assertEqual(ctx.exception.code, 'network_mismatch')
        self.assertIn('chain_id=1', ctx.exception.detail)

    def test_disconnected_rpc_is_unreachable(self, web3_cls: MagicMock) -> None:
        web3 = self._web3(web3_cls)
        web3.is_connected.return_value = False

        with self.assertRaises(RpcUnreachable) as ctx:
            connect('http://127.0.0.1:8545', self.network, self.account)
        self.assertEqual(ctx.exception.code, 'rpc_unreachable')

    def test_transport_failure_on_chain_id_is_unreachable(self, web3_cls: MagicMock) -> None:
        web3 = self._web3(web3_cls)
        type(web3.eth).chain_id = PropertyMock(side_effect=ConnectionError('connection refused'))

        with self.assertRaises(RpcUnreachable):
            connect('http://127.0.0.1:8545', self.network, self.account)
