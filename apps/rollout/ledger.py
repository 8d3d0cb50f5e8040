from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception, Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware, SignAndSendRawMiddlewareBuilder

from .errors import ConfirmationTimeout, DeploymentRejected, NetworkMismatch, RpcUnreachable
from .networks import NetworkConfig

LOGGER = logging.getLogger('zenon.rollout.ledger')


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    block_number: int
    status: int
    contract_address: str | None = None


class LedgerClient(Protocol):
    def submit(self, tx: dict[str, Any]) -> str:
        ...

    def get_code(self, address: str) -> bytes:
        ...

    def wait_confirmed(self, tx_hash: str, min_confirmations: int, timeout_seconds: float) -> TxReceipt:
        ...


def _hex_prefixed(value: Any) -> str:
    raw = value.hex() if hasattr(value, 'hex') else str(value)
    if raw.startswith('0x'):
        return raw
    return f'0x{raw}'


class Web3LedgerClient:
    def __init__(self, web3: Web3, account: LocalAccount, poll_interval_seconds: float = 2.0) -> None:
        self.web3 = web3
        self.account = account
        self.poll_interval_seconds = poll_interval_seconds

    def submit(self, tx: dict[str, Any]) -> str:
        request = dict(tx)
        request['from'] = self.account.address
        try:
            tx_hash = self.web3.eth.send_transaction(request)
        except (ContractLogicError, Web3RPCError, ValueError) as exc:
            raise DeploymentRejected(f'transaction to {tx.get("to") or "<create>"} rejected: {exc}') from exc
        return _hex_prefixed(tx_hash)

    def get_code(self, address: str) -> bytes:
        return bytes(self.web3.eth.get_code(Web3.to_checksum_address(address)))

    def wait_confirmed(self, tx_hash: str, min_confirmations: int, timeout_seconds: float) -> TxReceipt:
        deadline = time.monotonic() + timeout_seconds
        try:
            raw = self.web3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=timeout_seconds,
                poll_latency=self.poll_interval_seconds
            )
        except TimeExhausted as exc:
            raise ConfirmationTimeout(f'tx {tx_hash} not included within {timeout_seconds}s') from exc

        contract_address = raw.get('contractAddress')
        receipt = TxReceipt(
            tx_hash=_hex_prefixed(raw['transactionHash']),
            block_number=int(raw['blockNumber']),
            status=int(raw['status']),
            contract_address=Web3.to_checksum_address(contract_address) if contract_address else None
        )

        # Inclusion counts as the first confirmation.
        while min_confirmations > 1:
            depth = self.web3.eth.block_number - receipt.block_number + 1
            if depth >= min_confirmations:
                break
            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(
                    f'tx {tx_hash} reached {depth}/{min_confirmations} confirmations within {timeout_seconds}s'
                )
            time.sleep(self.poll_interval_seconds)

        return receipt


def connect(rpc_url: str, network: NetworkConfig, account: LocalAccount, timeout_seconds: int = 30) -> Web3LedgerClient:
    web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': timeout_seconds}))
    if network.poa:
        web3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    web3.middleware_onion.inject(SignAndSendRawMiddlewareBuilder.build(account), layer=0)

    if not web3.is_connected():
        raise RpcUnreachable(f'rpc is not reachable at {rpc_url} for {network.chain_key}')

    # requests transport errors derive from OSError.
    try:
        reported = int(web3.eth.chain_id)
    except (OSError, Web3Exception) as exc:
        raise RpcUnreachable(f'rpc at {rpc_url} failed to report a chain id: {exc}') from exc

    if reported != network.chain_id:
        raise NetworkMismatch(
            f'rpc at {rpc_url} reports chain_id={reported}, expected {network.chain_id} ({network.chain_key})'
        )

    LOGGER.info('connected chain_key=%s chain_id=%s authority=%s', network.chain_key, reported, account.address)
    return Web3LedgerClient(web3, account, poll_interval_seconds=network.poll_interval_seconds)


def submit_and_confirm(ledger: LedgerClient, tx: dict[str, Any], network: NetworkConfig, label: str) -> TxReceipt:
    tx_hash = ledger.submit(tx)
    LOGGER.info('submitted label=%s tx_hash=%s to=%s', label, tx_hash, tx.get('to'))

    receipt = ledger.wait_confirmed(tx_hash, network.confirmations, network.confirmation_timeout_seconds)
    if receipt.status != 1:
        raise DeploymentRejected(f'{label} reverted tx_hash={tx_hash} block={receipt.block_number}')

    LOGGER.info(
        'confirmed label=%s tx_hash=%s block=%s confirmations=%s',
        label,
        tx_hash,
        receipt.block_number,
        network.confirmations
    )
    return receipt
