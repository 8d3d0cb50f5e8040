from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from web3 import Web3

from .artifacts import Artifact, encode_call
from .errors import DeploymentRejected, InvalidSeed, ResourceNotFound
from .ledger import LedgerClient, submit_and_confirm
from .networks import NetworkConfig
from .salts import SALT_BYTES

LOGGER = logging.getLogger('zenon.rollout.binder')


def create2_address(factory: str, salt: bytes, init_code: bytes) -> str:
    if len(salt) != SALT_BYTES:
        raise InvalidSeed(f'create2 salt must be {SALT_BYTES} bytes, got {len(salt)}')
    factory_bytes = bytes.fromhex(Web3.to_checksum_address(factory)[2:])
    digest = Web3.keccak(b'\xff' + factory_bytes + bytes(salt) + bytes(Web3.keccak(bytes(init_code))))
    return Web3.to_checksum_address(bytes(digest)[12:])


class Create2Factory(Protocol):
    address: str

    def deployment_tx(self, init_code: bytes, salt: bytes) -> dict[str, Any]:
        ...


@dataclass(frozen=True)
class SingletonFactory:
    """Deterministic deployment proxy taking raw `salt ++ init_code` calldata."""

    address: str

    def deployment_tx(self, init_code: bytes, salt: bytes) -> dict[str, Any]:
        return {'to': Web3.to_checksum_address(self.address), 'data': bytes(salt) + bytes(init_code)}


@dataclass(frozen=True)
class DeployerContract:
    """The rollout's own deployer, called through its artifact ABI."""

    address: str
    artifact: Artifact

    def deployment_tx(self, init_code: bytes, salt: bytes) -> dict[str, Any]:
        data = encode_call(self.artifact, 'deploy', [bytes(init_code), int.from_bytes(salt, 'big')])
        return {'to': Web3.to_checksum_address(self.address), 'data': data}


class RemoteResourceBinder:
    def __init__(self, ledger: LedgerClient, network: NetworkConfig) -> None:
        self.ledger = ledger
        self.network = network

    def _has_code(self, address: str) -> bool:
        return len(self.ledger.get_code(address)) > 0

    def materialize(self, name: str, init_code: bytes, salt: bytes, factory: Create2Factory) -> str:
        # Code at the derived address is taken as proof of a prior deployment;
        # the salt space is assumed collision-free.
        address = create2_address(factory.address, salt, init_code)
        if self._has_code(address):
            LOGGER.info('already deployed name=%s address=%s; re-referencing', name, address)
            return address

        if not self._has_code(factory.address):
            raise ResourceNotFound(f'create2 factory for {name} has no code at {factory.address}')

        LOGGER.info('deploying name=%s predicted=%s factory=%s', name, address, factory.address)
        submit_and_confirm(self.ledger, factory.deployment_tx(init_code, salt), self.network, f'deploy {name}')

        if not self._has_code(address):
            raise DeploymentRejected(f'{name} deployment confirmed but no code at predicted address {address}')

        LOGGER.info('deployed name=%s address=%s', name, address)
        return address

    def create(self, name: str, init_code: bytes) -> str:
        """Plain contract creation signed by the authority; the address comes from the receipt.

        Not deterministic: only the address book marks it done, so a re-run
        after a lost confirmation creates a fresh instance.
        """
        LOGGER.info('creating name=%s from signing identity', name)
        receipt = submit_and_confirm(self.ledger, {'data': bytes(init_code)}, self.network, f'create {name}')

        if not receipt.contract_address or not self._has_code(receipt.contract_address):
            raise DeploymentRejected(
                f'{name} creation confirmed in tx {receipt.tx_hash} but no contract code was found'
            )

        address = Web3.to_checksum_address(receipt.contract_address)
        LOGGER.info('created name=%s address=%s', name, address)
        return address

    def reference(self, name: str, address: str) -> str:
        if not Web3.is_address(address):
            raise ResourceNotFound(f'{name} has no valid address to reference: {address!r}')

        checksummed = Web3.to_checksum_address(address)
        if not self._has_code(checksummed):
            raise ResourceNotFound(f'{name} expected at {checksummed} but no code is deployed there')

        LOGGER.info('referenced name=%s address=%s', name, checksummed)
        return checksummed
