from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from web3 import Web3

from .config import resolve_path
from .errors import UnknownNetwork

# Arachnid deterministic deployment proxy: calldata is salt ++ init code.
DEFAULT_CREATE2_FACTORY = '0x4e59b44847b379578588920cA78FbF26c0B4956C'


@dataclass(frozen=True)
class NetworkConfig:
    chain_key: str
    chain_id: int
    name: str
    rpc_env_key: str
    default_rpc_url: str
    confirmations: int
    confirmation_timeout_seconds: int
    poll_interval_seconds: float
    development: bool
    poa: bool
    create2_factory: str
    salt_overrides: dict[str, str] = field(default_factory=dict)


NETWORK_SPECS: list[dict[str, Any]] = [
    {
        'chain_key': 'hardhat-local',
        'chain_id': 31337,
        'name': 'Hardhat Local',
        'rpc_env_key': 'HARDHAT_RPC_URL',
        'default_rpc_url': 'http://127.0.0.1:8545',
        'confirmations': 0,
        'confirmation_timeout_seconds': 60,
        'poll_interval_seconds': 0.5,
        'development': True
    },
    {
        'chain_key': 'ethereum-sepolia',
        'chain_id': 11155111,
        'name': 'Ethereum Sepolia',
        'rpc_env_key': 'SEPOLIA_RPC_URL',
        'default_rpc_url': 'https://ethereum-sepolia-rpc.publicnode.com',
        'confirmations': 2
    },
    {
        'chain_key': 'ethereum-goerli',
        'chain_id': 5,
        'name': 'Ethereum Goerli',
        'rpc_env_key': 'GOERLI_RPC_URL',
        'default_rpc_url': '',
        'confirmations': 1
    },
    {
        'chain_key': 'bnb-testnet',
        'chain_id': 97,
        'name': 'BNB Chain Testnet',
        'rpc_env_key': 'BSC_TESTNET_RPC_URL',
        'default_rpc_url': 'https://data-seed-prebsc-1-s1.binance.org:8545',
        'confirmations': 3,
        'poa': True
    },
    {
        'chain_key': 'bnb-mainnet',
        'chain_id': 56,
        'name': 'BNB Chain',
        'rpc_env_key': 'BSC_RPC_URL',
        'default_rpc_url': 'https://bsc-dataseed.bnbchain.org/',
        'confirmations': 3,
        'confirmation_timeout_seconds': 600,
        'poa': True
    },
    {
        'chain_key': 'avalanche-fuji',
        'chain_id': 43113,
        'name': 'Avalanche Fuji',
        'rpc_env_key': 'FUJI_RPC_URL',
        'default_rpc_url': 'https://api.avax-test.network/ext/bc/C/rpc',
        'confirmations': 1
    }
]


def _network_from_entry(entry: Any, base: NetworkConfig | None = None) -> NetworkConfig:
    if not isinstance(entry, dict):
        raise UnknownNetwork(f'network entry must be an object, got {type(entry).__name__}')

    chain_key = str(entry.get('chain_key', base.chain_key if base else '')).strip()
    if not chain_key:
        raise UnknownNetwork('network entry is missing chain_key')

    try:
        chain_id = int(entry.get('chain_id', base.chain_id if base else 0))
        confirmations = int(entry.get('confirmations', base.confirmations if base else 1))
        timeout = int(
            entry.get('confirmation_timeout_seconds', base.confirmation_timeout_seconds if base else 300)
        )
        poll_interval = float(entry.get('poll_interval_seconds', base.poll_interval_seconds if base else 2.0))
    except (TypeError, ValueError) as exc:
        raise UnknownNetwork(f'network {chain_key} has a non-numeric field: {exc}') from exc

    if chain_id <= 0:
        raise UnknownNetwork(f'network {chain_key} must have chain_id > 0')
    if confirmations < 0 or timeout <= 0 or poll_interval <= 0:
        raise UnknownNetwork(f'network {chain_key} has an invalid confirmation policy')

    development = bool(entry.get('development', base.development if base else False))
    if not development and confirmations < 1:
        raise UnknownNetwork(f'network {chain_key} is not a development chain and needs confirmations >= 1')

    factory = str(entry.get('create2_factory', base.create2_factory if base else DEFAULT_CREATE2_FACTORY)).strip()
    if not Web3.is_address(factory):
        raise UnknownNetwork(f'network {chain_key} has an invalid create2_factory: {factory}')

    overrides = entry.get('salt_overrides', base.salt_overrides if base else {})
    if not isinstance(overrides, dict):
        raise UnknownNetwork(f'network {chain_key} salt_overrides must be an object')

    return NetworkConfig(
        chain_key=chain_key,
        chain_id=chain_id,
        name=str(entry.get('name', base.name if base else chain_key)),
        rpc_env_key=str(entry.get('rpc_env_key', base.rpc_env_key if base else '')).strip(),
        default_rpc_url=str(entry.get('default_rpc_url', base.default_rpc_url if base else '')).strip(),
        confirmations=confirmations,
        confirmation_timeout_seconds=timeout,
        poll_interval_seconds=poll_interval,
        development=development,
        poa=bool(entry.get('poa', base.poa if base else False)),
        create2_factory=Web3.to_checksum_address(factory),
        salt_overrides={str(role): str(salt) for role, salt in overrides.items()}
    )


def _read_registry_file(path_value: str) -> list[Any]:
    path = resolve_path(path_value)
    if not path.exists():
        raise UnknownNetwork(f'network registry not found at {path}')

    try:
        payload = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, json.JSONDecodeError) as exc:
        raise UnknownNetwork(f'network registry at {path} is unreadable: {exc}') from exc

    networks = payload.get('networks') if isinstance(payload, dict) else None
    if not isinstance(networks, list):
        raise UnknownNetwork(f'network registry at {path} must contain a "networks" list')
    return networks


def load_networks(registry_path: str = '') -> dict[str, NetworkConfig]:
    networks = {spec['chain_key']: _network_from_entry(spec) for spec in NETWORK_SPECS}
    if not registry_path:
        return networks

    for entry in _read_registry_file(registry_path):
        key = str(entry.get('chain_key', '')).strip() if isinstance(entry, dict) else ''
        base = networks.get(key)
        networks[key] = _network_from_entry(entry, base=base)
    return networks


def resolve_network(key_or_id: str | int, registry_path: str = '') -> NetworkConfig:
    networks = load_networks(registry_path)
    wanted = str(key_or_id).strip()

    if wanted in networks:
        return networks[wanted]

    if wanted.isdigit():
        for network in networks.values():
            if network.chain_id == int(wanted):
                return network

    known = ', '.join(sorted(networks))
    raise UnknownNetwork(f'unknown network {wanted!r}; known networks: {known}')

