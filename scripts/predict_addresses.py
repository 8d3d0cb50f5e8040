#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone

from web3 import Web3

from apps.rollout.address_book import AddressBookStore
from apps.rollout.artifacts import HardhatArtifactProvider
from apps.rollout.config import get_settings, resolve_path
from apps.rollout.networks import resolve_network
from apps.rollout.roles import ROLE_SPECS
from apps.rollout.steps import default_plan, predict_addresses


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description='Predict CREATE2 addresses of every rollout role without RPC access')
    parser.add_argument('--network', default=settings.network, help='Network key or chain id')
    parser.add_argument('--authority', required=True, help='Authority wallet address that signs the rollout')
    parser.add_argument('--artifacts', default=settings.artifacts_dir, help='Hardhat artifacts directory')
    parser.add_argument(
        '--use-address-book',
        action='store_true',
        help='Prefer addresses already recorded in the address book over predictions'
    )
    args = parser.parse_args()

    if not Web3.is_address(args.authority):
        parser.error(f'invalid authority address: {args.authority}')

    network = resolve_network(args.network, settings.network_registry_path)
    book = None
    if args.use_address_book:
        book = AddressBookStore(resolve_path(settings.address_book_dir)).load(network.chain_id)

    predicted = predict_addresses(
        default_plan(),
        network,
        Web3.to_checksum_address(args.authority),
        HardhatArtifactProvider(resolve_path(args.artifacts)),
        book=book
    )

    print(
        json.dumps(
            {
                'chain_key': network.chain_key,
                'chain_id': network.chain_id,
                'create2_factory': network.create2_factory,
                'authority': Web3.to_checksum_address(args.authority),
                'addresses': predicted,
                # Plain creations from the authority; their address depends on its nonce.
                'created_by_authority': [spec.role.value for spec in ROLE_SPECS.values() if spec.sender_bound],
                'predicted_at': datetime.now(timezone.utc).isoformat()
            },
            indent=2
        )
    )


if __name__ == '__main__':
    main()
