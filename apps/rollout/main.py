from __future__ import annotations

import json
import logging
import os
import sys

from eth_account import Account

from .address_book import AddressBookStore
from .artifacts import ArtifactProvider, HardhatArtifactProvider
from .binder import RemoteResourceBinder
from .config import Settings, get_settings, resolve_path
from .errors import RolloutError, StorageCorrupt
from .ledger import LedgerClient, connect
from .networks import NetworkConfig, resolve_network
from .orchestrator import Orchestrator
from .steps import StepContext, default_plan

LOGGER = logging.getLogger('zenon.rollout.main')

EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def _emit(payload: dict) -> None:
    print(json.dumps(payload, indent=2), flush=True)


def rpc_url_for(settings: Settings, network: NetworkConfig) -> str:
    rpc_from_chain_env = os.getenv(network.rpc_env_key, '').strip() if network.rpc_env_key else ''
    return settings.rpc_url or rpc_from_chain_env or network.default_rpc_url


def build_orchestrator(
    settings: Settings,
    network: NetworkConfig,
    ledger: LedgerClient,
    authority: str,
    artifacts: ArtifactProvider | None = None
) -> Orchestrator:
    context = StepContext(
        network=network,
        ledger=ledger,
        authority=authority,
        artifacts=artifacts or HardhatArtifactProvider(resolve_path(settings.artifacts_dir)),
        binder=RemoteResourceBinder(ledger, network),
        external={
            'timelock_ops': settings.timelock_ops,
            'timelock_treasury': settings.timelock_treasury,
            'timelock_emergency': settings.timelock_emergency
        }
    )
    return Orchestrator(
        default_plan(),
        AddressBookStore(resolve_path(settings.address_book_dir)),
        context,
        redeploy=settings.redeploy_steps
    )


def main() -> int:
    try:
        settings = get_settings()
    except ValueError as exc:
        _emit({'status': 'config_error', 'code': 'invalid_setting', 'detail': str(exc)})
        return EXIT_CONFIG_ERROR

    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )

    try:
        network = resolve_network(settings.network, settings.network_registry_path)
        if not settings.private_key:
            _emit({'status': 'config_error', 'code': 'missing_private_key', 'detail': 'ROLLOUT_PRIVATE_KEY is not set'})
            return EXIT_CONFIG_ERROR
        account = Account.from_key(settings.private_key)

        rpc_url = rpc_url_for(settings, network)
        if not rpc_url:
            _emit({'status': 'config_error', 'code': 'missing_rpc_url', 'detail': f'no rpc url for {network.chain_key}'})
            return EXIT_CONFIG_ERROR

        ledger = connect(rpc_url, network, account, timeout_seconds=settings.rpc_timeout_seconds)
        orchestrator = build_orchestrator(settings, network, ledger, account.address)
    except RolloutError as exc:
        _emit({'status': 'config_error', **exc.as_dict()})
        return EXIT_CONFIG_ERROR
    except ValueError as exc:
        _emit({'status': 'config_error', 'code': 'invalid_private_key', 'detail': str(exc)})
        return EXIT_CONFIG_ERROR

    LOGGER.info(
        'rollout starting chain_key=%s chain_id=%s target=%s redeploy=%s',
        network.chain_key,
        network.chain_id,
        settings.target_step or '-',
        ','.join(settings.redeploy_steps) or '-'
    )

    try:
        report = orchestrator.run(target=settings.target_step or None)
    except KeyboardInterrupt:
        _emit({'status': 'interrupted', 'chain_id': network.chain_id})
        return EXIT_INTERRUPTED
    except StorageCorrupt as exc:
        _emit({'status': 'halted_on_failure', 'failed_step': None, 'chain_id': network.chain_id, **exc.as_dict()})
        return 1
    except RolloutError as exc:
        _emit({'status': 'config_error', **exc.as_dict()})
        return EXIT_CONFIG_ERROR

    _emit(report.as_dict())
    return report.exit_code


if __name__ == '__main__':
    sys.exit(main())
