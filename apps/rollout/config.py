from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _csv_env(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, '').strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(',') if part.strip())


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f'{name} must be an integer, got {raw!r}') from exc
    if value <= 0:
        raise ValueError(f'{name} must be positive, got {value}')
    return value


def repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def resolve_path(path_value: str) -> Path:
    path = Path(path_value)
    if path.is_absolute():
        return path
    return repo_root() / path


@dataclass(frozen=True)
class Settings:
    network: str
    rpc_url: str
    private_key: str
    address_book_dir: str
    artifacts_dir: str
    network_registry_path: str
    target_step: str
    redeploy_steps: tuple[str, ...]
    timelock_ops: str
    timelock_treasury: str
    timelock_emergency: str
    rpc_timeout_seconds: int
    log_level: str


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        network=os.getenv('ROLLOUT_NETWORK', 'hardhat-local').strip(),
        rpc_url=os.getenv('ROLLOUT_RPC_URL', '').strip(),
        private_key=os.getenv('ROLLOUT_PRIVATE_KEY', '').strip(),
        address_book_dir=os.getenv('ROLLOUT_ADDRESS_BOOK_DIR', 'deployments').strip(),
        artifacts_dir=os.getenv('ROLLOUT_ARTIFACTS_DIR', 'artifacts').strip(),
        network_registry_path=os.getenv('ROLLOUT_NETWORK_REGISTRY_PATH', '').strip(),
        target_step=os.getenv('ROLLOUT_TARGET_STEP', '').strip(),
        redeploy_steps=_csv_env('ROLLOUT_REDEPLOY'),
        timelock_ops=os.getenv('ROLLOUT_TIMELOCK_OPS', '').strip(),
        timelock_treasury=os.getenv('ROLLOUT_TIMELOCK_TREASURY', '').strip(),
        timelock_emergency=os.getenv('ROLLOUT_TIMELOCK_EMERGENCY', '').strip(),
        rpc_timeout_seconds=_int_env('ROLLOUT_RPC_TIMEOUT_SECONDS', 30),
        log_level=os.getenv('LOG_LEVEL', 'INFO').strip().upper()
    )
