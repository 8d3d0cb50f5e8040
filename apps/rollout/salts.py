from __future__ import annotations

from typing import Mapping

from eth_abi import encode
from web3 import Web3

from .errors import InvalidSeed

SALT_BYTES = 32


def _hex_bytes(value: str) -> bytes:
    raw = value[2:] if value.lower().startswith('0x') else value
    try:
        return bytes.fromhex(raw)
    except ValueError as exc:
        raise InvalidSeed(f'seed is not valid hex: {value!r}') from exc


def seed_bytes(seed: bytes | str | int) -> bytes:
    if isinstance(seed, bool):
        raise InvalidSeed('seed must not be a boolean')
    if isinstance(seed, int):
        if seed < 0 or seed >= 2 ** 256:
            raise InvalidSeed(f'integer seed out of range: {seed}')
        return seed.to_bytes(SALT_BYTES, byteorder='big')
    if isinstance(seed, (bytes, bytearray)):
        value = bytes(seed)
    elif isinstance(seed, str):
        value = _hex_bytes(seed.strip()) if seed.strip().lower().startswith('0x') else seed.strip().encode('utf-8')
    else:
        raise InvalidSeed(f'unsupported seed type: {type(seed).__name__}')

    if not value:
        raise InvalidSeed('seed must be non-empty')
    return value


def derive_salt(role: str, seed: bytes | str | int) -> bytes:
    role_name = str(getattr(role, 'value', role)).strip()
    if not role_name:
        raise InvalidSeed('role must be non-empty')
    # The role is part of the hashed material, so distinct roles never share a salt.
    return bytes(Web3.keccak(encode(['string', 'bytes'], [role_name, seed_bytes(seed)])))


def parse_salt(value: str | int) -> bytes:
    if isinstance(value, bool):
        raise InvalidSeed('salt must not be a boolean')
    if isinstance(value, int):
        return seed_bytes(value)

    raw = _hex_bytes(str(value).strip())
    if len(raw) != SALT_BYTES:
        raise InvalidSeed(f'pinned salt must be {SALT_BYTES} bytes, got {len(raw)}')
    return raw


def salt_for(role: str, seed: bytes | str | int, overrides: Mapping[str, str] | None = None) -> bytes:
    role_name = str(getattr(role, 'value', role))
    if overrides and role_name in overrides:
        return parse_salt(overrides[role_name])
    return derive_salt(role_name, seed)
