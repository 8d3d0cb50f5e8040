from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

from eth_abi import encode, is_encodable

from .errors import SchemaMismatch

BOOT_PROXY_IDX = 0
COLD_PROXY_IDX = 3


class Role(str, Enum):
    DEPLOYER = 'deployer'
    DEX = 'dex'
    COLD_PATH = 'cold'
    POLICY = 'policy'


@dataclass(frozen=True)
class RoleSpec:
    role: Role
    contract: str
    constructor_types: tuple[str, ...]
    proxy_slot: int | None = None
    # Constructor grants its authority to msg.sender, so the signing identity must create it.
    sender_bound: bool = False


ROLE_SPECS: dict[Role, RoleSpec] = {
    Role.DEPLOYER: RoleSpec(Role.DEPLOYER, 'ZenonDeployer', ('address',)),
    Role.DEX: RoleSpec(Role.DEX, 'ZenonSwapDex', ()),
    Role.COLD_PATH: RoleSpec(Role.COLD_PATH, 'ColdPath', (), proxy_slot=COLD_PROXY_IDX),
    Role.POLICY: RoleSpec(Role.POLICY, 'ZenonPolicy', ('address',), sender_bound=True)
}


def role_spec(role: Role | str) -> RoleSpec:
    try:
        return ROLE_SPECS[Role(role)]
    except ValueError as exc:
        raise SchemaMismatch(f'unknown role: {role!r}') from exc


def constructor_input(spec: RoleSpec, args: Sequence[Any]) -> bytes:
    if len(args) != len(spec.constructor_types):
        raise SchemaMismatch(
            f'{spec.contract} constructor takes {len(spec.constructor_types)} argument(s) '
            f'{list(spec.constructor_types)}, got {len(args)}'
        )
    for index, (abi_type, value) in enumerate(zip(spec.constructor_types, args)):
        if not is_encodable(abi_type, value):
            raise SchemaMismatch(f'{spec.contract} constructor argument {index} is not a valid {abi_type}: {value!r}')
    if not spec.constructor_types:
        return b''
    return encode(list(spec.constructor_types), list(args))


def init_code(bytecode: bytes, spec: RoleSpec, args: Sequence[Any]) -> bytes:
    return bytes(bytecode) + constructor_input(spec, args)
