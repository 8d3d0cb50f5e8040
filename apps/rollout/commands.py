from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Sequence

from eth_abi import decode, encode, is_encodable
from eth_abi.exceptions import DecodingError

from .errors import SchemaMismatch

WORD_BYTES = 32


class Opcode(IntEnum):
    AUTHORITY_TRANSFER = 20
    UPGRADE_PROXY = 21
    HOT_PATH_OPEN = 22
    SAFE_MODE = 23


# Argument layout following the leading uint8 opcode word.
COMMAND_LAYOUTS: dict[int, tuple[str, ...]] = {
    Opcode.AUTHORITY_TRANSFER: ('address',),
    Opcode.UPGRADE_PROXY: ('address', 'uint16'),
    Opcode.HOT_PATH_OPEN: ('bool',),
    Opcode.SAFE_MODE: ('bool',)
}


@dataclass(frozen=True)
class Command:
    opcode: int
    args: tuple[Any, ...]


def command_layout(opcode: int) -> tuple[str, ...]:
    if isinstance(opcode, bool) or not isinstance(opcode, int):
        raise SchemaMismatch(f'opcode must be an integer, got {opcode!r}')
    layout = COMMAND_LAYOUTS.get(opcode)
    if layout is None:
        raise SchemaMismatch(f'unknown command opcode: {opcode}')
    return layout


def validate_command(opcode: int, args: Sequence[Any]) -> tuple[str, ...]:
    layout = command_layout(opcode)
    if len(args) != len(layout):
        raise SchemaMismatch(f'opcode {opcode} takes {len(layout)} argument(s) {list(layout)}, got {len(args)}')
    for index, (abi_type, value) in enumerate(zip(layout, args)):
        if not is_encodable(abi_type, value):
            raise SchemaMismatch(f'opcode {opcode} argument {index} is not a valid {abi_type}: {value!r}')
    return layout


def encode_command(opcode: int, args: Sequence[Any]) -> bytes:
    layout = validate_command(opcode, args)
    return encode(['uint8', *layout], [int(opcode), *args])


def decode_command(payload: bytes) -> Command:
    payload = bytes(payload)
    if len(payload) < WORD_BYTES:
        raise SchemaMismatch(f'command payload too short: {len(payload)} bytes')

    try:
        (opcode,) = decode(['uint8'], payload[:WORD_BYTES])
    except DecodingError as exc:
        raise SchemaMismatch(f'command payload has an invalid opcode word: {exc}') from exc

    layout = command_layout(opcode)
    expected = WORD_BYTES * (1 + len(layout))
    if len(payload) != expected:
        raise SchemaMismatch(f'opcode {opcode} expects {expected} bytes, got {len(payload)}')

    try:
        values = decode(['uint8', *layout], payload)
    except DecodingError as exc:
        raise SchemaMismatch(f'opcode {opcode} arguments do not match {list(layout)}: {exc}') from exc
    return Command(opcode=opcode, args=tuple(values[1:]))
