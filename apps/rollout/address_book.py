from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from web3 import Web3

from .errors import AddressConflict, StorageCorrupt

LOGGER = logging.getLogger('zenon.rollout.address_book')

BOOK_VERSION = 1


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class HistoryEntry:
    name: str
    address: str
    step: str
    recorded_at: str

    def as_dict(self) -> dict[str, str]:
        return {
            'name': self.name,
            'address': self.address,
            'step': self.step,
            'recorded_at': self.recorded_at
        }


@dataclass(frozen=True)
class AddressBook:
    """Logical name -> checksummed address for one chain.

    Values are never mutated in place; `set` and `merge` return a new book so
    each step receives and hands back an explicit value.
    """

    chain_id: int
    addresses: Mapping[str, str] = field(default_factory=dict)
    history: tuple[HistoryEntry, ...] = ()

    def get(self, name: str) -> str | None:
        return self.addresses.get(name)

    def has(self, name: str) -> bool:
        return bool(self.addresses.get(name))

    def set(self, name: str, address: str, *, step: str = '', overwrite: bool = False) -> AddressBook:
        if not name:
            raise ValueError('address book name must be non-empty')
        if not Web3.is_address(address):
            raise ValueError(f'invalid address for {name}: {address!r}')

        checksummed = Web3.to_checksum_address(address)
        current = self.addresses.get(name)
        if current == checksummed:
            return self
        if current and not overwrite:
            raise AddressConflict(
                f'{name} is already recorded at {current} on chain {self.chain_id}; '
                f'refusing to replace it with {checksummed} without an explicit redeploy'
            )

        addresses = dict(self.addresses)
        addresses[name] = checksummed
        entry = HistoryEntry(name=name, address=checksummed, step=step, recorded_at=_now_iso())
        return AddressBook(chain_id=self.chain_id, addresses=addresses, history=self.history + (entry,))

    def merge(self, fragment: Mapping[str, str], *, step: str = '', overwrite: bool = False) -> AddressBook:
        book = self
        for name in sorted(fragment):
            book = book.set(name, fragment[name], step=step, overwrite=overwrite)
        return book

    def as_dict(self) -> dict[str, Any]:
        return {
            'version': BOOK_VERSION,
            'chain_id': self.chain_id,
            'addresses': dict(sorted(self.addresses.items())),
            'history': [entry.as_dict() for entry in self.history]
        }


def _parse_history(chain_id: int, raw: Any) -> tuple[HistoryEntry, ...]:
    if not isinstance(raw, list):
        raise StorageCorrupt(f'address book for chain {chain_id} has a non-list history')

    entries: list[HistoryEntry] = []
    for item in raw:
        if not isinstance(item, dict):
            raise StorageCorrupt(f'address book for chain {chain_id} has a malformed history entry')
        entries.append(
            HistoryEntry(
                name=str(item.get('name', '')),
                address=str(item.get('address', '')),
                step=str(item.get('step', '')),
                recorded_at=str(item.get('recorded_at', ''))
            )
        )
    return tuple(entries)


def book_from_payload(chain_id: int, payload: Any) -> AddressBook:
    if not isinstance(payload, dict):
        raise StorageCorrupt(f'address book for chain {chain_id} is not a JSON object')

    try:
        stored_chain_id = int(payload.get('chain_id', -1))
    except (TypeError, ValueError) as exc:
        raise StorageCorrupt(f'address book for chain {chain_id} has a non-numeric chain_id') from exc
    if stored_chain_id != chain_id:
        raise StorageCorrupt(f'address book for chain {chain_id} is recorded for chain {stored_chain_id}')

    raw_addresses = payload.get('addresses')
    if not isinstance(raw_addresses, dict):
        raise StorageCorrupt(f'address book for chain {chain_id} has no addresses object')

    addresses: dict[str, str] = {}
    for name, value in raw_addresses.items():
        if value in (None, ''):
            continue
        if not isinstance(value, str) or not Web3.is_address(value):
            raise StorageCorrupt(f'address book for chain {chain_id} has an invalid address for {name}: {value!r}')
        addresses[str(name)] = Web3.to_checksum_address(value)

    history = _parse_history(chain_id, payload.get('history', []))
    return AddressBook(chain_id=chain_id, addresses=addresses, history=history)


class AddressBookStore:
    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, chain_id: int) -> Path:
        return self.directory / f'address-book.{chain_id}.json'

    def load(self, chain_id: int) -> AddressBook:
        path = self.path_for(chain_id)
        if not path.exists():
            LOGGER.info('no address book at %s; starting empty chain_id=%s', path, chain_id)
            return AddressBook(chain_id=chain_id)

        try:
            payload = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StorageCorrupt(f'address book at {path} is unreadable: {exc}') from exc

        book = book_from_payload(chain_id, payload)
        LOGGER.info('loaded address book path=%s entries=%s', path, len(book.addresses))
        return book

    def persist(self, book: AddressBook) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(book.chain_id)

        payload = book.as_dict()
        payload['updated_at'] = _now_iso()
        body = json.dumps(payload, indent=2) + '\n'

        # Write beside the target so the final rename stays on one filesystem.
        handle = tempfile.NamedTemporaryFile(
            'w',
            encoding='utf-8',
            dir=self.directory,
            prefix=f'.{path.name}.',
            suffix='.tmp',
            delete=False
        )
        try:
            with handle:
                handle.write(body)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(handle.name, path)
        except BaseException:
            Path(handle.name).unlink(missing_ok=True)
            raise

        LOGGER.info('persisted address book path=%s entries=%s', path, len(book.addresses))
        return path
