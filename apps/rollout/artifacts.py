from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, Sequence

from eth_abi.exceptions import EncodingError
from web3 import Web3
from web3.exceptions import Web3Exception

from .errors import ArtifactMissing, SchemaMismatch


@dataclass(frozen=True)
class Artifact:
    name: str
    bytecode: bytes
    abi: list[dict[str, Any]]


class ArtifactProvider(Protocol):
    def get_artifact(self, name: str) -> Artifact:
        ...


class HardhatArtifactProvider:
    """Reads compiled contracts from a hardhat `artifacts/` tree."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._cache: dict[str, Artifact] = {}

    def _locate(self, name: str) -> Path:
        direct = self.root / 'contracts' / f'{name}.sol' / f'{name}.json'
        if direct.exists():
            return direct

        matches = sorted(path for path in self.root.rglob(f'{name}.json') if not path.name.endswith('.dbg.json'))
        if not matches:
            raise ArtifactMissing(f'no artifact for {name} under {self.root}')
        return matches[0]

    def get_artifact(self, name: str) -> Artifact:
        if name in self._cache:
            return self._cache[name]

        path = self._locate(name)
        try:
            payload = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as exc:
            raise ArtifactMissing(f'artifact for {name} at {path} is unreadable: {exc}') from exc

        raw_bytecode = str(payload.get('bytecode', '')).strip() if isinstance(payload, dict) else ''
        if raw_bytecode.startswith('0x'):
            raw_bytecode = raw_bytecode[2:]
        try:
            bytecode = bytes.fromhex(raw_bytecode)
        except ValueError as exc:
            raise ArtifactMissing(f'artifact for {name} has non-hex bytecode') from exc
        if not bytecode:
            raise ArtifactMissing(f'artifact for {name} has no creation bytecode (abstract or interface?)')

        abi = payload.get('abi', [])
        artifact = Artifact(name=name, bytecode=bytecode, abi=abi if isinstance(abi, list) else [])
        self._cache[name] = artifact
        return artifact


def encode_call(artifact: Artifact, fn_name: str, args: Sequence[Any]) -> bytes:
    """Calldata for `fn_name` resolved against the artifact's ABI."""
    contract = Web3().eth.contract(abi=artifact.abi)
    try:
        data = contract.encode_abi(fn_name, args=list(args))
    except (Web3Exception, EncodingError, TypeError, ValueError) as exc:
        raise SchemaMismatch(f'{artifact.name}.{fn_name} cannot encode {list(args)!r}: {exc}') from exc
    return Web3.to_bytes(hexstr=data)
