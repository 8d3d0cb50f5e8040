from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from eth_abi import is_encodable

from .address_book import AddressBook
from .artifacts import ArtifactProvider, encode_call
from .binder import Create2Factory, DeployerContract, RemoteResourceBinder, SingletonFactory, create2_address
from .commands import Opcode, command_layout, encode_command
from .errors import ResourceNotFound, SchemaMismatch
from .ledger import LedgerClient, submit_and_confirm
from .networks import NetworkConfig
from .roles import BOOT_PROXY_IDX, Role, init_code, role_spec
from .salts import salt_for

# Constructor/seed source resolved to the signing identity instead of a book entry.
AUTHORITY = '$authority'


@dataclass(frozen=True)
class StepContext:
    network: NetworkConfig
    ledger: LedgerClient
    authority: str
    artifacts: ArtifactProvider
    binder: RemoteResourceBinder
    external: Mapping[str, str] = field(default_factory=dict)


def _require(book: AddressBook, key: str) -> str:
    address = book.get(key)
    if not address:
        raise ResourceNotFound(f'{key} is not recorded in the address book for chain {book.chain_id}')
    return address


def _resolve(book: AddressBook, source: str, authority: str) -> str:
    if source == AUTHORITY:
        return authority
    return _require(book, source)


class DeploymentStep:
    name: str

    @property
    def reads(self) -> frozenset[str]:
        raise NotImplementedError

    @property
    def writes(self) -> frozenset[str]:
        raise NotImplementedError

    def validate(self) -> None:
        return None

    def is_satisfied(self, book: AddressBook) -> bool:
        return all(book.has(key) for key in self.writes)

    def execute(self, book: AddressBook, ctx: StepContext) -> dict[str, str]:
        raise NotImplementedError


@dataclass(frozen=True)
class MaterializeStep(DeploymentStep):
    name: str
    role: Role
    constructor_args: tuple[str, ...] = ()
    factory_key: str | None = None
    seed_key: str = AUTHORITY

    @property
    def reads(self) -> frozenset[str]:
        sources = {*self.constructor_args, self.seed_key}
        if self.factory_key:
            sources.add(self.factory_key)
        return frozenset(source for source in sources if source != AUTHORITY)

    @property
    def writes(self) -> frozenset[str]:
        return frozenset({self.role.value})

    def validate(self) -> None:
        spec = role_spec(self.role)
        if len(self.constructor_args) != len(spec.constructor_types):
            raise SchemaMismatch(
                f'step {self.name}: {spec.contract} constructor takes {list(spec.constructor_types)}, '
                f'plan supplies {len(self.constructor_args)} source(s)'
            )
        if spec.sender_bound and self.factory_key:
            raise SchemaMismatch(
                f'step {self.name}: {spec.contract} must be created by the signing identity, not through a factory'
            )

    def creation_code(self, book: AddressBook, authority: str, artifacts: ArtifactProvider) -> bytes:
        spec = role_spec(self.role)
        args = [_resolve(book, source, authority) for source in self.constructor_args]
        return init_code(artifacts.get_artifact(spec.contract).bytecode, spec, args)

    def deployment(
        self,
        book: AddressBook,
        network: NetworkConfig,
        authority: str,
        artifacts: ArtifactProvider
    ) -> tuple[bytes, bytes, Create2Factory]:
        salt = salt_for(self.role, _resolve(book, self.seed_key, authority), network.salt_overrides)
        code = self.creation_code(book, authority, artifacts)

        factory: Create2Factory = SingletonFactory(network.create2_factory)
        if self.factory_key:
            deployer = artifacts.get_artifact(role_spec(self.factory_key).contract)
            factory = DeployerContract(_require(book, self.factory_key), deployer)
        return code, salt, factory

    def execute(self, book: AddressBook, ctx: StepContext) -> dict[str, str]:
        if role_spec(self.role).sender_bound:
            code = self.creation_code(book, ctx.authority, ctx.artifacts)
            return {self.role.value: ctx.binder.create(self.role.value, code)}

        code, salt, factory = self.deployment(book, ctx.network, ctx.authority, ctx.artifacts)
        return {self.role.value: ctx.binder.materialize(self.role.value, code, salt, factory)}


@dataclass(frozen=True)
class CommandStep(DeploymentStep):
    """Dispatches one opcode command to the dex through the deployer's `protocolCmd`.

    Arguments are book keys (resolved to addresses) or literal values. The
    step records `marker` = address of `marker_source` once confirmed.
    """

    name: str
    opcode: int
    args: tuple[Any, ...]
    proxy_slot: int
    marker: str
    marker_source: str
    dispatcher_key: str = Role.DEPLOYER.value
    target_key: str = Role.DEX.value
    after: tuple[str, ...] = ()

    @property
    def reads(self) -> frozenset[str]:
        keys = {self.dispatcher_key, self.target_key, self.marker_source, *self.after}
        keys.update(arg for arg in self.args if isinstance(arg, str))
        return frozenset(keys)

    @property
    def writes(self) -> frozenset[str]:
        return frozenset({self.marker})

    def validate(self) -> None:
        layout = command_layout(self.opcode)
        if len(self.args) != len(layout):
            raise SchemaMismatch(f'step {self.name}: opcode {self.opcode} takes {list(layout)}, got {len(self.args)}')
        for abi_type, arg in zip(layout, self.args):
            if isinstance(arg, str):
                if abi_type != 'address':
                    raise SchemaMismatch(f'step {self.name}: book key {arg!r} cannot fill a {abi_type} slot')
            elif not is_encodable(abi_type, arg):
                raise SchemaMismatch(f'step {self.name}: literal {arg!r} is not a valid {abi_type}')
        if not is_encodable('uint16', self.proxy_slot):
            raise SchemaMismatch(f'step {self.name}: proxy slot {self.proxy_slot!r} is not a uint16')
        # Dispatcher ABI comes from its role artifact.
        role_spec(self.dispatcher_key)

    def execute(self, book: AddressBook, ctx: StepContext) -> dict[str, str]:
        args = [_require(book, arg) if isinstance(arg, str) else arg for arg in self.args]
        command = encode_command(self.opcode, args)
        dispatcher = _require(book, self.dispatcher_key)
        target = _require(book, self.target_key)

        dispatcher_abi = ctx.artifacts.get_artifact(role_spec(self.dispatcher_key).contract)
        data = encode_call(dispatcher_abi, 'protocolCmd', [target, self.proxy_slot, command, True])
        tx = {'to': dispatcher, 'data': data}
        submit_and_confirm(ctx.ledger, tx, ctx.network, f'{self.name} opcode={self.opcode}')
        return {self.marker: _require(book, self.marker_source)}


@dataclass(frozen=True)
class ReferenceStep(DeploymentStep):
    """Records operator-supplied addresses after confirming code lives there."""

    name: str
    bindings: tuple[tuple[str, str], ...]

    @property
    def reads(self) -> frozenset[str]:
        return frozenset()

    @property
    def writes(self) -> frozenset[str]:
        return frozenset(key for key, _ in self.bindings)

    def execute(self, book: AddressBook, ctx: StepContext) -> dict[str, str]:
        fragment: dict[str, str] = {}
        for key, external_name in self.bindings:
            fragment[key] = ctx.binder.reference(key, ctx.external.get(external_name, ''))
        return fragment


@dataclass(frozen=True)
class GovernanceStep(DeploymentStep):
    name: str
    policy_key: str
    ops_key: str
    treasury_key: str
    emergency_key: str
    marker: str

    @property
    def reads(self) -> frozenset[str]:
        return frozenset({self.policy_key, self.ops_key, self.treasury_key, self.emergency_key})

    @property
    def writes(self) -> frozenset[str]:
        return frozenset({self.marker})

    def execute(self, book: AddressBook, ctx: StepContext) -> dict[str, str]:
        ops = _require(book, self.ops_key)
        policy = ctx.artifacts.get_artifact(role_spec(Role.POLICY).contract)
        data = encode_call(
            policy,
            'transferGovernance',
            [ops, _require(book, self.treasury_key), _require(book, self.emergency_key)]
        )
        submit_and_confirm(ctx.ledger, {'to': _require(book, self.policy_key), 'data': data}, ctx.network, self.name)
        return {self.marker: ops}


def default_plan() -> tuple[DeploymentStep, ...]:
    return (
        MaterializeStep('deploy_deployer', Role.DEPLOYER, constructor_args=(AUTHORITY,)),
        MaterializeStep('deploy_dex', Role.DEX, factory_key=Role.DEPLOYER.value, seed_key=Role.DEPLOYER.value),
        MaterializeStep('deploy_cold_path', Role.COLD_PATH),
        MaterializeStep('deploy_policy', Role.POLICY, constructor_args=(Role.DEX.value,)),
        CommandStep(
            'install_cold_path',
            opcode=Opcode.UPGRADE_PROXY,
            args=(Role.COLD_PATH.value, role_spec(Role.COLD_PATH).proxy_slot),
            proxy_slot=BOOT_PROXY_IDX,
            marker='dex.proxy.cold',
            marker_source=Role.COLD_PATH.value
        ),
        CommandStep(
            'transfer_authority',
            opcode=Opcode.AUTHORITY_TRANSFER,
            args=(Role.POLICY.value,),
            proxy_slot=role_spec(Role.COLD_PATH).proxy_slot,
            marker='dex.authority',
            marker_source=Role.POLICY.value,
            after=('dex.proxy.cold',)
        ),
        ReferenceStep(
            'reference_timelocks',
            bindings=(
                ('timelock_ops', 'timelock_ops'),
                ('timelock_treasury', 'timelock_treasury'),
                ('timelock_emergency', 'timelock_emergency')
            )
        ),
        GovernanceStep(
            'transfer_governance',
            policy_key=Role.POLICY.value,
            ops_key='timelock_ops',
            treasury_key='timelock_treasury',
            emergency_key='timelock_emergency',
            marker='policy.governance'
        )
    )


def predict_addresses(
    steps: Sequence[DeploymentStep],
    network: NetworkConfig,
    authority: str,
    artifacts: ArtifactProvider,
    book: AddressBook | None = None
) -> dict[str, str]:
    """Deterministic addresses of every materialized role, without touching the ledger."""
    book = book or AddressBook(chain_id=network.chain_id)
    predicted: dict[str, str] = {}
    for step in steps:
        # Sender-bound roles are plain creations whose address depends on the authority nonce.
        if not isinstance(step, MaterializeStep) or role_spec(step.role).sender_bound:
            continue
        code, salt, factory = step.deployment(book, network, authority, artifacts)
        address = create2_address(factory.address, salt, code)
        predicted[step.role.value] = address
        if not book.has(step.role.value):
            book = book.set(step.role.value, address, step=step.name)
    return predicted
