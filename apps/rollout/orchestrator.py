from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Sequence

from .address_book import AddressBook, AddressBookStore
from .errors import InvalidPlan, RolloutError
from .steps import DeploymentStep, StepContext

LOGGER = logging.getLogger('zenon.rollout.orchestrator')


class StepState(str, Enum):
    PENDING = 'pending'
    SATISFIED = 'satisfied'
    COMPLETED = 'completed'
    FAILED = 'failed'


class RunStatus(str, Enum):
    COMPLETE = 'all_steps_satisfied'
    PROGRESS = 'progress_made_steps_remain'
    HALTED = 'halted_on_failure'


EXIT_CODES = {
    RunStatus.COMPLETE: 0,
    RunStatus.PROGRESS: 10,
    RunStatus.HALTED: 1
}


@dataclass(frozen=True)
class StepOutcome:
    ordinal: int
    name: str
    state: StepState
    error: dict[str, Any] | None = None


@dataclass(frozen=True)
class RunReport:
    chain_id: int
    status: RunStatus
    outcomes: tuple[StepOutcome, ...]
    book: AddressBook
    failed_step: str | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def executed(self) -> list[str]:
        return [outcome.name for outcome in self.outcomes if outcome.state in (StepState.COMPLETED, StepState.FAILED)]

    def as_dict(self) -> dict[str, Any]:
        return {
            'chain_id': self.chain_id,
            'status': self.status.value,
            'failed_step': self.failed_step,
            'steps': [
                {
                    'ordinal': outcome.ordinal,
                    'name': outcome.name,
                    'state': outcome.state.value,
                    'error': outcome.error
                }
                for outcome in self.outcomes
            ],
            'addresses': dict(sorted(self.book.addresses.items()))
        }


def validate_plan(steps: Sequence[DeploymentStep]) -> None:
    """Reject plans whose ordering or shapes could only fail at call time."""
    if not steps:
        raise InvalidPlan('rollout plan has no steps')

    seen_names: set[str] = set()
    writers: dict[str, str] = {}
    for ordinal, step in enumerate(steps, start=1):
        if not step.name or step.name in seen_names:
            raise InvalidPlan(f'step {ordinal} has a missing or duplicate name: {step.name!r}')
        seen_names.add(step.name)

        step.validate()

        if not step.writes:
            raise InvalidPlan(f'step {step.name} writes nothing, so its completion cannot be tracked')

        missing = sorted(key for key in step.reads if key not in writers)
        if missing:
            raise InvalidPlan(f'step {step.name} reads {missing} before any earlier step writes them')

        for key in sorted(step.writes):
            if key in writers:
                raise InvalidPlan(f'{key} is written by both {writers[key]} and {step.name}')
            writers[key] = step.name


class Orchestrator:
    def __init__(
        self,
        steps: Sequence[DeploymentStep],
        store: AddressBookStore,
        context: StepContext,
        redeploy: Iterable[str] = ()
    ) -> None:
        validate_plan(steps)
        self.steps = tuple(steps)
        self.store = store
        self.context = context
        self.redeploy = frozenset(redeploy)

        unknown = sorted(self.redeploy - {step.name for step in self.steps})
        if unknown:
            raise InvalidPlan(f'redeploy names unknown steps: {unknown}')

    @property
    def chain_id(self) -> int:
        return self.context.network.chain_id

    def run(self, target: str | None = None) -> RunReport:
        if target and target not in {step.name for step in self.steps}:
            raise InvalidPlan(f'unknown target step: {target}')

        book = self.store.load(self.chain_id)
        outcomes: list[StepOutcome] = []
        stopped = False

        for ordinal, step in enumerate(self.steps, start=1):
            satisfied = step.is_satisfied(book)
            if stopped:
                outcomes.append(StepOutcome(ordinal, step.name, StepState.SATISFIED if satisfied else StepState.PENDING))
                continue

            forced = step.name in self.redeploy
            if satisfied and not forced:
                LOGGER.info('step satisfied ordinal=%s step=%s', ordinal, step.name)
                outcomes.append(StepOutcome(ordinal, step.name, StepState.SATISFIED))
                continue

            LOGGER.info('step executing ordinal=%s step=%s chain_id=%s forced=%s', ordinal, step.name, self.chain_id, forced)
            try:
                book = self._execute(step, book, forced)
            except KeyboardInterrupt:
                LOGGER.warning('step cancelled step=%s; address book left at last persisted state', step.name)
                raise
            except RolloutError as exc:
                return self._halt(outcomes, ordinal, step, book, exc.as_dict())
            except Exception as exc:
                LOGGER.exception('step raised unexpectedly step=%s', step.name)
                error = {'code': 'unexpected_error', 'detail': f'{type(exc).__name__}: {exc}', 'retryable': False}
                return self._halt(outcomes, ordinal, step, book, error)

            LOGGER.info('step completed ordinal=%s step=%s', ordinal, step.name)
            outcomes.append(StepOutcome(ordinal, step.name, StepState.COMPLETED))
            if step.name == target:
                stopped = True

        status = RunStatus.COMPLETE
        if any(outcome.state == StepState.PENDING for outcome in outcomes):
            status = RunStatus.PROGRESS
        return RunReport(chain_id=self.chain_id, status=status, outcomes=tuple(outcomes), book=book)

    def _execute(self, step: DeploymentStep, book: AddressBook, forced: bool) -> AddressBook:
        fragment = step.execute(book, self.context)

        unexpected = sorted(set(fragment) - step.writes)
        if unexpected:
            raise InvalidPlan(f'step {step.name} returned undeclared keys {unexpected}')

        updated = book.merge(fragment, step=step.name, overwrite=forced)
        self.store.persist(updated)
        return updated

    def _halt(
        self,
        outcomes: list[StepOutcome],
        ordinal: int,
        failed: DeploymentStep,
        book: AddressBook,
        error: dict[str, Any]
    ) -> RunReport:
        outcomes.append(StepOutcome(ordinal, failed.name, StepState.FAILED, error))
        for later_ordinal, step in enumerate(self.steps[ordinal:], start=ordinal + 1):
            state = StepState.SATISFIED if step.is_satisfied(book) else StepState.PENDING
            outcomes.append(StepOutcome(later_ordinal, step.name, state))

        LOGGER.error(
            'rollout halted step=%s code=%s retryable=%s detail=%s persisted=%s',
            failed.name,
            error['code'],
            error['retryable'],
            error['detail'],
            dict(book.addresses)
        )
        return RunReport(
            chain_id=self.chain_id,
            status=RunStatus.HALTED,
            outcomes=tuple(outcomes),
            book=book,
            failed_step=failed.name
        )
