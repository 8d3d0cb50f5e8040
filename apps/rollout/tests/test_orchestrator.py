import tempfile
import unittest
from pathlib import Path

from apps.rollout.address_book import AddressBookStore
from apps.rollout.commands import Command
from apps.rollout.errors import InvalidPlan, SchemaMismatch, StorageCorrupt
from apps.rollout.orchestrator import Orchestrator, RunStatus, StepState, validate_plan
from apps.rollout.roles import Role
from apps.rollout.steps import AUTHORITY as AUTHORITY_SOURCE
from apps.rollout.steps import CommandStep, MaterializeStep, default_plan, predict_addresses
from apps.rollout.tests.fakes import (
    AUTHORITY,
    TIMELOCKS,
    FakeLedger,
    StaticArtifacts,
    hardhat_network,
    install_timelocks,
    make_context,
    timeout
)

CHAIN_ID = 31337


class OrchestratorRunTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = AddressBookStore(Path(self._tmp.name))
        self.ledger = FakeLedger()
        install_timelocks(self.ledger)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _orchestrator(self, ledger: FakeLedger | None = None, **kwargs) -> Orchestrator:
        artifacts = kwargs.pop('artifacts', None)
        context = make_context(ledger or self.ledger, artifacts=artifacts)
        return Orchestrator(default_plan(), self.store, context, **kwargs)

    def test_fresh_run_completes_every_step(self) -> None:
        report = self._orchestrator().run()

        self.assertEqual(report.status, RunStatus.COMPLETE)
        self.assertEqual(report.exit_code, 0)
        self.assertEqual([outcome.state for outcome in report.outcomes], [StepState.COMPLETED] * 8)
        self.assertEqual(len(self.ledger.submitted), 7)

        book = self.store.load(CHAIN_ID)
        for key in ('deployer', 'dex', 'cold', 'policy', 'dex.proxy.cold', 'dex.authority', 'policy.governance'):
            self.assertTrue(book.has(key), key)
        self.assertEqual(book.get('dex.authority'), book.get('policy'))
        self.assertEqual(book.get('timelock_ops'), TIMELOCKS['timelock_ops'])

    def test_commands_reach_the_dex_in_order(self) -> None:
        report = self._orchestrator().run()
        book = report.book

        install, authority = self.ledger.dispatched
        self.assertEqual(install.dispatcher, book.get('deployer'))
        self.assertEqual(install.dex, book.get('dex'))
        self.assertEqual(install.proxy_slot, 0)
        self.assertEqual(install.command, Command(21, (book.get('cold'), 3)))
        self.assertTrue(install.sudo)

        self.assertEqual(authority.proxy_slot, 3)
        self.assertEqual(authority.command, Command(20, (book.get('policy'),)))

        self.assertEqual(
            self.ledger.governance,
            [(book.get('policy'), *TIMELOCKS.values())]
        )

    def test_policy_is_created_by_authority_so_governance_lands(self) -> None:
        report = self._orchestrator().run()
        policy = report.book.get('policy')

        policy_tx = self.ledger.submitted[3]
        self.assertNotIn('to', policy_tx)
        self.assertEqual(self.ledger.creators[policy], AUTHORITY)
        for key in ('deployer', 'dex', 'cold'):
            self.assertNotEqual(self.ledger.creators[report.book.get(key)], AUTHORITY)
        self.assertEqual(self.ledger.governance, [(policy, *TIMELOCKS.values())])

    def test_policy_created_through_a_factory_cannot_take_governance(self) -> None:
        self._orchestrator().run(target='deploy_cold_path')
        book = self.store.load(CHAIN_ID)
        context = make_context(self.ledger)
        step = MaterializeStep('deploy_policy', Role.POLICY, constructor_args=(Role.DEX.value,))
        code, salt, factory = step.deployment(book, context.network, AUTHORITY, context.artifacts)
        policy = context.binder.materialize('policy', code, salt, factory)
        self.store.persist(book.set('policy', policy, step='deploy_policy'))

        report = self._orchestrator().run()

        self.assertEqual(report.failed_step, 'transfer_governance')
        self.assertEqual(report.outcomes[7].error['code'], 'deployment_rejected')
        self.assertEqual(self.ledger.governance, [])

    def test_second_run_is_a_no_op(self) -> None:
        self._orchestrator().run()
        submitted = len(self.ledger.submitted)

        report = self._orchestrator().run()

        self.assertEqual(report.status, RunStatus.COMPLETE)
        self.assertEqual([outcome.state for outcome in report.outcomes], [StepState.SATISFIED] * 8)
        self.assertEqual(report.executed(), [])
        self.assertEqual(len(self.ledger.submitted), submitted)

    def test_timeout_halts_and_resume_finishes(self) -> None:
        self.ledger.wait_failures[3] = timeout()

        halted = self._orchestrator().run()

        self.assertEqual(halted.status, RunStatus.HALTED)
        self.assertEqual(halted.exit_code, 1)
        self.assertEqual(halted.failed_step, 'deploy_cold_path')
        states = [outcome.state for outcome in halted.outcomes]
        self.assertEqual(states, [StepState.COMPLETED] * 2 + [StepState.FAILED] + [StepState.PENDING] * 5)
        self.assertEqual(halted.outcomes[2].error['code'], 'confirmation_timeout')
        self.assertTrue(halted.outcomes[2].error['retryable'])
        self.assertEqual(set(self.store.load(CHAIN_ID).addresses), {'deployer', 'dex'})

        resumed = self._orchestrator().run()

        self.assertEqual(resumed.status, RunStatus.COMPLETE)
        self.assertEqual(resumed.executed()[0], 'deploy_cold_path')
        self.assertEqual(resumed.outcomes[0].state, StepState.SATISFIED)
        # The cold path tx landed during the timed-out wait, so it is re-referenced.
        self.assertEqual(len(self.ledger.submitted), 7)

        with tempfile.TemporaryDirectory() as tmp:
            straight = FakeLedger()
            install_timelocks(straight)
            context = make_context(straight)
            uninterrupted = Orchestrator(default_plan(), AddressBookStore(Path(tmp)), context).run()

        self.assertEqual(dict(resumed.book.addresses), dict(uninterrupted.book.addresses))

    def test_target_step_stops_early(self) -> None:
        report = self._orchestrator().run(target='deploy_policy')

        self.assertEqual(report.status, RunStatus.PROGRESS)
        self.assertEqual(report.exit_code, 10)
        self.assertEqual(report.executed(), ['deploy_deployer', 'deploy_dex', 'deploy_cold_path', 'deploy_policy'])
        self.assertEqual([outcome.state for outcome in report.outcomes[4:]], [StepState.PENDING] * 4)
        self.assertEqual(self.ledger.dispatched, [])

        self.assertEqual(self._orchestrator().run().status, RunStatus.COMPLETE)

    def test_unknown_target_is_rejected(self) -> None:
        with self.assertRaises(InvalidPlan):
            self._orchestrator().run(target='deploy_everything')

    def test_corrupt_storage_stops_before_any_submission(self) -> None:
        self.store.path_for(CHAIN_ID).write_text('not json', encoding='utf-8')

        with self.assertRaises(StorageCorrupt):
            self._orchestrator().run()
        self.assertEqual(self.ledger.submitted, [])

    def test_missing_timelock_code_halts_before_governance(self) -> None:
        ledger = FakeLedger()

        report = self._orchestrator(ledger).run()

        self.assertEqual(report.failed_step, 'reference_timelocks')
        self.assertEqual(report.outcomes[6].error['code'], 'resource_not_found')
        self.assertEqual(report.outcomes[7].state, StepState.PENDING)
        self.assertEqual(ledger.governance, [])
        self.assertFalse(self.store.load(CHAIN_ID).has('timelock_ops'))

    def test_missing_artifact_halts_at_its_step(self) -> None:
        artifacts = StaticArtifacts()
        del artifacts.bytecodes['ZenonPolicy']

        report = self._orchestrator(artifacts=artifacts).run()

        self.assertEqual(report.failed_step, 'deploy_policy')
        self.assertEqual(report.outcomes[3].error['code'], 'artifact_missing')
        self.assertEqual(set(report.book.addresses), {'deployer', 'dex', 'cold'})

    def test_rejected_submission_is_not_retryable(self) -> None:
        self.ledger.reject_on.add(1)

        report = self._orchestrator().run()

        self.assertEqual(report.failed_step, 'deploy_deployer')
        self.assertEqual(report.outcomes[0].error['code'], 'deployment_rejected')
        self.assertFalse(report.outcomes[0].error['retryable'])
        self.assertEqual(dict(self.store.load(CHAIN_ID).addresses), {})

    def test_interrupt_keeps_last_persisted_book(self) -> None:
        self.ledger.wait_failures[2] = KeyboardInterrupt()

        with self.assertRaises(KeyboardInterrupt):
            self._orchestrator().run()

        self.assertEqual(set(self.store.load(CHAIN_ID).addresses), {'deployer'})

    def test_redeploy_replaces_recorded_address(self) -> None:
        first = self._orchestrator().run()
        upgraded = StaticArtifacts({'ColdPath': b'\x60\x80ColdPathV2'})

        report = self._orchestrator(artifacts=upgraded, redeploy=('deploy_cold_path',)).run()

        self.assertEqual(report.executed(), ['deploy_cold_path'])
        self.assertNotEqual(report.book.get('cold'), first.book.get('cold'))
        cold_history = [entry.address for entry in report.book.history if entry.name == 'cold']
        self.assertEqual(cold_history, [first.book.get('cold'), report.book.get('cold')])

    def test_redeploy_rejects_unknown_step(self) -> None:
        with self.assertRaises(InvalidPlan):
            self._orchestrator(redeploy=('deploy_oracle',))

    def test_prediction_matches_deployment(self) -> None:
        predicted = predict_addresses(default_plan(), hardhat_network(), AUTHORITY, StaticArtifacts())

        report = self._orchestrator().run()

        self.assertEqual(set(predicted), {'deployer', 'dex', 'cold'})
        for role, address in predicted.items():
            self.assertEqual(report.book.get(role), address)


class PlanValidationTests(unittest.TestCase):
    def test_default_plan_is_valid(self) -> None:
        validate_plan(default_plan())

    def test_read_before_write_is_rejected(self) -> None:
        plan = [
            MaterializeStep('deploy_policy', Role.POLICY, constructor_args=(Role.DEX.value,)),
            MaterializeStep('deploy_dex', Role.DEX)
        ]

        with self.assertRaises(InvalidPlan):
            validate_plan(plan)

    def test_two_writers_of_one_key_are_rejected(self) -> None:
        plan = [
            MaterializeStep('deploy_deployer', Role.DEPLOYER, constructor_args=(AUTHORITY_SOURCE,)),
            MaterializeStep('deploy_deployer_again', Role.DEPLOYER, constructor_args=(AUTHORITY_SOURCE,))
        ]

        with self.assertRaises(InvalidPlan):
            validate_plan(plan)

    def test_duplicate_step_name_is_rejected(self) -> None:
        plan = [
            MaterializeStep('deploy', Role.DEX),
            MaterializeStep('deploy', Role.COLD_PATH)
        ]

        with self.assertRaises(InvalidPlan):
            validate_plan(plan)

    def test_constructor_arity_is_checked(self) -> None:
        with self.assertRaises(SchemaMismatch):
            validate_plan([MaterializeStep('deploy_deployer', Role.DEPLOYER)])

    def test_sender_bound_role_cannot_use_a_factory(self) -> None:
        step = MaterializeStep('deploy_policy', Role.POLICY, constructor_args=(Role.DEX.value,), factory_key='deployer')

        with self.assertRaises(SchemaMismatch):
            step.validate()

    def test_command_literals_are_checked(self) -> None:
        cases = [
            CommandStep('install', 21, ('cold', 70000), 0, 'dex.proxy.cold', 'cold'),
            CommandStep('install', 21, ('cold', 'dex'), 0, 'dex.proxy.cold', 'cold'),
            CommandStep('install', 21, ('cold',), 0, 'dex.proxy.cold', 'cold'),
            CommandStep('install', 21, ('cold', 3), -1, 'dex.proxy.cold', 'cold'),
            CommandStep('install', 99, (), 0, 'dex.proxy.cold', 'cold')
        ]
        for step in cases:
            with self.subTest(step=step):
                with self.assertRaises(SchemaMismatch):
                    validate_plan([step])

    def test_empty_plan_is_rejected(self) -> None:
        with self.assertRaises(InvalidPlan):
            validate_plan([])
