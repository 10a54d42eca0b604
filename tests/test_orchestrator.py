# ========================
# tests/test_orchestrator.py
# ========================

import unittest
import tempfile
import os
import sys
import threading
from decimal import Decimal
from unittest import mock

import pyarrow.parquet as pq

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.pipeline.errors import ConcurrentRunError, PipelineError, StorageIOError
from src.pipeline.orchestrator import (
    PipelineDefinition, PipelineOrchestrator, PipelineRun, RunState, compute_backoff_delay,
)
from src.pipeline.query import ClientInvestmentQuery
from src.pipeline.schema import CLIENTS, CLIENT_INVESTMENTS, RAW_LAYER, TRADES
from src.utils.run_metadata import RunHistory
from tests.support import SCENARIO_CLIENTS, make_config, wait_for, write_csv, write_scenario_sources


class TestRunStateMachine(unittest.TestCase):
    """Test run records and retry delays."""

    def test_legal_transitions(self):
        run = PipelineRun(pipeline_name='p')
        for state in (RunState.INGESTING, RunState.CLEANING, RunState.AGGREGATING, RunState.SUCCEEDED):
            run.transition(state)
        self.assertTrue(run.is_finished)

    def test_illegal_transitions(self):
        run = PipelineRun(pipeline_name='p')
        with self.assertRaises(PipelineError):
            run.transition(RunState.AGGREGATING)

        run.transition(RunState.FAILED)
        with self.assertRaises(PipelineError):
            run.transition(RunState.INGESTING)

    def test_round_trip_through_dict(self):
        run = PipelineRun(pipeline_name='p', trigger='scheduled')
        run.transition(RunState.INGESTING)
        restored = PipelineRun.from_dict(run.to_dict())

        self.assertEqual(restored.state, RunState.INGESTING)
        self.assertEqual(restored.run_id, run.run_id)
        self.assertEqual(run.to_dict()['state'], 'ingesting')

    def test_backoff_doubles_and_caps(self):
        self.assertEqual(compute_backoff_delay(1, 5, 300), 5)
        self.assertEqual(compute_backoff_delay(2, 5, 300), 10)
        self.assertEqual(compute_backoff_delay(3, 5, 300), 20)
        self.assertEqual(compute_backoff_delay(10, 5, 300), 300)

    def test_backoff_jitter_bounds(self):
        for _ in range(50):
            delay = compute_backoff_delay(2, 10, 300, jitter=0.5)
            self.assertGreaterEqual(delay, 10)
            self.assertLessEqual(delay, 30)

    def test_backoff_rejects_attempt_zero(self):
        with self.assertRaises(ValueError):
            compute_backoff_delay(0, 5, 300)


class OrchestratorTestCase(unittest.TestCase):

    config_overrides = {}

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config = make_config(self.temp_dir.name, **self.config_overrides)
        write_scenario_sources(self.config)
        self.orchestrator = self._make_orchestrator()

    def tearDown(self):
        self.orchestrator.shutdown()
        self.temp_dir.cleanup()

    def _make_orchestrator(self):
        return PipelineOrchestrator(PipelineDefinition.from_config(self.config), self.config)

    def _totals(self):
        rows = ClientInvestmentQuery(self.orchestrator.store).query_client_investments()
        return {r['client_id']: r['total_investment'] for r in rows}

    def _failing_summary_write(self, failures):
        """Store.write replacement that fails the first `failures` summary publishes."""
        original_write = self.orchestrator.store.write
        calls = {'failed': 0}

        def write(layer, dataset, rows, schema):
            if dataset == CLIENT_INVESTMENTS and calls['failed'] < failures:
                calls['failed'] += 1
                raise StorageIOError("simulated disk failure")
            return original_write(layer, dataset, rows, schema)

        return mock.patch.object(self.orchestrator.store, 'write', side_effect=write)


class TestPipelineOrchestrator(OrchestratorTestCase):
    """Test runs without retries."""

    def test_run_now_succeeds(self):
        run = self.orchestrator.run_now()

        self.assertEqual(run.state, RunState.SUCCEEDED)
        self.assertEqual(run.attempt, 1)
        self.assertIsNotNone(run.finished_at)
        self.assertEqual(set(run.results), {'ingest', 'clean', 'aggregate', 'performance'})
        self.assertEqual(self._totals()['102'], Decimal('50000'))
        self.assertIsNone(self.orchestrator.active_run())

    def test_stages_visited_in_order(self):
        seen = []
        original = PipelineRun.transition

        def recording(run, new_state):
            seen.append(new_state)
            original(run, new_state)

        with mock.patch.object(PipelineRun, 'transition', recording):
            self.orchestrator.run_now()

        self.assertEqual(seen, [RunState.INGESTING, RunState.CLEANING, RunState.AGGREGATING, RunState.SUCCEEDED])

    def test_failure_reports_stage_and_keeps_previous_summary(self):
        self.orchestrator.run_now()
        before = self._totals()

        with self._failing_summary_write(failures=1):
            run = self.orchestrator.run_now()

        self.assertEqual(run.state, RunState.FAILED)
        self.assertEqual(run.failed_stage, 'aggregating')
        self.assertEqual(run.error_kind, 'StorageIOError')
        self.assertEqual(self._totals(), before)

    def test_schema_error_fails_in_ingest(self):
        write_csv(self.config.TRADES_SOURCE, ['trade_id', 'client_id', 'quantity'], [['1', '101', '5']])
        run = self.orchestrator.run_now()

        self.assertEqual(run.state, RunState.FAILED)
        self.assertEqual(run.failed_stage, 'ingesting')
        self.assertEqual(run.error_kind, 'SchemaError')

    def test_conflicting_clients_fail_in_clean(self):
        write_scenario_sources(self.config, clients=[['101', 'Alpha', 'NA'], ['101', 'Alpha', 'EU']])
        run = self.orchestrator.run_now()

        self.assertEqual(run.failed_stage, 'cleaning')
        self.assertEqual(run.error_kind, 'ConsistencyError')

    def test_duplicate_client_with_missing_name_is_dropped(self):
        write_scenario_sources(self.config, clients=SCENARIO_CLIENTS + [['101', '', 'NA']])
        run = self.orchestrator.run_now()

        self.assertEqual(run.state, RunState.SUCCEEDED, f"{run.error_kind}: {run.error_message}")
        self.assertEqual(run.results['clean']['clients_dropped'], 1)
        self.assertEqual(
            self._totals(),
            {'101': Decimal('15000'), '102': Decimal('50000'), '103': Decimal('180000')}
        )

    def test_failed_raw_publish_keeps_every_raw_snapshot(self):
        self.orchestrator.run_now()
        write_scenario_sources(self.config, clients=SCENARIO_CLIENTS[:1])
        original_write_table = pq.write_table

        def write_table(table, where, **kwargs):
            if 'trade_id' in table.schema.names:
                raise OSError("simulated disk failure")
            return original_write_table(table, where, **kwargs)

        with mock.patch('src.pipeline.storage.pq.write_table', side_effect=write_table):
            run = self.orchestrator.run_now()

        self.assertEqual(run.state, RunState.FAILED)
        self.assertEqual(run.failed_stage, 'ingesting')
        self.assertEqual(run.error_kind, 'StorageIOError')
        self.assertEqual(len(self.orchestrator.store.read(RAW_LAYER, CLIENTS)), 3)
        self.assertEqual(len(self.orchestrator.store.read(RAW_LAYER, TRADES)), 3)

    def test_trigger_after_shutdown_does_not_block_pipeline(self):
        self.orchestrator.shutdown()

        with self.assertRaises(RuntimeError):
            self.orchestrator.trigger()

        self.assertIsNone(self.orchestrator.active_run())
        self.assertEqual(self.orchestrator.list_runs(), [])
        self.assertEqual(RunHistory(self.config.RUN_HISTORY_FILE).list_runs(self.config.PIPELINE_NAME), [])
        self.assertEqual(self.orchestrator.run_now().state, RunState.SUCCEEDED)

    def test_concurrent_trigger_rejected(self):
        started = threading.Event()
        release = threading.Event()
        original_ingest = self.orchestrator.pipeline.ingestor.ingest

        def blocking_ingest(sources, cancel_check=None):
            started.set()
            release.wait(10)
            return original_ingest(sources, cancel_check)

        with mock.patch.object(self.orchestrator.pipeline.ingestor, 'ingest', side_effect=blocking_ingest):
            run = self.orchestrator.trigger()
            self.assertTrue(started.wait(5))

            with self.assertRaises(ConcurrentRunError) as ctx:
                self.orchestrator.trigger()
            self.assertEqual(ctx.exception.active_run_id, run.run_id)
            with self.assertRaises(ConcurrentRunError):
                self.orchestrator.run_now()

            release.set()
            wait_for(lambda: self.orchestrator.active_run() is None)

        self.assertEqual(run.state, RunState.SUCCEEDED)
        self.assertEqual(len(self.orchestrator.list_runs()), 1)
        self.assertEqual(self.orchestrator.run_now().state, RunState.SUCCEEDED)

    def test_cancel_during_ingest_publishes_nothing(self):
        original_ingest = self.orchestrator.pipeline.ingestor.ingest

        def ingest_then_cancel(sources, cancel_check=None):
            self.assertTrue(self.orchestrator.cancel(self.orchestrator.active_run().run_id))
            return original_ingest(sources, cancel_check)

        with mock.patch.object(self.orchestrator.pipeline.ingestor, 'ingest', side_effect=ingest_then_cancel):
            run = self.orchestrator.run_now()

        self.assertEqual(run.state, RunState.FAILED)
        self.assertEqual(run.error_kind, 'RunCancelledError')
        self.assertEqual(run.failed_stage, 'ingesting')
        self.assertTrue(run.cancel_requested)
        self.assertFalse(self.orchestrator.store.exists(RAW_LAYER, TRADES))

    def test_cancel_unknown_or_finished_run(self):
        self.assertFalse(self.orchestrator.cancel('no-such-run'))
        run = self.orchestrator.run_now()
        self.assertFalse(self.orchestrator.cancel(run.run_id))

    def test_list_runs_filters_by_state(self):
        succeeded = self.orchestrator.run_now()
        with self._failing_summary_write(failures=1):
            failed = self.orchestrator.run_now()

        self.assertEqual([r.run_id for r in self.orchestrator.list_runs()], [failed.run_id, succeeded.run_id])
        self.assertEqual([r.run_id for r in self.orchestrator.list_runs(status='failed')], [failed.run_id])
        self.assertEqual(len(self.orchestrator.list_runs(limit=1)), 1)

    def test_run_history_survives_restart(self):
        run = self.orchestrator.run_now()

        restarted = self._make_orchestrator()
        try:
            restored = restarted.get_run(run.run_id)
            self.assertIsNotNone(restored)
            self.assertEqual(restored.state, RunState.SUCCEEDED)
        finally:
            restarted.shutdown()

    def test_unfinished_run_marked_interrupted_on_restart(self):
        stale = PipelineRun(pipeline_name=self.config.PIPELINE_NAME, run_id='stale-run', state=RunState.CLEANING)
        RunHistory(self.config.RUN_HISTORY_FILE).save_pipeline_runs(
            self.config.PIPELINE_NAME, {stale.run_id: stale.to_dict()}
        )

        restarted = self._make_orchestrator()
        try:
            restored = restarted.get_run('stale-run')
            self.assertEqual(restored.state, RunState.FAILED)
            self.assertEqual(restored.error_kind, 'Interrupted')
            self.assertEqual(restored.failed_stage, 'cleaning')
            self.assertIsNone(restarted.active_run())
        finally:
            restarted.shutdown()


class TestRunRetries(OrchestratorTestCase):
    """Test retry behaviour with two retries allowed."""

    config_overrides = {'run_max_retries': 2}

    def test_transient_failure_retried_from_ingest(self):
        with self._failing_summary_write(failures=1):
            with mock.patch.object(self.orchestrator.pipeline.ingestor, 'ingest',
                                   wraps=self.orchestrator.pipeline.ingestor.ingest) as ingest:
                run = self.orchestrator.run_now()

        self.assertEqual(run.state, RunState.SUCCEEDED)
        self.assertEqual(run.attempt, 2)
        self.assertEqual(ingest.call_count, 2)
        self.assertEqual(len(run.attempt_errors), 1)
        self.assertEqual(run.attempt_errors[0]['stage'], 'aggregating')
        self.assertEqual(self._totals()['103'], Decimal('180000'))

    def test_retries_exhausted(self):
        with self._failing_summary_write(failures=10):
            run = self.orchestrator.run_now()

        self.assertEqual(run.state, RunState.FAILED)
        self.assertEqual(run.attempt, 3)
        self.assertEqual([e['error_kind'] for e in run.attempt_errors], ['StorageIOError'] * 3)
        self.assertEqual(run.failed_stage, 'aggregating')

    def test_cancellation_not_retried(self):
        original_ingest = self.orchestrator.pipeline.ingestor.ingest

        def ingest_then_cancel(sources, cancel_check=None):
            self.orchestrator.cancel(self.orchestrator.active_run().run_id)
            return original_ingest(sources, cancel_check)

        with mock.patch.object(self.orchestrator.pipeline.ingestor, 'ingest', side_effect=ingest_then_cancel):
            run = self.orchestrator.run_now()

        self.assertEqual(run.attempt, 1)
        self.assertEqual(run.error_kind, 'RunCancelledError')


class TestRetryBackoff(OrchestratorTestCase):
    """Test a run waiting between attempts."""

    config_overrides = {
        'run_max_retries': 1,
        'run_retry_base_delay_seconds': 30.0,
        'run_retry_max_delay_seconds': 30.0,
    }

    def test_pending_retry_blocks_new_runs_and_can_be_cancelled(self):
        with self._failing_summary_write(failures=1):
            run = self.orchestrator.trigger()
            wait_for(lambda: run.attempt_errors and run.state == RunState.IDLE)

            with self.assertRaises(ConcurrentRunError):
                self.orchestrator.trigger()

            self.assertTrue(self.orchestrator.cancel(run.run_id))
            wait_for(lambda: self.orchestrator.active_run() is None)

        self.assertEqual(run.state, RunState.FAILED)
        self.assertEqual(run.error_kind, 'RunCancelledError')
        self.assertEqual(run.attempt, 1)


if __name__ == '__main__':
    unittest.main()
