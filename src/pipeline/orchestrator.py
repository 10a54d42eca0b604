# ========================
# src/pipeline/orchestrator.py
# ========================

"""
Pipeline Orchestrator Module

Sequences ingest -> clean -> aggregate for one pipeline, tracks every run
through a state machine, rejects overlapping runs, retries failed runs from
the start with backoff, and supports cooperative cancellation at stage
boundaries.
"""

import random
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .cleaning import DataCleaner, verify_cleaned
from .errors import ConcurrentRunError, PipelineError, RunCancelledError
from .ingestion import StageIngestor
from .schema import (
    CLEANED_LAYER, CLIENTS, CLIENT_INVESTMENTS, CLIENT_INVESTMENT_SCHEMA,
    RAW_LAYER, SUMMARY_LAYER, TRADES, TRADE_DETAILS, TRADE_DETAIL_SCHEMA,
)
from .storage import LayerStore
from .transformation import DataAggregator, verify_summary
from ..utils.config import Config
from ..utils.performance_monitor import PerformanceMonitor
from ..utils.run_metadata import RunHistory

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    INGESTING = "ingesting"
    CLEANING = "cleaning"
    AGGREGATING = "aggregating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ACTIVE_STATES = frozenset({RunState.INGESTING, RunState.CLEANING, RunState.AGGREGATING})

# IDLE after a stage means the attempt failed and a retry is pending.
ALLOWED_TRANSITIONS = {
    RunState.IDLE: {RunState.INGESTING, RunState.FAILED},
    RunState.INGESTING: {RunState.CLEANING, RunState.IDLE, RunState.FAILED},
    RunState.CLEANING: {RunState.AGGREGATING, RunState.IDLE, RunState.FAILED},
    RunState.AGGREGATING: {RunState.SUCCEEDED, RunState.IDLE, RunState.FAILED},
    RunState.SUCCEEDED: set(),
    RunState.FAILED: set(),
}


@dataclass
class PipelineDefinition:
    """A named pipeline and the source file of each raw dataset."""
    name: str
    sources: Dict[str, str]

    @classmethod
    def from_config(cls, config: Config) -> 'PipelineDefinition':
        return cls(name=config.PIPELINE_NAME, sources=config.get_sources())


@dataclass
class PipelineRun:
    """One end-to-end execution of a pipeline."""
    pipeline_name: str
    trigger: str = "manual"
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: RunState = RunState.IDLE
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    attempt: int = 0
    max_attempts: int = 1
    failed_stage: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    attempt_errors: List[Dict[str, Any]] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False

    def transition(self, new_state: RunState) -> None:
        """Move to a new state, rejecting transitions the state machine forbids."""
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise PipelineError(
                f"Run {self.run_id}: illegal transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(f"Run {self.run_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def is_finished(self) -> bool:
        return self.state in (RunState.SUCCEEDED, RunState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['state'] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PipelineRun':
        known = {name for name in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known}
        values['state'] = RunState(values.get('state', RunState.IDLE.value))
        return cls(**values)


def compute_backoff_delay(attempt: int,
                          base_delay: float,
                          max_delay: float,
                          jitter: float = 0.0) -> float:
    """
    Delay before retrying after the given failed attempt.

    The delay doubles per attempt (base, 2*base, 4*base, ...), is capped at
    max_delay and then spread by +/- jitter of its value.

    Args:
        attempt (int): Number of the attempt that just failed (1-indexed)
        base_delay (float): Delay after the first failure, in seconds
        max_delay (float): Upper bound before jitter, in seconds
        jitter (float): Fraction of the delay to randomize

    Returns:
        float: Delay in seconds, never negative
    """
    if attempt < 1:
        raise ValueError("Attempt number must be 1 or greater")
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    if jitter:
        delay += random.uniform(-jitter * delay, jitter * delay)
    return max(0.0, delay)


def clean_stage(trades: List[Dict[str, Any]],
                clients: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """Build and verify the cleaned trade details from two raw snapshots."""
    cleaner = DataCleaner()
    details = cleaner.clean(trades, clients)
    verify_cleaned(details, clients)
    return details, cleaner.get_statistics()


def aggregate_stage(details: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
    """Build and verify the client investment summary from cleaned details."""
    aggregator = DataAggregator()
    summary = aggregator.aggregate(details)
    verify_summary(summary, details)
    return summary, aggregator.get_aggregation_summary()


class DataPipeline:
    """
    Executes one attempt of a pipeline run.
    Each stage reads its upstream layer from the store and publishes its own
    layer before the next stage starts.
    """

    def __init__(self,
                 definition: PipelineDefinition,
                 store: LayerStore,
                 config: Optional[Config] = None):
        """
        Initialize the data pipeline.

        Args:
            definition (PipelineDefinition): Pipeline name and sources
            store (LayerStore): Store holding this pipeline's layers
            config (Config): Configuration object
        """
        self.definition = definition
        self.store = store
        self.config = config or Config()
        self.ingestor = StageIngestor(
            store,
            chunk_size=self.config.INGEST_CHUNK_SIZE,
            error_sample_limit=self.config.PARSE_ERROR_SAMPLE_LIMIT,
        )

        logger.info(f"DataPipeline '{definition.name}' initialized:")
        for dataset, path in sorted(definition.sources.items()):
            logger.info(f"  Source {dataset}: {path}")
        logger.info(f"  Layers: {store.root_dir}")

    def run(self, run: PipelineRun, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """
        Execute ingest, clean and aggregate in order.

        Args:
            run (PipelineRun): Run record, its state is advanced per stage
            cancel_event (threading.Event): Set to request cancellation

        Returns:
            dict: Per-stage statistics

        Raises:
            RunCancelledError: If cancellation was requested
            PipelineError: If a stage fails
        """
        cancel_event = cancel_event or threading.Event()

        def cancel_check() -> None:
            if cancel_event.is_set():
                raise RunCancelledError(f"Run {run.run_id} cancelled during {run.state.value}")

        results: Dict[str, Any] = {}
        monitor = PerformanceMonitor(f"{self.definition.name}:{run.run_id[:8]}")
        monitor.start_monitoring()
        cancel_check()

        run.transition(RunState.INGESTING)
        results['ingest'] = self.ingestor.ingest(self.definition.sources, cancel_check)
        monitor.update_progress(sum(s['rows_read'] for s in results['ingest'].values()))
        monitor.add_checkpoint('ingest')
        cancel_check()

        run.transition(RunState.CLEANING)
        trades = self.store.read(RAW_LAYER, TRADES)
        clients = self.store.read(RAW_LAYER, CLIENTS)
        details, cleaning_stats = clean_stage(trades, clients)
        cancel_check()
        cleaning_stats['snapshot'] = self.store.write(
            CLEANED_LAYER, TRADE_DETAILS, details, TRADE_DETAIL_SCHEMA
        )
        results['clean'] = cleaning_stats
        monitor.add_checkpoint('clean')
        cancel_check()

        run.transition(RunState.AGGREGATING)
        details = self.store.read(CLEANED_LAYER, TRADE_DETAILS)
        summary, aggregation_stats = aggregate_stage(details)
        cancel_check()
        aggregation_stats['snapshot'] = self.store.write(
            SUMMARY_LAYER, CLIENT_INVESTMENTS, summary, CLIENT_INVESTMENT_SCHEMA
        )
        results['aggregate'] = aggregation_stats
        monitor.add_checkpoint('aggregate')

        results['performance'] = monitor.stop_monitoring()
        run.transition(RunState.SUCCEEDED)
        return results


class PipelineOrchestrator:
    """
    Owns the runs of one pipeline: triggering, retries, cancellation and
    run history. At most one run per pipeline is in progress at any time.
    """

    def __init__(self,
                 definition: PipelineDefinition,
                 config: Optional[Config] = None,
                 executor: Optional[ThreadPoolExecutor] = None,
                 history: Optional[RunHistory] = None):
        """
        Initialize the orchestrator.

        Args:
            definition (PipelineDefinition): Pipeline to orchestrate
            config (Config): Configuration object
            executor (ThreadPoolExecutor): Worker pool for background runs,
                shared between pipelines when given
            history (RunHistory): Run persistence
        """
        self.definition = definition
        self.config = config or Config()
        self.store = LayerStore(str(Path(self.config.PIPELINE_DATA_ROOT) / definition.name))
        self.pipeline = DataPipeline(definition, self.store, self.config)
        self.history = history or RunHistory(self.config.RUN_HISTORY_FILE)

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"pipeline-{definition.name}"
        )
        self._lock = threading.Lock()
        self._active_run: Optional[PipelineRun] = None
        self._cancel_events: Dict[str, threading.Event] = {}
        self._runs: Dict[str, PipelineRun] = self._load_history()

    @property
    def name(self) -> str:
        return self.definition.name

    def trigger(self, trigger: str = "manual") -> PipelineRun:
        """
        Start a run on the background worker and return immediately.

        Raises:
            ConcurrentRunError: If a run of this pipeline is in progress
            RuntimeError: If the worker pool has been shut down
        """
        run = self._register_run(trigger)
        try:
            self._executor.submit(self._execute, run)
        except Exception:
            # The run will never execute; release the pipeline.
            self._discard_run(run)
            logger.error(f"Could not queue {trigger} run {run.run_id} for pipeline '{self.name}'")
            raise
        logger.info(f"Queued {trigger} run {run.run_id} for pipeline '{self.name}'")
        return run

    def run_now(self, trigger: str = "manual") -> PipelineRun:
        """
        Execute a run synchronously, including retries.

        Raises:
            ConcurrentRunError: If a run of this pipeline is in progress
        """
        run = self._register_run(trigger)
        self._execute(run)
        return run

    def cancel(self, run_id: str) -> bool:
        """
        Request cancellation of a run.

        Returns:
            bool: True if the run was in progress and has been flagged
        """
        with self._lock:
            run = self._runs.get(run_id)
            event = self._cancel_events.get(run_id)
            if run is None or event is None or run.is_finished:
                return False
            run.cancel_requested = True
            event.set()
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return self._runs.get(run_id)

    def list_runs(self, status: Optional[str] = None, limit: int = 50) -> List[PipelineRun]:
        """List runs newest first, optionally filtered by state."""
        with self._lock:
            runs = list(self._runs.values())
        if status:
            runs = [r for r in runs if r.state.value == status]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit]

    def active_run(self) -> Optional[PipelineRun]:
        return self._active_run

    def shutdown(self, wait: bool = True) -> None:
        """Cancel the active run and stop the worker pool if owned."""
        active = self._active_run
        if active is not None:
            self.cancel(active.run_id)
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        logger.info(f"Orchestrator for pipeline '{self.name}' shut down")

    def _register_run(self, trigger: str) -> PipelineRun:
        with self._lock:
            if self._active_run is not None:
                logger.warning(
                    f"Rejected {trigger} run for '{self.name}': run {self._active_run.run_id} "
                    f"is {self._active_run.state.value}"
                )
                raise ConcurrentRunError(self.name, self._active_run.run_id)

            run = PipelineRun(
                pipeline_name=self.name,
                trigger=trigger,
                max_attempts=self.config.RUN_MAX_RETRIES + 1,
            )
            self._runs[run.run_id] = run
            self._cancel_events[run.run_id] = threading.Event()
            self._active_run = run
        self._persist()
        return run

    def _discard_run(self, run: PipelineRun) -> None:
        with self._lock:
            self._runs.pop(run.run_id, None)
            self._cancel_events.pop(run.run_id, None)
            if self._active_run is run:
                self._active_run = None
        self._persist()

    def _execute(self, run: PipelineRun) -> None:
        """Run attempts until one succeeds, retries are exhausted, or the run is cancelled."""
        cancel_event = self._cancel_events[run.run_id]
        run.started_at = datetime.now().isoformat()
        try:
            while True:
                run.attempt += 1
                logger.info(f"Run {run.run_id} attempt {run.attempt}/{run.max_attempts} starting")
                try:
                    run.results = self.pipeline.run(run, cancel_event)
                    logger.info(f"Run {run.run_id} succeeded on attempt {run.attempt}")
                    return
                except Exception as e:
                    stage = run.state.value
                    run.attempt_errors.append({
                        'attempt': run.attempt,
                        'stage': stage,
                        'error_kind': type(e).__name__,
                        'error_message': str(e),
                    })
                    logger.error(f"Run {run.run_id} attempt {run.attempt} failed during {stage}: {e}")

                    if isinstance(e, RunCancelledError) or run.attempt >= run.max_attempts:
                        self._fail(run, stage, e)
                        return

                    run.transition(RunState.IDLE)
                    self._persist()
                    delay = compute_backoff_delay(
                        run.attempt,
                        self.config.RUN_RETRY_BASE_DELAY_SECONDS,
                        self.config.RUN_RETRY_MAX_DELAY_SECONDS,
                        self.config.RUN_RETRY_JITTER,
                    )
                    logger.info(f"Retrying run {run.run_id} in {delay:.2f}s")
                    if cancel_event.wait(delay):
                        self._fail(run, stage, RunCancelledError(f"Run {run.run_id} cancelled while waiting to retry"))
                        return
        finally:
            run.finished_at = datetime.now().isoformat()
            with self._lock:
                self._active_run = None
                self._cancel_events.pop(run.run_id, None)
            self._persist()

    def _fail(self, run: PipelineRun, stage: str, error: Exception) -> None:
        run.failed_stage = stage
        run.error_kind = type(error).__name__
        run.error_message = str(error)
        run.transition(RunState.FAILED)
        logger.error(
            f"Run {run.run_id} failed after {run.attempt} attempt(s) in stage '{stage}': "
            f"{run.error_kind}: {run.error_message}"
        )

    def _persist(self) -> None:
        with self._lock:
            records = {run_id: run.to_dict() for run_id, run in self._runs.items()}
        self.history.save_pipeline_runs(self.name, records)

    def _load_history(self) -> Dict[str, PipelineRun]:
        runs = {}
        for record in self.history.list_runs(self.name):
            run = PipelineRun.from_dict(record)
            if not run.is_finished:
                # The process stopped while this run was in progress.
                run.failed_stage = run.state.value
                run.error_kind = "Interrupted"
                run.error_message = "Run was in progress when the service stopped"
                run.state = RunState.FAILED
            runs[run.run_id] = run
        return runs


def build_orchestrators(config: Config,
                        definitions: Optional[List[PipelineDefinition]] = None,
                        executor: Optional[ThreadPoolExecutor] = None) -> Dict[str, PipelineOrchestrator]:
    """
    Create one orchestrator per pipeline sharing a worker pool.

    Independent pipelines write disjoint layer roots and may run in parallel,
    bounded by MAX_PARALLEL_PIPELINES.
    """
    definitions = definitions or [PipelineDefinition.from_config(config)]
    executor = executor or ThreadPoolExecutor(
        max_workers=config.MAX_PARALLEL_PIPELINES, thread_name_prefix="pipeline"
    )
    history = RunHistory(config.RUN_HISTORY_FILE)
    return {
        d.name: PipelineOrchestrator(d, config, executor=executor, history=history)
        for d in definitions
    }
