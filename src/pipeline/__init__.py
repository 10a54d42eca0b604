# ========================
# src/pipeline/__init__.py
# ========================

"""
Trade Pipeline Package

Core components of the layered (raw -> cleaned -> summary) trade pipeline:
- ingestion: typed CSV ingestion into the raw layer
- cleaning: trade validation and client join
- transformation: per-client investment aggregation
- storage: atomic Parquet layer snapshots
- orchestrator: run state machine, retries and cancellation
- scheduler: recurring triggers
- query: read-only summary access
"""

from .cleaning import DataCleaner
from .errors import (
    ConcurrentRunError,
    ConsistencyError,
    NotFoundError,
    ParseError,
    PipelineError,
    RunCancelledError,
    SchemaError,
    StorageIOError,
)
from .ingestion import CSVReader, StageIngestor
from .orchestrator import (
    DataPipeline,
    PipelineDefinition,
    PipelineOrchestrator,
    PipelineRun,
    RunState,
    build_orchestrators,
)
from .query import ClientInvestmentQuery
from .storage import LayerStore
from .transformation import DataAggregator

__all__ = [
    'CSVReader',
    'StageIngestor',
    'DataCleaner',
    'DataAggregator',
    'LayerStore',
    'DataPipeline',
    'PipelineDefinition',
    'PipelineOrchestrator',
    'PipelineRun',
    'RunState',
    'build_orchestrators',
    'ClientInvestmentQuery',
    'PipelineError',
    'ParseError',
    'SchemaError',
    'NotFoundError',
    'StorageIOError',
    'ConcurrentRunError',
    'ConsistencyError',
    'RunCancelledError',
]

__version__ = "1.0.0"
