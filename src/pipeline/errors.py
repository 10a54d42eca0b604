# ========================
# src/pipeline/errors.py
# ========================

"""
Pipeline Error Types

Row-level parse failures are recovered inside the ingestion stage. Every other
error fails the enclosing stage and therefore the run.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ParseError(PipelineError):
    """A raw row could not be parsed according to its dataset schema."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        super().__init__(message)
        self.line_number = line_number

    def __str__(self) -> str:
        message = super().__str__()
        if self.line_number is not None:
            return f"line {self.line_number}: {message}"
        return message


class SchemaError(PipelineError):
    """A source header does not declare the columns its dataset requires."""


class NotFoundError(PipelineError):
    """The requested layer snapshot does not exist."""

    def __init__(self, layer: str, dataset: str):
        super().__init__(f"No snapshot for dataset '{dataset}' in layer '{layer}'")
        self.layer = layer
        self.dataset = dataset


class StorageIOError(PipelineError, OSError):
    """The layer store could not read or publish a snapshot."""


class ConcurrentRunError(PipelineError):
    """A run was triggered while another run of the same pipeline is active."""

    def __init__(self, pipeline_name: str, active_run_id: str):
        super().__init__(
            f"Pipeline '{pipeline_name}' already has an active run: {active_run_id}"
        )
        self.pipeline_name = pipeline_name
        self.active_run_id = active_run_id


class ConsistencyError(PipelineError):
    """Cleaned or summary data violates a layer invariant."""


class RunCancelledError(PipelineError):
    """A run observed its cancellation flag at a stage checkpoint."""
