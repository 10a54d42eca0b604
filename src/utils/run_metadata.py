# ========================
# src/utils/run_metadata.py
# ========================

"""
Run Metadata Management

Persists pipeline run records so that run history survives a restart.
Several pipelines may share one history file.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)


class RunHistory:
    """Manages persistent run metadata storage."""

    def __init__(self, history_file: str = "data/run_history.json", max_runs_per_pipeline: int = 200):
        self.history_file = Path(history_file)
        self.history_file.parent.mkdir(parents=True, exist_ok=True)
        self.max_runs_per_pipeline = max_runs_per_pipeline
        self._lock = threading.Lock()

    def save_pipeline_runs(self, pipeline_name: str, runs: Dict[str, Dict[str, Any]]) -> None:
        """Replace the stored runs of one pipeline, keeping the most recent ones."""
        recent = sorted(runs.values(), key=lambda r: r.get('created_at') or '', reverse=True)
        recent = recent[:self.max_runs_per_pipeline]
        with self._lock:
            merged = {
                run_id: record
                for run_id, record in self._read().items()
                if record.get('pipeline_name') != pipeline_name
            }
            merged.update({r['run_id']: r for r in recent})
            self._write(merged)

    def load_runs(self) -> Dict[str, Dict[str, Any]]:
        """Load all run records from persistent storage."""
        with self._lock:
            return self._read()

    def list_runs(self, pipeline_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """List persisted runs, newest first."""
        runs = list(self.load_runs().values())
        if pipeline_name:
            runs = [r for r in runs if r.get('pipeline_name') == pipeline_name]
        runs.sort(key=lambda r: r.get('created_at') or '', reverse=True)
        return runs

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.history_file.exists():
            return {}
        try:
            with open(self.history_file, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load run metadata: {e}")
            return {}

    def _write(self, runs: Dict[str, Dict[str, Any]]) -> None:
        temp_file = self.history_file.with_suffix('.tmp')
        try:
            with open(temp_file, 'w') as f:
                json.dump(runs, f, indent=2, default=str)
            os.replace(temp_file, self.history_file)
            logger.debug(f"Saved run metadata for {len(runs)} runs")
        except OSError as e:
            logger.error(f"Failed to save run metadata: {e}")
