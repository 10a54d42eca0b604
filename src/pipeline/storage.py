# ========================
# src/pipeline/storage.py
# ========================

"""
Layer Storage Module

Reads and writes layer snapshots as Parquet files. A write lands in a
temporary file next to its target and is published with an atomic rename,
so readers see either the previous snapshot or the new one.
"""

import os
import logging
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pyarrow as pa
import pyarrow.parquet as pq

from .errors import ConsistencyError, NotFoundError, StorageIOError
from .schema import LAYERS

logger = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = ".parquet"


class LayerStore:
    """
    Durable store for layer snapshots addressed by (layer, dataset).

    Layout: <root>/<layer>/<dataset>.parquet
    """

    def __init__(self, root_dir: str):
        """
        Initialize the layer store.

        Args:
            root_dir (str): Directory that holds this pipeline's layers
        """
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"LayerStore initialized with root directory: {self.root_dir}")

    def snapshot_path(self, layer: str, dataset: str) -> Path:
        """Return the published path of a snapshot."""
        if layer not in LAYERS:
            raise ValueError(f"Unknown layer '{layer}'. Expected one of {LAYERS}")
        return self.root_dir / layer / f"{dataset}{SNAPSHOT_SUFFIX}"

    def exists(self, layer: str, dataset: str) -> bool:
        return self.snapshot_path(layer, dataset).is_file()

    def read(self, layer: str, dataset: str) -> List[Dict[str, Any]]:
        """
        Read the current snapshot of a dataset.

        Args:
            layer (str): Layer name
            dataset (str): Dataset name

        Returns:
            list[dict]: Snapshot rows

        Raises:
            NotFoundError: If the snapshot was never published
            StorageIOError: If the snapshot cannot be read
        """
        rows, _ = self.read_snapshot(layer, dataset)
        return rows

    def read_snapshot(self, layer: str, dataset: str) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """
        Read a snapshot together with the description of that same file.

        The file is opened once, so a publish that lands during the read
        cannot make the rows and the description disagree.

        Returns:
            tuple: (rows, snapshot information)

        Raises:
            NotFoundError: If the snapshot was never published
            StorageIOError: If the snapshot cannot be read
        """
        path = self.snapshot_path(layer, dataset)
        try:
            with open(path, 'rb') as f:
                stat = os.fstat(f.fileno())
                table = pq.read_table(f)
        except FileNotFoundError:
            raise NotFoundError(layer, dataset)
        except (OSError, pa.ArrowException) as e:
            logger.error(f"Error reading snapshot {path}: {e}")
            raise StorageIOError(f"Failed to read {layer}/{dataset}: {e}") from e

        rows = table.to_pylist()
        logger.debug(f"Read {len(rows)} rows from {path}")
        info = {
            'layer': layer,
            'dataset': dataset,
            'path': str(path),
            'num_rows': table.num_rows,
            'size_bytes': stat.st_size,
            'modified_at': datetime.fromtimestamp(stat.st_mtime).isoformat(),
            'columns': table.schema.names,
        }
        return rows, info

    def write(self, layer: str, dataset: str, rows: List[Dict[str, Any]], schema: pa.Schema) -> Dict[str, Any]:
        """
        Replace the snapshot of a dataset with the given rows.

        The previous snapshot stays visible until the new file is fully
        written and synced.

        Args:
            layer (str): Layer name
            dataset (str): Dataset name
            rows (list[dict]): Rows to publish
            schema (pa.Schema): Arrow schema of the dataset

        Returns:
            dict: Snapshot information of the published file

        Raises:
            ConsistencyError: If the rows do not fit the schema
            StorageIOError: If the snapshot cannot be published
        """
        return self.write_many(layer, [(dataset, rows, schema)])[dataset]

    def write_many(self,
                   layer: str,
                   snapshots: List[Tuple[str, List[Dict[str, Any]], pa.Schema]]) -> Dict[str, Dict[str, Any]]:
        """
        Replace several snapshots of one layer together.

        Every new file is written and synced before the first one is renamed
        into place, so a failure while writing leaves all previous snapshots
        of the layer untouched.

        Args:
            layer (str): Layer name
            snapshots (list): (dataset, rows, schema) per dataset

        Returns:
            dict: Dataset -> snapshot information of the published file

        Raises:
            ConsistencyError: If rows do not fit their schema
            StorageIOError: If a snapshot cannot be written or published
        """
        tables = []
        for dataset, rows, schema in snapshots:
            try:
                table = pa.Table.from_pylist(rows, schema=schema)
            except (pa.ArrowInvalid, pa.ArrowTypeError) as e:
                raise ConsistencyError(f"Rows for {layer}/{dataset} do not match schema: {e}") from e
            tables.append((dataset, table))

        staged: Dict[str, Path] = {}
        try:
            for dataset, table in tables:
                staged[dataset] = self._stage(layer, dataset, table)

            for dataset, temp_path in list(staged.items()):
                path = self.snapshot_path(layer, dataset)
                os.replace(temp_path, path)
                del staged[dataset]
                logger.info(f"Published {layer}/{dataset} to {path}")
            self._sync_directory(self.root_dir / layer)
        except (OSError, pa.ArrowException) as e:
            logger.error(f"Error publishing {layer} snapshots: {e}")
            raise StorageIOError(f"Failed to write {layer}: {e}") from e
        finally:
            for temp_path in staged.values():
                if temp_path.exists():
                    temp_path.unlink()

        return {dataset: self.snapshot_info(layer, dataset) for dataset, _ in tables}

    def _stage(self, layer: str, dataset: str, table: pa.Table) -> Path:
        """Write a table to a synced temp file next to its published path."""
        path = self.snapshot_path(layer, dataset)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{dataset}.", suffix=".tmp", dir=str(path.parent)
        )
        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                pq.write_table(table, f)
                f.flush()
                os.fsync(f.fileno())
        except Exception:
            temp_path.unlink()
            raise
        logger.debug(f"Staged {table.num_rows} rows for {layer}/{dataset} in {temp_path}")
        return temp_path

    def snapshot_info(self, layer: str, dataset: str) -> Dict[str, Any]:
        """
        Describe a published snapshot.

        Raises:
            NotFoundError: If the snapshot was never published
        """
        path = self.snapshot_path(layer, dataset)
        try:
            stat = path.stat()
            metadata = pq.read_metadata(path)
        except FileNotFoundError:
            raise NotFoundError(layer, dataset)
        except (OSError, pa.ArrowException) as e:
            raise StorageIOError(f"Failed to inspect {layer}/{dataset}: {e}") from e

        return {
            'layer': layer,
            'dataset': dataset,
            'path': str(path),
            'num_rows': metadata.num_rows,
            'size_bytes': stat.st_size,
            'modified_at': datetime.fromtimestamp(stat.st_mtime).isoformat(),
            'columns': metadata.schema.to_arrow_schema().names,
        }

    def list_datasets(self, layer: str) -> List[str]:
        """List the datasets published in a layer."""
        layer_dir = self.root_dir / layer
        if not layer_dir.is_dir():
            return []
        return sorted(
            p.name[:-len(SNAPSHOT_SUFFIX)]
            for p in layer_dir.iterdir()
            if p.is_file() and p.name.endswith(SNAPSHOT_SUFFIX) and not p.name.startswith('.')
        )

    def _sync_directory(self, directory: Path) -> None:
        """Flush the directory entry of a rename to disk where supported."""
        if os.name != 'posix':
            return
        dir_fd = os.open(str(directory), os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
