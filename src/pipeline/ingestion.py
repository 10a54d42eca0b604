# ========================
# src/pipeline/ingestion.py
# ========================

"""
Data Ingestion Module

Reads delimited source files in chunks, types each row per its dataset
schema and publishes the result to the raw layer. Rows that are structurally
broken are logged and skipped; everything else passes through unchanged.
"""

import csv
import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import pyarrow as pa

from .errors import ParseError, SchemaError
from .schema import RAW_LAYER, SOURCE_SCHEMAS, convert_value, resolve_header
from .storage import LayerStore

logger = logging.getLogger(__name__)


class CSVReader:
    """
    A memory-efficient CSV reader that reads a file in chunks.
    Rows are yielded with their physical line numbers so that rejected rows
    can be reported precisely.
    """

    def __init__(self, file_path: str, delimiter: str = ','):
        """
        Initialize the CSV reader.

        Args:
            file_path (str): Path to the CSV file to read
            delimiter (str): Field delimiter
        """
        self.file_path = file_path
        self.delimiter = delimiter
        self.header: List[str] = []
        logger.info(f"Initialized CSVReader for file: {file_path}")

    def read_in_chunks(self, chunk_size: int) -> Iterator[List[Tuple[int, Union[List[str], ParseError]]]]:
        """
        A generator that yields lists of (line_number, fields) per chunk.

        Undecodable bytes are kept as surrogate escapes and left for
        parse_row to reject. A line the csv module cannot split is yielded
        as a ParseError in place of its fields so the rest of the file is
        still read.

        Args:
            chunk_size (int): The number of rows to yield per chunk.

        Yields:
            list[tuple]: Line number and raw field values (or the ParseError) for each row.
        """
        try:
            with open(self.file_path, 'r', newline='', encoding='utf-8-sig', errors='surrogateescape') as f:
                reader = csv.reader(f, delimiter=self.delimiter)
                try:
                    self.header = next(reader, [])
                except csv.Error as e:
                    raise SchemaError(f"Unreadable header in '{self.file_path}': {e}")
                logger.info(f"CSV header: {self.header}")

                chunk = []
                row_count = 0

                while True:
                    try:
                        row = next(reader)
                    except StopIteration:
                        break
                    except csv.Error as e:
                        chunk.append((reader.line_num, ParseError(f"unreadable row: {e}", reader.line_num)))
                        row_count += 1
                    else:
                        if not row:
                            continue
                        chunk.append((reader.line_num, row))
                        row_count += 1

                    if len(chunk) == chunk_size:
                        logger.debug(f"Yielding chunk with {len(chunk)} rows")
                        yield chunk
                        chunk = []

                if chunk:
                    logger.debug(f"Yielding final chunk with {len(chunk)} rows")
                    yield chunk

                logger.info(f"Total rows read: {row_count}")

        except FileNotFoundError:
            logger.error(f"File '{self.file_path}' was not found")
            raise
        except csv.Error as e:
            logger.error(f"Error reading CSV file: {e}")
            raise


def parse_row(line_number: int,
              fields: List[str],
              header_width: int,
              positions: Dict[str, int],
              schema: pa.Schema) -> Dict[str, Any]:
    """
    Type one raw row according to the dataset schema.

    Args:
        line_number (int): Line of the row in its source
        fields (list): Raw field values
        header_width (int): Number of columns declared by the header
        positions (dict): Schema column -> field index
        schema (pa.Schema): Dataset schema

    Returns:
        dict: Typed record

    Raises:
        ParseError: If the column count is wrong or a value cannot be typed
    """
    if len(fields) != header_width:
        raise ParseError(
            f"expected {header_width} columns, found {len(fields)}", line_number
        )

    for position, raw in enumerate(fields):
        try:
            raw.encode("utf-8")
        except UnicodeEncodeError:
            raise ParseError(f"column {position + 1} is not valid UTF-8", line_number)

    record = {}
    for field in schema:
        raw = fields[positions[field.name]]
        try:
            record[field.name] = convert_value(field, raw)
        except ValueError as e:
            raise ParseError(f"column '{field.name}': {e}", line_number) from e
    return record


class StageIngestor:
    """
    Raw-layer stage: parses external sources and publishes one raw snapshot
    per source dataset.
    """

    def __init__(self, store: LayerStore, chunk_size: int = 1000, error_sample_limit: int = 20):
        """
        Initialize the ingestor.

        Args:
            store (LayerStore): Layer store to publish into
            chunk_size (int): Rows read per chunk
            error_sample_limit (int): Rejected rows kept in the statistics
        """
        self.store = store
        self.chunk_size = chunk_size
        self.error_sample_limit = error_sample_limit
        logger.info(f"StageIngestor initialized with chunk_size={chunk_size}")

    def read_source(self, dataset: str, file_path: str) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """
        Parse a source file into typed records.

        Args:
            dataset (str): Dataset name, selects the schema
            file_path (str): Delimited source file

        Returns:
            tuple: (records, statistics)

        Raises:
            SchemaError: If the header lacks required columns or cannot be read
        """
        if dataset not in SOURCE_SCHEMAS:
            raise SchemaError(f"No source schema for dataset '{dataset}'")
        schema = SOURCE_SCHEMAS[dataset]

        reader = CSVReader(file_path)
        records: List[Dict[str, Any]] = []
        stats = {
            'source': file_path,
            'rows_read': 0,
            'rows_rejected': 0,
            'rejected_samples': [],
        }
        positions: Optional[Dict[str, int]] = None

        for chunk in reader.read_in_chunks(self.chunk_size):
            if positions is None:
                positions = self._resolve_positions(dataset, reader.header, schema)

            for line_number, fields in chunk:
                stats['rows_read'] += 1
                if isinstance(fields, ParseError):
                    self._record_rejection(stats, fields)
                    continue
                try:
                    records.append(
                        parse_row(line_number, fields, len(reader.header), positions, schema)
                    )
                except ParseError as e:
                    self._record_rejection(stats, e)

        if positions is None:
            # No data rows; the header still has to be valid.
            self._resolve_positions(dataset, reader.header, schema)

        stats['rows_written'] = len(records)
        if stats['rows_rejected']:
            logger.warning(
                f"{dataset}: rejected {stats['rows_rejected']} of {stats['rows_read']} rows from {file_path}"
            )
        return records, stats

    def ingest(self, sources: Dict[str, str], cancel_check=None) -> Dict[str, Dict[str, Any]]:
        """
        Parse every source and publish it to the raw layer.

        All sources are parsed before anything is published and the raw
        snapshots are then published together, so a broken header or a
        failed write leaves every raw snapshot untouched.

        Args:
            sources (dict): Dataset name -> source file path
            cancel_check (callable): Called before publishing; raises to abort

        Returns:
            dict: Per-dataset ingestion statistics
        """
        parsed = {}
        for dataset, file_path in sorted(sources.items()):
            logger.info(f"Ingesting '{dataset}' from {file_path}")
            parsed[dataset] = self.read_source(dataset, file_path)

        if cancel_check is not None:
            cancel_check()

        published = self.store.write_many(RAW_LAYER, [
            (dataset, records, SOURCE_SCHEMAS[dataset])
            for dataset, (records, _) in parsed.items()
        ])

        results = {}
        for dataset, (_, stats) in parsed.items():
            stats['snapshot'] = published[dataset]
            results[dataset] = stats
        return results

    def _resolve_positions(self, dataset: str, header: List[str], schema: pa.Schema) -> Dict[str, int]:
        positions, missing = resolve_header(header, schema)
        if missing:
            raise SchemaError(f"Source for '{dataset}' is missing columns: {missing}")
        return positions

    def _record_rejection(self, stats: Dict[str, Any], error: ParseError) -> None:
        stats['rows_rejected'] += 1
        logger.warning(f"Rejected row: {error}")
        if len(stats['rejected_samples']) < self.error_sample_limit:
            stats['rejected_samples'].append(str(error))
