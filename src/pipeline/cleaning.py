# ========================
# src/pipeline/cleaning.py
# ========================

"""
Data Cleaning Module

Builds the cleaned trade-detail snapshot from the raw trades and clients:
invalid trades are dropped, the remaining trades are inner-joined to their
clients, and the result is checked against the cleaned-layer invariants.
"""

import logging
from typing import Any, Dict, List, Optional

from .errors import ConsistencyError
from .schema import CLIENT_REQUIRED_FIELDS, TRADE_REQUIRED_FIELDS

logger = logging.getLogger(__name__)


class DataCleaner:
    """
    Applies the cleaning rules to raw trades and joins them to clients.
    The result depends only on the two input snapshots.
    """

    def __init__(self):
        """Initialize the data cleaner."""
        self._reset_statistics()
        logger.info("DataCleaner initialized")

    def _reset_statistics(self) -> None:
        self.records_processed = 0
        self.dropped_missing_fields = 0
        self.dropped_non_positive = 0
        self.dropped_unknown_client = 0
        self.clients_dropped = 0
        self.clients_deduplicated = 0
        self.records_cleaned = 0

    def clean(self, trades: List[Dict[str, Any]], clients: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Produce cleaned trade-detail rows.

        Args:
            trades (list[dict]): Raw trade snapshot
            clients (list[dict]): Raw client snapshot

        Returns:
            list[dict]: Trade rows carrying client_name and region, sorted by trade_id

        Raises:
            ConsistencyError: On conflicting client attributes or duplicate trade ids
        """
        self._reset_statistics()
        client_index = self.build_client_index(clients)

        cleaned = []
        for trade in trades:
            self.records_processed += 1

            valid_trade = self.clean_record(trade)
            if valid_trade is None:
                continue

            client = client_index.get(valid_trade['client_id'])
            if client is None:
                self.dropped_unknown_client += 1
                logger.debug(f"Trade {valid_trade['trade_id']} dropped: unknown client {valid_trade['client_id']}")
                continue

            detail = dict(valid_trade)
            detail['client_name'] = client['client_name']
            detail['region'] = client['region']
            cleaned.append(detail)

        cleaned.sort(key=lambda r: r['trade_id'])
        self._check_unique_trade_ids(cleaned)
        self.records_cleaned = len(cleaned)

        logger.info(
            f"Cleaning complete: {self.records_cleaned}/{self.records_processed} trades kept "
            f"(missing fields: {self.dropped_missing_fields}, "
            f"non-positive amounts: {self.dropped_non_positive}, "
            f"unknown clients: {self.dropped_unknown_client})"
        )
        return cleaned

    def clean_record(self, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Apply the row-level rules to a single trade.

        Returns:
            dict or None: A copy of the trade, or None if it has to be dropped.
        """
        if any(record.get(field) is None for field in TRADE_REQUIRED_FIELDS):
            self.dropped_missing_fields += 1
            logger.debug(f"Trade dropped due to missing required fields: {record}")
            return None

        if record['quantity'] <= 0 or record['unit_price'] <= 0:
            self.dropped_non_positive += 1
            logger.debug(f"Trade dropped due to non-positive quantity or price: {record}")
            return None

        return {field: record[field] for field in TRADE_REQUIRED_FIELDS}

    def build_client_index(self, clients: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        """
        Index the client snapshot by client_id.

        Clients with missing attributes are dropped. Exact duplicates are
        collapsed; a client_id that appears with different attributes is
        rejected, since there is no single value to attribute trades to.

        Raises:
            ConsistencyError: If a client_id has conflicting attributes
        """
        index: Dict[str, Dict[str, Any]] = {}
        for client in clients:
            if any(client.get(field) is None for field in CLIENT_REQUIRED_FIELDS):
                self.clients_dropped += 1
                logger.debug(f"Client dropped due to missing fields: {client}")
                continue

            entry = {field: client[field] for field in CLIENT_REQUIRED_FIELDS}
            existing = index.get(entry['client_id'])
            if existing is None:
                index[entry['client_id']] = entry
            elif existing == entry:
                self.clients_deduplicated += 1
            else:
                raise ConsistencyError(
                    f"Client '{entry['client_id']}' has conflicting attributes: "
                    f"{existing} vs {entry}"
                )
        return index

    def _check_unique_trade_ids(self, cleaned: List[Dict[str, Any]]) -> None:
        # Rows are sorted by trade_id, so duplicates are adjacent.
        for previous, current in zip(cleaned, cleaned[1:]):
            if previous['trade_id'] == current['trade_id']:
                raise ConsistencyError(f"Duplicate trade_id '{current['trade_id']}' in raw trades")

    def get_statistics(self) -> Dict[str, Any]:
        """Get cleaning statistics."""
        records_dropped = self.records_processed - self.records_cleaned
        return {
            'records_processed': self.records_processed,
            'records_cleaned': self.records_cleaned,
            'records_dropped': records_dropped,
            'dropped_missing_fields': self.dropped_missing_fields,
            'dropped_non_positive': self.dropped_non_positive,
            'dropped_unknown_client': self.dropped_unknown_client,
            'clients_dropped': self.clients_dropped,
            'clients_deduplicated': self.clients_deduplicated,
            'success_rate': self.records_cleaned / self.records_processed * 100 if self.records_processed > 0 else 0
        }


def verify_cleaned(details: List[Dict[str, Any]], clients: List[Dict[str, Any]]) -> None:
    """
    Check cleaned rows against the cleaned-layer invariants.

    Raises:
        ConsistencyError: If a row has a null required field, references an
            unknown client, or carries client attributes that differ from the
            client snapshot.
    """
    # Clients with a null attribute never join, so they cannot contradict a row.
    client_index = {
        c['client_id']: c for c in clients
        if all(c.get(field) is not None for field in CLIENT_REQUIRED_FIELDS)
    }
    for row in details:
        missing = [f for f in TRADE_REQUIRED_FIELDS + ('client_name', 'region') if row.get(f) is None]
        if missing:
            raise ConsistencyError(f"Cleaned trade {row.get('trade_id')} has null fields: {missing}")

        client = client_index.get(row['client_id'])
        if client is None:
            raise ConsistencyError(f"Cleaned trade {row['trade_id']} references unknown client {row['client_id']}")

        if client.get('client_name') != row['client_name'] or client.get('region') != row['region']:
            raise ConsistencyError(f"Cleaned trade {row['trade_id']} carries stale client attributes")
