# ========================
# src/pipeline/transformation.py
# ========================

"""
Data Transformation Module

Aggregates cleaned trade details into one investment summary row per client.
Totals are accumulated with decimal arithmetic so that they are exact and
identical across re-runs regardless of row order.
"""

import logging
from collections import defaultdict
from decimal import Context, Decimal
from typing import Any, Dict, List

from .errors import ConsistencyError
from .schema import TOTAL_SCALE

logger = logging.getLogger(__name__)

# Wide enough that no product or sum of in-range amounts is ever rounded
DECIMAL_CONTEXT = Context(prec=60)
TOTAL_QUANTUM = Decimal(1).scaleb(-TOTAL_SCALE)


def trade_value(row: Dict[str, Any]) -> Decimal:
    """Return quantity * unit_price for a cleaned row."""
    return DECIMAL_CONTEXT.multiply(row['quantity'], row['unit_price'])


class DataAggregator:
    """
    Groups cleaned trade details by client and computes total investment.
    """

    def __init__(self):
        """Initialize the data aggregator."""
        self._reset_aggregations()
        logger.info("DataAggregator initialized")

    def _reset_aggregations(self) -> None:
        """Reset all aggregation data structures."""
        self.client_totals = defaultdict(lambda: {
            'client_name': None,
            'region': None,
            'total_investment': Decimal(0),
            'trade_count': 0,
        })
        self.records_processed = 0
        self.grand_total = Decimal(0)

    def process_chunk(self, chunk: List[Dict[str, Any]]) -> None:
        """
        Fold a chunk of cleaned rows into the per-client totals.

        Args:
            chunk (list[dict]): Cleaned trade-detail rows

        Raises:
            ConsistencyError: If a client's name or region varies across rows
        """
        logger.debug(f"Processing chunk with {len(chunk)} records")
        for record in chunk:
            self._process_single_record(record)
            self.records_processed += 1

    def _process_single_record(self, record: Dict[str, Any]) -> None:
        client_id = record['client_id']
        totals = self.client_totals[client_id]

        if totals['trade_count'] == 0:
            totals['client_name'] = record['client_name']
            totals['region'] = record['region']
        elif (totals['client_name'], totals['region']) != (record['client_name'], record['region']):
            raise ConsistencyError(
                f"Client '{client_id}' has varying attributes in cleaned data: "
                f"({totals['client_name']}, {totals['region']}) vs "
                f"({record['client_name']}, {record['region']})"
            )

        value = trade_value(record)
        totals['total_investment'] = DECIMAL_CONTEXT.add(totals['total_investment'], value)
        totals['trade_count'] += 1
        self.grand_total = DECIMAL_CONTEXT.add(self.grand_total, value)

    def finalize_aggregations(self) -> List[Dict[str, Any]]:
        """
        Build the summary rows, one per client, sorted by client_id.

        Returns:
            list[dict]: Client investment summary rows
        """
        summary = []
        for client_id in sorted(self.client_totals):
            totals = self.client_totals[client_id]
            summary.append({
                'client_id': client_id,
                'client_name': totals['client_name'],
                'region': totals['region'],
                'total_investment': totals['total_investment'].quantize(TOTAL_QUANTUM, context=DECIMAL_CONTEXT),
                'trade_count': totals['trade_count'],
            })

        logger.info(f"Aggregation complete. {self.records_processed} trades across {len(summary)} clients")
        logger.info(f"Total investment across all clients: {self.grand_total}")
        return summary

    def aggregate(self, details: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Aggregate a full cleaned snapshot."""
        self._reset_aggregations()
        self.process_chunk(details)
        return self.finalize_aggregations()

    def get_aggregation_summary(self) -> Dict[str, Any]:
        """Get a summary of the aggregation."""
        return {
            'records_processed': self.records_processed,
            'clients': len(self.client_totals),
            'grand_total': str(self.grand_total),
        }


def verify_summary(summary: List[Dict[str, Any]], details: List[Dict[str, Any]]) -> None:
    """
    Recompute the totals from the cleaned rows and compare with the summary.

    Raises:
        ConsistencyError: If a client is missing, duplicated, or its total or
            trade count differs from the cleaned data.
    """
    expected: Dict[str, Decimal] = defaultdict(Decimal)
    counts: Dict[str, int] = defaultdict(int)
    for row in details:
        expected[row['client_id']] = DECIMAL_CONTEXT.add(expected[row['client_id']], trade_value(row))
        counts[row['client_id']] += 1

    seen = set()
    for row in summary:
        client_id = row['client_id']
        if client_id in seen:
            raise ConsistencyError(f"Client '{client_id}' appears more than once in the summary")
        seen.add(client_id)

        if client_id not in expected:
            raise ConsistencyError(f"Summary client '{client_id}' has no cleaned trades")
        if row['total_investment'] != expected[client_id]:
            raise ConsistencyError(
                f"Summary total for '{client_id}' is {row['total_investment']}, expected {expected[client_id]}"
            )
        if row['trade_count'] != counts[client_id]:
            raise ConsistencyError(f"Summary trade count for '{client_id}' does not match cleaned data")

    missing = set(expected) - seen
    if missing:
        raise ConsistencyError(f"Clients missing from summary: {sorted(missing)}")
