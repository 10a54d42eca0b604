# ========================
# src/pipeline/query.py
# ========================

"""
Summary Query Module

Read-only access to the client investment summary. Queries never trigger a
pipeline run; they return whatever snapshot was last published.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .schema import CLIENT_INVESTMENTS, SUMMARY_LAYER
from .storage import LayerStore

logger = logging.getLogger(__name__)


class ClientInvestmentQuery:
    """Queries the summary layer of one pipeline."""

    def __init__(self, store: LayerStore):
        self.store = store

    def query_client_investments(self,
                                 client_id: Optional[str] = None,
                                 region: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Return summary rows, optionally filtered.

        Args:
            client_id (str): Only this client
            region (str): Only clients in this region (case-insensitive)

        Returns:
            list[dict]: Summary rows sorted by client_id

        Raises:
            NotFoundError: If the summary layer has never been published
        """
        return self.query_with_snapshot(client_id=client_id, region=region)[0]

    def query_with_snapshot(self,
                            client_id: Optional[str] = None,
                            region: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """
        Like query_client_investments, but also describe the snapshot the
        rows were read from. Both come from a single open of the file, so a
        concurrent publish cannot pair new metadata with old rows.
        """
        rows, info = self.store.read_snapshot(SUMMARY_LAYER, CLIENT_INVESTMENTS)

        if client_id is not None:
            rows = [r for r in rows if r['client_id'] == client_id]
        if region is not None:
            wanted = region.casefold()
            rows = [r for r in rows if r['region'].casefold() == wanted]

        logger.debug(f"Client investment query (client_id={client_id}, region={region}) returned {len(rows)} rows")
        return sorted(rows, key=lambda r: r['client_id']), info

    def snapshot_info(self) -> Dict[str, Any]:
        """Describe the published summary snapshot."""
        return self.store.snapshot_info(SUMMARY_LAYER, CLIENT_INVESTMENTS)
