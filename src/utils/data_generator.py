# ========================
# src/utils/data_generator.py
# ========================

"""
Data Generation Utilities

Generates trade and client CSV sources with controlled error injection.
"""

import csv
import random
import logging
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

TRADE_HEADER = ['trade_id', 'client_id', 'instrument', 'quantity', 'unit_price', 'trade_date']
CLIENT_HEADER = ['client_id', 'client_name', 'region']


class DataGenerator:
    """
    Data generator for creating realistic trade and client datasets.
    """

    def __init__(self, seed: Optional[int] = None):
        """
        Initialize data generator.

        Args:
            seed (int): Random seed for reproducible data generation
        """
        self.random = random.Random(seed)
        self._initialize_data_patterns()
        logger.info(f"DataGenerator initialized with seed: {seed}")

    def _initialize_data_patterns(self) -> None:
        """Initialize instruments, regions and name fragments."""
        # Instruments with a realistic price level
        self.instruments = [
            {"symbol": "AAPL", "base_price": 150},
            {"symbol": "MSFT", "base_price": 250},
            {"symbol": "GOOG", "base_price": 1200},
            {"symbol": "AMZN", "base_price": 130},
            {"symbol": "NVDA", "base_price": 450},
            {"symbol": "TSLA", "base_price": 240},
            {"symbol": "JPM", "base_price": 145},
            {"symbol": "XOM", "base_price": 105},
        ]

        self.regions = [
            {"code": "NA", "weight": 0.4},
            {"code": "EU", "weight": 0.3},
            {"code": "Asia", "weight": 0.2},
            {"code": "LATAM", "weight": 0.1},
        ]

        self.name_prefixes = ["Alpha", "Beta", "Gamma", "Delta", "Sigma", "Omega", "Vertex", "Summit"]
        self.name_suffixes = ["Capital", "Partners", "Holdings", "Advisors", "Fund", "Trust"]

    def generate_clients(self, file_path: str, num_clients: int) -> Dict[str, Any]:
        """
        Write a client reference file.

        Args:
            file_path (str): Output CSV file path
            num_clients (int): Number of clients

        Returns:
            dict: Generation statistics including the generated client ids
        """
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        region_weights = [r["weight"] for r in self.regions]
        client_ids = []

        with open(file_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow(CLIENT_HEADER)
            for i in range(num_clients):
                client_id = str(100 + i)
                name = f"{self.random.choice(self.name_prefixes)} {self.random.choice(self.name_suffixes)} {i}"
                region = self.random.choices(self.regions, weights=region_weights)[0]["code"]
                writer.writerow([client_id, name, region])
                client_ids.append(client_id)

        logger.info(f"Generated {num_clients:,} clients: {file_path}")
        return {'total_clients': num_clients, 'client_ids': client_ids}

    def generate_trades(self,
                        file_path: str,
                        num_rows: int,
                        client_ids: List[str],
                        error_rate: float = 0.1,
                        start_date: Optional[date] = None) -> Dict[str, Any]:
        """
        Generate a trade file with controlled error injection.

        Args:
            file_path (str): Output CSV file path
            num_rows (int): Number of trades
            client_ids (list): Client ids trades may reference
            error_rate (float): Fraction of trades with an injected error
            start_date (date): First trade date

        Returns:
            dict: Generation statistics
        """
        logger.info(f"Generating {num_rows:,} trades with {error_rate:.1%} error rate...")

        if start_date is None:
            start_date = date(2024, 1, 1)

        stats = {
            'total_rows': num_rows,
            'error_rate': error_rate,
            'records_with_errors': 0,
            'error_types': {}
        }

        Path(file_path).parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow(TRADE_HEADER)

            for i in range(num_rows):
                writer.writerow(self._generate_trade(i, client_ids, start_date, error_rate, stats))

                if (i + 1) % 10000 == 0:
                    logger.debug(f"Generated {i + 1:,} trades")

        stats['error_rate_actual'] = stats['records_with_errors'] / num_rows if num_rows else 0.0
        logger.info(f"Trades generated: {file_path}")
        logger.info(f"Error breakdown: {stats['error_types']}")
        return stats

    def _generate_trade(self,
                        index: int,
                        client_ids: List[str],
                        start_date: date,
                        error_rate: float,
                        stats: Dict[str, Any]) -> List[Any]:
        """Generate a single trade row, possibly with an error."""
        instrument = self.random.choice(self.instruments)
        row = [
            str(index + 1),
            self.random.choice(client_ids),
            instrument["symbol"],
            str(self.random.randint(1, 500)),
            f"{instrument['base_price'] * self.random.uniform(0.8, 1.2):.2f}",
            (start_date + timedelta(days=self.random.randint(0, 364))).isoformat(),
        ]

        if self.random.random() < error_rate:
            stats['records_with_errors'] += 1
            row = self._inject_error(row, stats)

        return row

    def _inject_error(self, row: List[Any], stats: Dict[str, Any]) -> List[Any]:
        """Inject one kind of error into a trade row."""
        error_type = self.random.choice([
            'missing_price', 'missing_quantity', 'unknown_client',
            'wrong_column_count', 'malformed_price', 'negative_quantity'
        ])

        if error_type == 'missing_price':
            row[4] = ''
        elif error_type == 'missing_quantity':
            row[3] = ''
        elif error_type == 'unknown_client':
            row[1] = '999999'
        elif error_type == 'wrong_column_count':
            row = row[:-1]
        elif error_type == 'malformed_price':
            row[4] = f"${row[4]}"
        elif error_type == 'negative_quantity':
            row[3] = f"-{row[3]}"

        stats['error_types'][error_type] = stats['error_types'].get(error_type, 0) + 1
        return row

    def generate_dataset(self,
                         trades_path: str,
                         clients_path: str,
                         num_trades: int,
                         num_clients: int,
                         error_rate: float = 0.1) -> Dict[str, Any]:
        """Generate matching client and trade sources."""
        client_stats = self.generate_clients(clients_path, num_clients)
        trade_stats = self.generate_trades(trades_path, num_trades, client_stats['client_ids'], error_rate)
        return {
            'total_clients': client_stats['total_clients'],
            **trade_stats,
        }
