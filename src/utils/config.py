# ========================
# src/utils/config.py
# ========================

"""
Configuration Management

Centralized configuration for the trade pipeline with environment support.
"""

import os
import re
import json
from pathlib import Path
from typing import Dict, Any, Optional

TIME_OF_DAY_PATTERN = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


class Config:
    """
    Configuration class for the trade pipeline.
    Supports environment variables and default values.
    """

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration.

        Args:
            config_dict (dict): Optional configuration overrides
        """
        # Pipeline Definition
        self.PIPELINE_NAME = os.getenv('PIPELINE_NAME', 'client_investments')
        self.PIPELINE_DATA_ROOT = os.getenv('PIPELINE_DATA_ROOT', 'data/layers')
        self.TRADES_SOURCE = os.getenv('TRADES_SOURCE', 'data/incoming/trades.csv')
        self.CLIENTS_SOURCE = os.getenv('CLIENTS_SOURCE', 'data/incoming/clients.csv')

        # Ingestion Settings
        self.INGEST_CHUNK_SIZE = int(os.getenv('INGEST_CHUNK_SIZE', '1000'))
        self.PARSE_ERROR_SAMPLE_LIMIT = int(os.getenv('PARSE_ERROR_SAMPLE_LIMIT', '20'))

        # Run Retry Policy
        self.RUN_MAX_RETRIES = int(os.getenv('RUN_MAX_RETRIES', '2'))
        self.RUN_RETRY_BASE_DELAY_SECONDS = float(os.getenv('RUN_RETRY_BASE_DELAY_SECONDS', '5.0'))
        self.RUN_RETRY_MAX_DELAY_SECONDS = float(os.getenv('RUN_RETRY_MAX_DELAY_SECONDS', '300.0'))
        self.RUN_RETRY_JITTER = float(os.getenv('RUN_RETRY_JITTER', '0.3'))

        # Execution
        self.MAX_PARALLEL_PIPELINES = int(os.getenv('MAX_PARALLEL_PIPELINES', '3'))
        self.RUN_HISTORY_FILE = os.getenv('RUN_HISTORY_FILE', 'data/run_history.json')

        # Recurring Schedule (cron takes precedence over time of day over interval)
        self.SCHEDULE_INTERVAL_MINUTES = _optional_int('SCHEDULE_INTERVAL_MINUTES')
        self.SCHEDULE_TIME_OF_DAY = os.getenv('SCHEDULE_TIME_OF_DAY') or None
        self.SCHEDULE_CRON = os.getenv('SCHEDULE_CRON') or None
        self.SCHEDULE_TIMEZONE = os.getenv('SCHEDULE_TIMEZONE', 'UTC')

        # API Settings
        self.API_HOST = os.getenv('API_HOST', '0.0.0.0')
        self.API_PORT = int(os.getenv('API_PORT', '8000'))

        # Logging Configuration
        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
        self.LOG_DIR = os.getenv('LOG_DIR', 'logs')

        # Data Generation Settings
        self.SAMPLE_TRADES = int(os.getenv('SAMPLE_TRADES', '10000'))
        self.SAMPLE_CLIENTS = int(os.getenv('SAMPLE_CLIENTS', '200'))

        # Override with provided config
        if config_dict:
            self._update_from_dict(config_dict)

    def _update_from_dict(self, config_dict: Dict[str, Any]) -> None:
        """Update configuration from dictionary."""
        for key, value in config_dict.items():
            if hasattr(self, key.upper()):
                setattr(self, key.upper(), value)

    def get_sources(self) -> Dict[str, str]:
        """Source file per raw dataset."""
        return {
            'trades': self.TRADES_SOURCE,
            'clients': self.CLIENTS_SOURCE,
        }

    def get_data_paths(self) -> Dict[str, Path]:
        """Get all configured data paths as Path objects."""
        return {
            'layers_dir': Path(self.PIPELINE_DATA_ROOT),
            'incoming_dir': Path(self.TRADES_SOURCE).parent,
            'run_history_dir': Path(self.RUN_HISTORY_FILE).parent,
            'logs_dir': Path(self.LOG_DIR),
        }

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        for path_name, path in self.get_data_paths().items():
            if path_name.endswith('_dir'):
                path.mkdir(parents=True, exist_ok=True)

    def validate_config(self) -> Dict[str, bool]:
        """
        Validate configuration values.

        Returns:
            dict: Validation results for each setting
        """
        validations = {}

        validations['chunk_size'] = self.INGEST_CHUNK_SIZE > 0
        validations['max_retries'] = self.RUN_MAX_RETRIES >= 0
        validations['retry_delays'] = 0 <= self.RUN_RETRY_BASE_DELAY_SECONDS <= self.RUN_RETRY_MAX_DELAY_SECONDS
        validations['retry_jitter'] = 0.0 <= self.RUN_RETRY_JITTER < 1.0
        validations['parallel_pipelines'] = self.MAX_PARALLEL_PIPELINES > 0
        validations['api_port'] = 1000 <= self.API_PORT <= 65535
        validations['schedule_interval'] = (
            self.SCHEDULE_INTERVAL_MINUTES is None or self.SCHEDULE_INTERVAL_MINUTES > 0
        )
        validations['schedule_time_of_day'] = (
            self.SCHEDULE_TIME_OF_DAY is None or bool(TIME_OF_DAY_PATTERN.match(self.SCHEDULE_TIME_OF_DAY))
        )
        validations['schedule_cron'] = (
            self.SCHEDULE_CRON is None or len(self.SCHEDULE_CRON.split()) == 5
        )

        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        validations['log_level'] = self.LOG_LEVEL.upper() in valid_log_levels

        return validations

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            attr: getattr(self, attr)
            for attr in dir(self)
            if not attr.startswith('_') and not callable(getattr(self, attr))
        }

    def save_to_file(self, file_path: str) -> None:
        """Save configuration to JSON file."""
        with open(file_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, default=str)

    @classmethod
    def load_from_file(cls, file_path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(file_path, 'r') as f:
            config_dict = json.load(f)
        return cls(config_dict)

    def __str__(self) -> str:
        """String representation of configuration."""
        lines = ["Configuration Settings:"]
        config_dict = self.to_dict()
        for key, value in sorted(config_dict.items()):
            lines.append(f"  {key}: {value}")
        return "\n".join(lines)
