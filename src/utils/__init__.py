# ========================
# src/utils/__init__.py
# ========================

"""
Utilities Package

Common utilities and helper functions for the trade pipeline.
"""

from .config import Config
from .performance_monitor import monitor_performance, PerformanceMonitor, SystemResourceMonitor
from .logging_setup import setup_logging
from .data_generator import DataGenerator
from .run_metadata import RunHistory

__all__ = [
    'Config',
    'monitor_performance',
    'PerformanceMonitor',
    'SystemResourceMonitor',
    'setup_logging',
    'DataGenerator',
    'RunHistory'
]
