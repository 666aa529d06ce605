"""
Run summaries and report generation.
"""

from .collector import OperationStats, RunResultCollector, RunSummary
from .report import ReportGenerator, run_directory

__all__ = [
    'OperationStats',
    'RunResultCollector',
    'RunSummary',
    'ReportGenerator',
    'run_directory',
]
