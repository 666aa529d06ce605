"""
Settings and logging configuration.
"""

from .logging import bind_run_id, get_run_id, setup_structured_logging
from .settings import EnvironmentManager, HarnessSettings

__all__ = [
    'bind_run_id',
    'get_run_id',
    'setup_structured_logging',
    'EnvironmentManager',
    'HarnessSettings',
]
