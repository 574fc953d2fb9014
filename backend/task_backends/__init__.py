"""
Task backend implementations consumed by the TaskDispatcher.
"""

from .http import HttpTaskBackend
from .local import LocalTaskBackend

__all__ = ['HttpTaskBackend', 'LocalTaskBackend']
