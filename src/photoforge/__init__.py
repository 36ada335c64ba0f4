"""Photoforge - batch photo enhancement with credit accounting."""

__version__ = "0.3.0"

from photoforge.core.config import PhotoforgeConfig, config
from photoforge.core.coordinator import JobCoordinator, JobSummary, ProcessRequest

__all__ = [
    "JobCoordinator",
    "JobSummary",
    "PhotoforgeConfig",
    "ProcessRequest",
    "config",
]
