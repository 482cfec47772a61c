"""
Storage layer - SQLite catalog of sources, jobs, funders and grants.
"""

from .db import Database
from .sources import SourceStore
from .jobs import JobStore
from .grants import GrantStore

__all__ = ["Database", "SourceStore", "JobStore", "GrantStore"]
