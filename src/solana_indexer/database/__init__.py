"""
Database access for the application store and user-owned target databases.
"""

from .connection import DatabaseConnection, get_database_connection, health_check
from .target_pool import TargetPool, ProbeResult, build_target_url

__all__ = [
    "DatabaseConnection",
    "get_database_connection",
    "health_check",
    "TargetPool",
    "ProbeResult",
    "build_target_url",
]
