"""
Database module for the Gazetteer Builder
Provides DuckDB-based storage for reference tables, places, alternate names and postal codes
"""
from .manager import DatabaseManager
from .models import CanonicalPlace, AlternateName, PostalAssignment, OwnerType
from .queries import GazetteerQueries

__all__ = [
    "DatabaseManager",
    "CanonicalPlace",
    "AlternateName",
    "PostalAssignment",
    "OwnerType",
    "GazetteerQueries",
]
