"""
Gazetteer Builder - GeoNames Ingest and Place Resolution Pipeline

A pipeline for:
1. Fetching GeoNames reference tables, places, alternate names and postal codes
2. Resolving country, state and county names to canonical codes
3. Assigning timezones from boundary polygons with a proximity fallback
4. Ranking and deduplicating places into a DuckDB gazetteer

Usage:
    from gazetteer_builder import config, utils
    from gazetteer_builder.reference import ReferenceData
    from gazetteer_builder.resolver import process_place_names
    from gazetteer_builder.ingest import PlaceIngestor
    from gazetteer_builder.database import DatabaseManager, GazetteerQueries
"""

__version__ = "1.0.0"

# Make key modules available at package level
from . import config
from . import utils

# Database module (lazy import to avoid duckdb dependency for basic usage)
def get_database_manager(*args, **kwargs):
    """Get a DatabaseManager instance (lazy import)"""
    from .database import DatabaseManager
    return DatabaseManager(*args, **kwargs)

def get_gazetteer_queries(db_manager, reference=None):
    """Get a GazetteerQueries instance (lazy import)"""
    from .database import GazetteerQueries
    return GazetteerQueries(db_manager, reference)

__all__ = [
    "config",
    "utils",
    "__version__",
    "get_database_manager",
    "get_gazetteer_queries"
]
