"""
Pre-built lookup and report queries for the gazetteer database
Used offline to check a rebuild: counts, name lookups, unresolved timezones
"""
import logging
from typing import Optional, List, Dict, Any

import pandas as pd

from ..resolver import close_match_for_state
from ..transformers.names import simplify

logger = logging.getLogger(__name__)


class GazetteerQueries:
    """
    Collection of report queries over a built gazetteer
    """

    def __init__(self, db_manager, reference=None):
        """
        Initialize with database manager

        Args:
            db_manager: DatabaseManager instance
            reference: Optional ReferenceData for state/country hints
        """
        self.db = db_manager
        self.conn = db_manager.connection
        self.reference = reference

    # =========================
    # Overview Statistics
    # =========================
    def get_overview_stats(self) -> Dict[str, Any]:
        """Get high-level statistics about the gazetteer"""
        row = self.conn.execute("""
            SELECT
                COUNT(*) AS total_places,
                COUNT(DISTINCT country) AS total_countries,
                COUNT(CASE WHEN timezone IS NULL THEN 1 END) AS missing_timezone,
                COUNT(CASE WHEN phonetic2 IS NOT NULL THEN 1 END) AS with_secondary_phonetic
            FROM places
        """).fetchone()

        source_df = self.get_source_breakdown()

        return {
            "total_places": int(row[0]),
            "total_countries": int(row[1]),
            "missing_timezone": int(row[2]),
            "with_secondary_phonetic": int(row[3]),
            "tables": self.db.get_table_stats(),
            "sources": source_df.to_dict("records"),
        }

    def get_source_breakdown(self) -> pd.DataFrame:
        """Place counts by source tag (authoritative vs synthetic)"""
        return self.conn.execute("""
            SELECT source, COUNT(*) AS place_count
            FROM places
            GROUP BY source
            ORDER BY source
        """).fetchdf()

    def get_country_counts(self, limit: int = 20) -> pd.DataFrame:
        return self.conn.execute("""
            SELECT country, COUNT(*) AS place_count, MAX(rank) AS top_rank
            FROM places
            GROUP BY country
            ORDER BY place_count DESC, country
            LIMIT ?
        """, [limit]).fetchdf()

    # =========================
    # Lookups
    # =========================
    def search_places(
        self,
        name: str,
        state_hint: Optional[str] = None,
        limit: int = 20
    ) -> List[Dict[str, Any]]:
        """
        Places whose key starts with the simplified name, best rank first

        Args:
            name: Name or name prefix ("spring" finds Springfield)
            state_hint: Optional state/country prefix ("mo", "Miss", "Eng")
            limit: Maximum results

        Returns:
            List of place dicts
        """
        prefix = simplify(name)
        if not prefix:
            return []

        cursor = self.conn.execute("""
            SELECT id, name, admin2, admin1, country, latitude, longitude,
                   population, timezone, feature_code, rank, source
            FROM places
            WHERE key_name LIKE ? || '%'
            ORDER BY rank DESC, population DESC, id
        """, [prefix])
        columns = [d[0] for d in cursor.description]

        results = []
        for row in cursor.fetchall():
            place = dict(zip(columns, row))
            if state_hint and self.reference is not None and not close_match_for_state(
                self.reference, state_hint, place["admin1"] or "", place["country"]
            ):
                continue
            results.append(place)
            if len(results) >= limit:
                break

        return results

    def search_alternate_names(self, name: str, limit: int = 20) -> pd.DataFrame:
        """Alternate names whose key starts with the simplified name"""
        return self.conn.execute("""
            SELECT a.name, a.lang, a.owner_type, a.owner_id, p.name AS place_name, p.country
            FROM alt_names a
            LEFT JOIN places p ON a.owner_type = 'P' AND a.owner_id = p.id
            WHERE a.key_name LIKE ? || '%'
            ORDER BY a.is_preferred DESC, a.id
            LIMIT ?
        """, [simplify(name), limit]).fetchdf()

    # =========================
    # Quality Reports
    # =========================
    def get_unresolved_timezones(self, limit: Optional[int] = None) -> pd.DataFrame:
        """Places still lacking a timezone after the fallback chain"""
        sql = """
            SELECT id, name, admin1, country, latitude, longitude, source
            FROM places
            WHERE timezone IS NULL
            ORDER BY country, name
        """
        if limit:
            sql += f" LIMIT {int(limit)}"

        return self.conn.execute(sql).fetchdf()

    def get_synthetic_places(self) -> pd.DataFrame:
        from .. import config

        return self.conn.execute("""
            SELECT p.id, p.name, p.admin1, p.country, COUNT(z.postal_code) AS postal_codes
            FROM places p
            LEFT JOIN postal_codes z ON z.place_id = p.id
            WHERE p.source = ?
            GROUP BY p.id, p.name, p.admin1, p.country
            ORDER BY p.country, p.name
        """, [config.SYNTHETIC_SOURCE]).fetchdf()
