"""
Database Manager for the Gazetteer Builder
Handles DuckDB connections, idempotent upserts, and proximity lookups
"""
import logging
import json
from pathlib import Path
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable, Tuple, Union
from contextlib import contextmanager

import duckdb
import pandas as pd

from .models import (
    AlternateName, CanonicalPlace, PostalAssignment,
    SCHEMA_SQL, COUNTRY_COLUMNS, ADMIN_COLUMNS, PLACE_COLUMNS, ALT_NAME_COLUMNS,
    ProcessingStatus
)

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


class DatabaseManager:
    """
    Manages the DuckDB gazetteer database

    Features:
    - Schema management
    - Bulk upserts for reference tables (countries, admin1, admin2)
    - Per-record upserts for places, alternate names, postal codes
    - Bounding-box proximity queries
    - Processing run tracking
    """

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        read_only: bool = False
    ):
        """
        Initialize database manager

        Args:
            db_path: Path to DuckDB file, or ":memory:".
                     Default location is config.DB_PATH
            read_only: Open database in read-only mode
        """
        if db_path is None:
            from .. import config
            db_path = config.DB_PATH

        self.db_path = None if str(db_path) == MEMORY else Path(db_path)
        self.read_only = read_only
        self._connection: Optional[duckdb.DuckDBPyConnection] = None

        # Ensure directory exists
        if self.db_path:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"DatabaseManager initialized: {self.db_path or 'in-memory'}")

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create database connection"""
        if self._connection is None:
            if self.db_path:
                self._connection = duckdb.connect(
                    str(self.db_path),
                    read_only=self.read_only
                )
            else:
                self._connection = duckdb.connect(MEMORY)
        return self._connection

    def close(self):
        """Close database connection"""
        if self._connection:
            self._connection.close()
            self._connection = None
            logger.debug("Database connection closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @contextmanager
    def transaction(self):
        """Context manager for explicit transactions"""
        self.connection.execute("BEGIN TRANSACTION")
        try:
            yield self.connection
            self.connection.execute("COMMIT")
        except Exception:
            self.connection.execute("ROLLBACK")
            raise

    def _fetch_dict(self, sql: str, params: Optional[List] = None) -> Optional[Dict[str, Any]]:
        cursor = self.connection.execute(sql, params or [])
        row = cursor.fetchone()
        if row is None:
            return None
        columns = [d[0] for d in cursor.description]
        return dict(zip(columns, row))

    # =========================
    # Schema Management
    # =========================
    def initialize_schema(self):
        """Create database schema if not exists"""
        logger.info("Initializing database schema...")

        statements = [s.strip() for s in SCHEMA_SQL.split(";") if s.strip()]

        for stmt in statements:
            self.connection.execute(stmt)

        logger.info("Database schema initialized")

    def get_table_stats(self) -> Dict[str, int]:
        """Get row counts for all tables"""
        tables = ["countries", "admin1", "admin2", "places", "alt_names", "postal_codes", "processing_runs"]
        stats = {}

        for table in tables:
            try:
                result = self.connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
                stats[table] = result[0] if result else 0
            except duckdb.CatalogException:
                stats[table] = 0

        return stats

    # =========================
    # Reference Operations
    # =========================
    def _replace_bulk(self, table: str, df: pd.DataFrame, columns: List[str]) -> int:
        if df.empty:
            return 0

        df_insert = df[columns].drop_duplicates(subset=["external_id"], keep="last")
        cols_str = ", ".join(columns)
        view = f"df_{table}"

        with self.transaction() as conn:
            conn.register(view, df_insert)
            try:
                conn.execute(f"""
                    INSERT OR REPLACE INTO {table} ({cols_str})
                    SELECT {cols_str} FROM {view}
                """)
            finally:
                conn.unregister(view)

        logger.info(f"Upserted {len(df_insert)} rows into {table}")
        return len(df_insert)

    def upsert_countries(self, countries: Iterable) -> int:
        """Bulk upsert reference.Country values"""
        rows = [
            {
                "external_id": c.external_id, "name": c.name, "key_name": c.key,
                "iso2": c.iso2, "iso3": c.iso3, "old_code2": c.old_code2,
                "postal_regex": c.postal_regex, "source": c.source,
            }
            for c in countries
        ]
        return self._replace_bulk("countries", pd.DataFrame(rows, columns=COUNTRY_COLUMNS), COUNTRY_COLUMNS)

    def upsert_admin(self, table: str, entities: Iterable) -> int:
        """Bulk upsert reference.ReferenceEntity values into admin1 or admin2"""
        if table not in ("admin1", "admin2"):
            raise ValueError(f"Not an admin table: {table}")

        rows = [
            {
                "external_id": e.external_id, "name": e.name, "key_name": e.key,
                "code": e.code, "source": e.source,
            }
            for e in entities
        ]
        return self._replace_bulk(table, pd.DataFrame(rows, columns=ADMIN_COLUMNS), ADMIN_COLUMNS)

    def get_owner_keys(self, table: str) -> List[Tuple[int, int, str]]:
        """
        (external_id, owner_id, key_name) for every row of an owner table

        Places report their generated id as owner_id; reference tables are
        keyed by their external id.
        """
        if table == "places":
            sql = "SELECT external_id, id, key_name FROM places WHERE external_id IS NOT NULL"
        elif table in ("admin2", "admin1", "countries"):
            sql = f"SELECT external_id, external_id, key_name FROM {table}"
        else:
            raise ValueError(f"Not an owner table: {table}")

        return self.connection.execute(sql).fetchall()

    # =========================
    # Place Operations
    # =========================
    def upsert_place(self, place: CanonicalPlace) -> int:
        """
        Insert a place, or refresh the mutable fields of the row with the
        same (source, external_id). Returns the place id.
        """
        data = place.to_dict()
        cols_str = ", ".join(PLACE_COLUMNS)
        placeholders = ", ".join("?" for _ in PLACE_COLUMNS)

        sql = f"""
        INSERT INTO places (id, {cols_str})
        VALUES (nextval('seq_places_id'), {placeholders})
        ON CONFLICT (source, external_id) DO UPDATE SET
            population = EXCLUDED.population,
            rank = EXCLUDED.rank,
            updated_at = now()
        RETURNING id
        """

        result = self.connection.execute(sql, [data[c] for c in PLACE_COLUMNS]).fetchone()

        if result:
            return result[0]

        existing = self.find_place_by_external_id(place.source, place.external_id)
        return existing["id"] if existing else None

    def refresh_place(
        self,
        place_id: int,
        population: Optional[int] = None,
        rank: Optional[int] = None,
        timezone: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None
    ):
        """Update the mutable fields of an existing place; None leaves a field as is"""
        updates = []
        params = []

        for column, value in (
            ("population", population),
            ("rank", rank),
            ("timezone", timezone),
            ("latitude", latitude),
            ("longitude", longitude),
        ):
            if value is not None:
                updates.append(f"{column} = ?")
                params.append(value)

        if not updates:
            return

        updates.append("updated_at = now()")
        sql = f"UPDATE places SET {', '.join(updates)} WHERE id = ?"
        params.append(place_id)

        self.connection.execute(sql, params)

    def get_place(self, place_id: int) -> Optional[Dict[str, Any]]:
        """Get a place by ID"""
        return self._fetch_dict("SELECT * FROM places WHERE id = ?", [place_id])

    def find_place_by_external_id(self, source: str, external_id: Optional[int]) -> Optional[Dict[str, Any]]:
        if external_id is None:
            return None
        return self._fetch_dict(
            "SELECT * FROM places WHERE source = ? AND external_id = ?",
            [source, external_id]
        )

    def find_duplicate_place(
        self,
        key: str,
        country: str,
        latitude: float,
        longitude: float,
        box_degrees: float,
        admin1: Optional[str] = None,
        match_admin1: bool = True
    ) -> Optional[Dict[str, Any]]:
        """
        Closest place with the same key and country (and admin1) inside
        a ±box_degrees box
        """
        conditions = [
            "key_name = ?",
            "country = ?",
            "latitude BETWEEN ? AND ?",
            "longitude BETWEEN ? AND ?",
        ]
        params = [
            key, country,
            latitude - box_degrees, latitude + box_degrees,
            longitude - box_degrees, longitude + box_degrees,
        ]

        if match_admin1:
            conditions.append("admin1 IS NOT DISTINCT FROM ?")
            params.append(admin1)

        sql = f"""
        SELECT * FROM places
        WHERE {' AND '.join(conditions)}
        ORDER BY (latitude - ?) * (latitude - ?) + (longitude - ?) * (longitude - ?), id
        LIMIT 1
        """
        params.extend([latitude, latitude, longitude, longitude])

        return self._fetch_dict(sql, params)

    def find_timezones_near(self, latitude: float, longitude: float, delta: float) -> List[Tuple[str, str]]:
        """Distinct (timezone, country) of places inside a ±delta box"""
        return self.connection.execute("""
            SELECT DISTINCT timezone, country FROM places
            WHERE timezone IS NOT NULL
              AND latitude BETWEEN ? AND ?
              AND longitude BETWEEN ? AND ?
        """, [latitude - delta, latitude + delta, longitude - delta, longitude + delta]).fetchall()

    def get_places_df(
        self,
        country: Optional[str] = None,
        source: Optional[str] = None
    ) -> pd.DataFrame:
        """Get places as DataFrame with optional filters"""
        conditions = []
        params = []

        if country:
            conditions.append("country = ?")
            params.append(country)
        if source:
            conditions.append("source = ?")
            params.append(source)

        where = " AND ".join(conditions) if conditions else "1=1"
        sql = f"SELECT * FROM places WHERE {where} ORDER BY id"

        return self.connection.execute(sql, params).fetchdf()

    # =========================
    # Alternate Name Operations
    # =========================
    def upsert_alternate_name(self, alt: AlternateName):
        """Insert an alternate name or refresh its flags"""
        data = alt.to_dict()
        cols_str = ", ".join(ALT_NAME_COLUMNS)
        placeholders = ", ".join("?" for _ in ALT_NAME_COLUMNS)

        self.connection.execute(f"""
            INSERT INTO alt_names (id, {cols_str})
            VALUES (nextval('seq_alt_names_id'), {placeholders})
            ON CONFLICT (owner_type, owner_id, key_name, lang) DO UPDATE SET
                name = EXCLUDED.name,
                is_preferred = EXCLUDED.is_preferred,
                is_short = EXCLUDED.is_short,
                is_colloquial = EXCLUDED.is_colloquial,
                is_historic = EXCLUDED.is_historic,
                external_id = EXCLUDED.external_id
        """, [data[c] for c in ALT_NAME_COLUMNS])

    def get_alternate_names(self, owner_type: str, owner_id: int) -> List[Dict[str, Any]]:
        cursor = self.connection.execute(
            "SELECT * FROM alt_names WHERE owner_type = ? AND owner_id = ? ORDER BY id",
            [owner_type, owner_id]
        )
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    # =========================
    # Postal Code Operations
    # =========================
    def upsert_postal(self, postal: PostalAssignment):
        """Insert or update a postal code point"""
        self.connection.execute("""
            INSERT INTO postal_codes (
                country, postal_code, name, admin1, latitude, longitude,
                accuracy, timezone, place_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (country, postal_code, name) DO UPDATE SET
                admin1 = EXCLUDED.admin1,
                latitude = EXCLUDED.latitude,
                longitude = EXCLUDED.longitude,
                accuracy = EXCLUDED.accuracy,
                timezone = EXCLUDED.timezone,
                place_id = EXCLUDED.place_id
        """, [
            postal.country, postal.postal_code, postal.name, postal.admin1,
            postal.latitude, postal.longitude, postal.accuracy,
            postal.timezone, postal.place_id
        ])

    def get_postal(self, country: str, postal_code: str) -> List[Dict[str, Any]]:
        cursor = self.connection.execute(
            "SELECT * FROM postal_codes WHERE country = ? AND postal_code = ? ORDER BY name",
            [country, postal_code]
        )
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    # =========================
    # Processing Run Operations
    # =========================
    def start_processing_run(
        self,
        run_type: str,
        config_dict: Optional[Dict] = None,
        total_items: int = 0
    ) -> int:
        """Start a new processing run, returns run ID"""
        sql = """
        INSERT INTO processing_runs (
            id, run_type, status, started_at, config_json, total_items
        ) VALUES (
            nextval('seq_runs_id'), ?, ?, ?, ?, ?
        )
        RETURNING id
        """

        result = self.connection.execute(sql, [
            run_type,
            ProcessingStatus.IN_PROGRESS.value,
            datetime.now(),
            json.dumps(config_dict or {}, default=str),
            total_items
        ]).fetchone()

        run_id = result[0] if result else None
        logger.info(f"Started processing run {run_id}: {run_type}")
        return run_id

    def update_processing_run(
        self,
        run_id: int,
        status: Optional[str] = None,
        processed_items: Optional[int] = None,
        failed_items: Optional[int] = None,
        stats_dict: Optional[Dict] = None,
        error_message: Optional[str] = None
    ):
        """Update a processing run"""
        updates = []
        params = []

        if status:
            updates.append("status = ?")
            params.append(status)
            if status in [ProcessingStatus.COMPLETED.value, ProcessingStatus.PARTIAL.value, ProcessingStatus.FAILED.value]:
                updates.append("completed_at = ?")
                params.append(datetime.now())

        if processed_items is not None:
            updates.append("processed_items = ?")
            params.append(processed_items)

        if failed_items is not None:
            updates.append("failed_items = ?")
            params.append(failed_items)

        if stats_dict:
            updates.append("stats_json = ?")
            params.append(json.dumps(stats_dict, default=str))

        if error_message:
            updates.append("error_message = ?")
            params.append(error_message)

        if not updates:
            return

        sql = f"UPDATE processing_runs SET {', '.join(updates)} WHERE id = ?"
        params.append(run_id)

        self.connection.execute(sql, params)

    def get_last_run(self, run_type: str) -> Optional[Dict[str, Any]]:
        """Get the most recent processing run of a type"""
        return self._fetch_dict("""
            SELECT * FROM processing_runs
            WHERE run_type = ?
            ORDER BY started_at DESC, id DESC
            LIMIT 1
        """, [run_type])

    # =========================
    # Export Operations
    # =========================
    def export_to_csv(self, output_path: Path, query: str = "SELECT * FROM v_places_full ORDER BY id") -> int:
        """Export a query result to CSV"""
        df = self.connection.execute(query).fetchdf()

        output_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(output_path, index=False)
        logger.info(f"Exported {len(df)} rows to {output_path}")
        return len(df)
