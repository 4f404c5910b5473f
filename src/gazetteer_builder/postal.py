"""
Postal code ingestion
Anchors each postal point to a canonical place, creating a synthetic
place when none is close enough
"""
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import duckdb

from . import config
from .database.models import CanonicalPlace, PostalAssignment
from .ingest import IngestStats, ProgressCallback
from .reference import ReferenceData
from .resolver import process_place_names
from .transformers.names import canonical_key, phonetic_keys
from .transformers.timezones import TimezoneResolver
from .utils import create_progress_bar, iter_tsv_chunks, to_float, to_int

logger = logging.getLogger(__name__)

POSTAL_COLUMNS = [
    "country_code", "postal_code", "place_name", "admin_name1", "admin_code1",
    "admin_name2", "admin_code2", "admin_name3", "admin_code3",
    "latitude", "longitude", "accuracy",
]

# Countries whose postal admin1 codes match GeoNames admin1 codes
CODED_ADMIN_COUNTRIES = frozenset({"US", "CA"})


class PostalIngestor:
    """
    Streams postal code rows into postal_codes

    Resolution per row: names via the administrative resolver, timezone via
    the fallback chain, owner via key + country (+ state for US/CA) inside
    the duplicate box.
    """

    def __init__(
        self,
        db,
        reference: ReferenceData,
        timezone_resolver: Optional[TimezoneResolver] = None,
        progress_callback: Optional[ProgressCallback] = None,
        progress_interval: Optional[int] = None
    ):
        self.db = db
        self.reference = reference
        self.timezone_resolver = timezone_resolver or TimezoneResolver(store=db)
        self.box_degrees = config.DEDUP_CONFIG["duplicate_box_degrees"]
        self.progress_callback = progress_callback
        self.progress_interval = progress_interval or config.PIPELINE_CONFIG["progress_interval"]
        self.stats = IngestStats()

    def resolve_owner(self, place: CanonicalPlace, match_admin1: bool) -> int:
        """Id of the matching place, inserting the synthetic one when nothing matches"""
        existing = self.db.find_duplicate_place(
            place.key, place.country, place.latitude, place.longitude,
            self.box_degrees, admin1=place.admin1, match_admin1=match_admin1
        )

        if existing is not None:
            self.stats.duplicates += 1
            return existing["id"]

        self.stats.inserted += 1
        return self.db.upsert_place(place)

    def process_row(self, row: Dict[str, Any]) -> Optional[PostalAssignment]:
        """Resolve and store one row; returns the stored assignment or None"""
        country_code = str(row.get("country_code", "")).strip()
        postal_code = str(row.get("postal_code", "")).strip()
        coded = country_code in CODED_ADMIN_COUNTRIES
        state = row.get("admin_code1") if coded else row.get("admin_name1")

        if not postal_code:
            self.stats.reject("no_postal_code")
            return None

        latitude = to_float(row.get("latitude"))
        longitude = to_float(row.get("longitude"))
        if latitude is None or longitude is None:
            self.stats.reject("no_coordinates")
            return None

        names = process_place_names(
            self.reference, row.get("place_name"), row.get("admin_name2"), state, country_code
        )
        if names is None:
            self.stats.reject("noise")
            return None

        key = canonical_key(names.city)
        if not key:
            self.stats.reject("empty_key")
            return None

        self.stats.accepted += 1
        self.stats.diagnostics += len(names.diagnostics)

        timezone, method = self.timezone_resolver.resolve(latitude, longitude)
        self.stats.timezone_methods[method] += 1

        phonetic1, phonetic2 = phonetic_keys(names.city)
        synthetic = CanonicalPlace(
            key=key,
            name=names.city,
            country=names.country,
            admin1=names.state or None,
            admin2=names.county,
            latitude=latitude,
            longitude=longitude,
            timezone=timezone,
            feature_code="PPL",
            phonetic1=phonetic1 or None,
            phonetic2=phonetic2 if phonetic2 and phonetic2 != phonetic1 else None,
            source=config.SYNTHETIC_SOURCE,
        )

        assignment = PostalAssignment(
            country=names.country,
            postal_code=postal_code,
            name=names.city,
            admin1=names.state or None,
            latitude=latitude,
            longitude=longitude,
            accuracy=to_int(row.get("accuracy")),
            timezone=timezone,
            place_id=self.resolve_owner(synthetic, match_admin1=coded),
        )

        self.db.upsert_postal(assignment)
        return assignment

    def ingest_row(self, row: Dict[str, Any]):
        self.stats.read += 1

        try:
            self.process_row(row)
        except duckdb.Error as e:
            self.stats.errors += 1
            logger.error(
                f"Store error for postal code {row.get('country_code')} {row.get('postal_code')} "
                f"\"{row.get('place_name')}\": {e}"
            )

        if self.progress_callback and self.stats.read % self.progress_interval == 0:
            self.progress_callback(self.stats)

    def ingest_file(self, file_path: Path, chunk_size: Optional[int] = None, show_progress: bool = True) -> IngestStats:
        """Stream a GeoNames postal codes file"""
        logger.info(f"Ingesting postal codes from {file_path.name}")
        progress = create_progress_bar(desc="Postal codes", disable=not show_progress)

        try:
            for chunk in iter_tsv_chunks(file_path, POSTAL_COLUMNS, chunk_size):
                for row in chunk.to_dict("records"):
                    self.ingest_row(row)
                progress.update(len(chunk))
        finally:
            progress.close()

        logger.info(
            f"Postal codes: {self.stats.accepted} stored, {self.stats.inserted} synthetic places, "
            f"{self.stats.total_rejected} rejected, {self.stats.errors} errors"
        )
        return self.stats
