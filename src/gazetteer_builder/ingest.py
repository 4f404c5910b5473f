"""
Place ingestion for the Gazetteer Builder
Streams GeoNames place records into canonical places

Each record moves through filtering, name resolution, ranking, timezone
assignment and classification (new / duplicate / alternate name) before
its instruction is written to the store. Per-record store errors are
logged and counted; the run continues.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional

import duckdb

from . import config
from .database.models import AlternateName, CanonicalPlace, OwnerType
from .reference import ReferenceData
from .resolver import ProcessedNames, process_place_names
from .transformers.names import canonical_key, phonetic_keys, simplify
from .transformers.ranking import rank_place
from .transformers.timezones import TimezoneResolver
from .utils import create_progress_bar, iter_tsv_chunks, to_float, to_int

logger = logging.getLogger(__name__)


# =========================
# Feed Layout & Allow-lists
# =========================
GEONAMES_COLUMNS = [
    "geonameid", "name", "asciiname", "alternatenames", "latitude", "longitude",
    "feature_class", "feature_code", "country_code", "cc2", "admin1_code",
    "admin2_code", "admin3_code", "admin4_code", "population", "elevation",
    "dem", "timezone", "modification_date",
]

POPULATED_CLASS = "P"
TERRAIN_CLASS = "T"

POPULATED_CODES = frozenset({
    "PPL", "PPLA", "PPLA2", "PPLA3", "PPLA4", "PPLC", "PPLG", "PPLL", "PPLS", "STLMT",
})
TERRAIN_CODES = frozenset({"ISL", "ATOL", "CAPE", "ISLET", "MT", "PK", "PT", "VLC"})
HEIGHT_CODES = frozenset({"MT", "PK", "VLC"})
MIN_PEAK_ELEVATION = 600

NO_ADMIN1 = "00"


# =========================
# Records & Instructions
# =========================
@dataclass(frozen=True)
class RawPlaceRecord:
    """One line of a GeoNames places feed"""
    external_id: int
    name: str
    ascii_name: str = ""
    alternate_names: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    feature_class: str = ""
    feature_code: str = ""
    country_code: str = ""
    cc2: str = ""
    admin1_code: str = ""
    admin2_code: str = ""
    admin3_code: str = ""
    admin4_code: str = ""
    population: int = 0
    elevation: Optional[int] = None
    dem: Optional[int] = None
    timezone: str = ""
    modification_date: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["RawPlaceRecord"]:
        """Build from a GEONAMES_COLUMNS row; None when the id or coordinates are unusable"""
        external_id = to_int(row.get("geonameid"))
        latitude = to_float(row.get("latitude"))
        longitude = to_float(row.get("longitude"))

        if external_id is None or latitude is None or longitude is None:
            return None

        def text(column: str) -> str:
            return str(row.get(column, "") or "").strip()

        return cls(
            external_id=external_id,
            name=text("name"),
            ascii_name=text("asciiname"),
            alternate_names=text("alternatenames"),
            latitude=latitude,
            longitude=longitude,
            feature_class=text("feature_class"),
            feature_code=text("feature_code"),
            country_code=text("country_code"),
            cc2=text("cc2"),
            admin1_code=text("admin1_code"),
            admin2_code=text("admin2_code"),
            admin3_code=text("admin3_code"),
            admin4_code=text("admin4_code"),
            population=to_int(row.get("population"), 0),
            elevation=to_int(row.get("elevation")),
            dem=to_int(row.get("dem")),
            timezone=text("timezone"),
            modification_date=text("modification_date"),
        )


class Disposition(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"
    ALTERNATE_NAME = "alternate_name"
    REJECTED = "rejected"


class Owner(NamedTuple):
    owner_type: str
    owner_id: int
    key: str


@dataclass
class PlaceInstruction:
    """What to write for one record"""
    disposition: Disposition
    place: Optional[CanonicalPlace] = None
    names: Optional[ProcessedNames] = None
    existing: Optional[Dict[str, Any]] = None  # Matched row for duplicates
    owner: Optional[Owner] = None  # Matched owner for alternate names
    timezone_method: str = ""
    reason: str = ""


@dataclass
class IngestStats:
    """Counters accumulated over one stream"""
    read: int = 0
    accepted: int = 0
    inserted: int = 0
    duplicates: int = 0
    alternate_names: int = 0
    errors: int = 0
    rejected: Counter = field(default_factory=Counter)
    timezone_methods: Counter = field(default_factory=Counter)
    diagnostics: int = 0

    @property
    def total_rejected(self) -> int:
        return sum(self.rejected.values())

    def reject(self, reason: str):
        self.rejected[reason] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "read": self.read,
            "accepted": self.accepted,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "alternate_names": self.alternate_names,
            "errors": self.errors,
            "rejected": dict(self.rejected),
            "timezone_methods": dict(self.timezone_methods),
            "diagnostics": self.diagnostics,
        }


ProgressCallback = Callable[[IngestStats], None]


def decimal_places(value: Optional[float]) -> int:
    """Digits after the decimal point in a coordinate's shortest repr"""
    if value is None:
        return 0
    try:
        exponent = Decimal(repr(float(value))).normalize().as_tuple().exponent
    except (InvalidOperation, ValueError):
        return 0
    return max(0, -exponent) if isinstance(exponent, int) else 0


def order_batch(records: Iterable[RawPlaceRecord], priority_code2: Optional[str]) -> List[RawPlaceRecord]:
    """Priority country first, then by external id"""
    return sorted(records, key=lambda r: (r.country_code != priority_code2, r.external_id))


# =========================
# Known-Name Index
# =========================
class KnownNameIndex:
    """
    External id -> owner lookup across places, admin2, admin1 and countries

    Lookups check the tables in that order; the first hit wins.
    """

    PRIORITY = (OwnerType.PLACE, OwnerType.ADMIN2, OwnerType.ADMIN1, OwnerType.COUNTRY)
    TABLES = {
        OwnerType.PLACE: "places",
        OwnerType.ADMIN2: "admin2",
        OwnerType.ADMIN1: "admin1",
        OwnerType.COUNTRY: "countries",
    }

    def __init__(self):
        self._owners: Dict[OwnerType, Dict[int, Owner]] = {t: {} for t in self.PRIORITY}

    @classmethod
    def from_store(cls, db) -> "KnownNameIndex":
        index = cls()
        for owner_type, table in cls.TABLES.items():
            for external_id, owner_id, key in db.get_owner_keys(table):
                index.add(owner_type, external_id, owner_id, key)
        logger.info(f"Known-name index: {index.counts()}")
        return index

    def add(self, owner_type: OwnerType, external_id: Optional[int], owner_id: int, key: str):
        if external_id is None:
            return
        self._owners[OwnerType(owner_type)][int(external_id)] = Owner(OwnerType(owner_type).value, int(owner_id), key)

    def lookup(self, external_id: Optional[int], skip_places: bool = False) -> Optional[Owner]:
        if external_id is None:
            return None
        for owner_type in self.PRIORITY:
            if skip_places and owner_type is OwnerType.PLACE:
                continue
            owner = self._owners[owner_type].get(external_id)
            if owner:
                return owner
        return None

    def counts(self) -> Dict[str, int]:
        return {t.value: len(owners) for t, owners in self._owners.items()}


# =========================
# Place Ingestor
# =========================
class PlaceIngestor:
    """
    Single-pass place ingestion for one input stream

    The seen-set and counters belong to the instance; use one ingestor
    per stream.
    """

    def __init__(
        self,
        db,
        reference: ReferenceData,
        timezone_resolver: Optional[TimezoneResolver] = None,
        known_names: Optional[KnownNameIndex] = None,
        first_pass: bool = True,
        min_population: int = 0,
        priority_country: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
        progress_interval: Optional[int] = None
    ):
        """
        Initialize place ingestor

        Args:
            db: DatabaseManager
            reference: Loaded reference tables
            timezone_resolver: Timezone fallback chain (store-only if None)
            known_names: Owner index for alternate-name classification
            first_pass: True for the cities file, False for broader files
            min_population: Minimum population for populated places
            priority_country: ISO alpha-3 processed first in each batch
            progress_callback: Called with the running stats every progress_interval records
            progress_interval: Records between progress callbacks
        """
        self.db = db
        self.reference = reference
        self.timezone_resolver = timezone_resolver or TimezoneResolver(store=db)
        self.known_names = known_names or KnownNameIndex()
        self.first_pass = first_pass
        self.min_population = min_population
        self.priority_country = priority_country or config.PIPELINE_CONFIG["priority_country"]
        self.progress_callback = progress_callback
        self.progress_interval = progress_interval or config.PIPELINE_CONFIG["progress_interval"]
        self.box_degrees = config.DEDUP_CONFIG["duplicate_box_degrees"]
        self.seen: set = set()
        self.stats = IngestStats()

    # =========================
    # Filtering
    # =========================
    def filter_record(self, record: RawPlaceRecord) -> Optional[str]:
        """Rejection reason, or None when the record passes"""
        if "," in record.name:
            return "comma"

        if record.admin1_code == NO_ADMIN1:
            return "no_admin1"

        if record.feature_class == POPULATED_CLASS:
            if record.feature_code not in POPULATED_CODES:
                return "feature_code"
            if record.population < self.min_population:
                return "population"
        elif record.feature_class == TERRAIN_CLASS:
            if record.feature_code not in TERRAIN_CODES:
                return "feature_code"
            if record.feature_code in HEIGHT_CODES:
                height = record.elevation if record.elevation is not None else record.dem
                if height is None or height < MIN_PEAK_ELEVATION:
                    return "low_elevation"
        else:
            return "feature_class"

        if record.external_id in self.seen:
            return "seen"

        self.seen.add(record.external_id)
        return None

    # =========================
    # Resolve, Rank, Timezone, Classify
    # =========================
    def process_record(self, record: RawPlaceRecord) -> PlaceInstruction:
        """Decide what to do with one record; reads the store but does not write"""
        reason = self.filter_record(record)
        if reason:
            return PlaceInstruction(Disposition.REJECTED, reason=reason)

        names = process_place_names(
            self.reference, record.name, record.admin2_code, record.admin1_code, record.country_code
        )
        if names is None:
            return PlaceInstruction(Disposition.REJECTED, reason="noise")

        key = canonical_key(names.city)
        if not key:
            return PlaceInstruction(Disposition.REJECTED, reason="empty_key")

        phonetic1, phonetic2 = phonetic_keys(names.city)
        timezone, method = self.timezone_resolver.resolve(
            record.latitude, record.longitude, record.timezone or None
        )

        place = CanonicalPlace(
            key=key,
            name=names.city,
            country=names.country,
            admin1=names.state or None,
            admin2=names.county,
            latitude=record.latitude,
            longitude=record.longitude,
            elevation=record.elevation,
            population=record.population,
            timezone=timezone,
            feature_code=record.feature_code,
            rank=rank_place(record.feature_class, record.feature_code, record.population, self.first_pass),
            phonetic1=phonetic1 or None,
            phonetic2=phonetic2 if phonetic2 and phonetic2 != phonetic1 else None,
            source=config.AUTHORITATIVE_SOURCE,
            external_id=record.external_id,
        )

        return self.classify(place, names, method)

    def classify(self, place: CanonicalPlace, names: ProcessedNames, timezone_method: str = "") -> PlaceInstruction:
        existing = self.db.find_place_by_external_id(place.source, place.external_id)

        if existing is None:
            existing = self.db.find_duplicate_place(
                place.key, place.country, place.latitude, place.longitude,
                self.box_degrees, admin1=place.admin1
            )

        if existing is not None:
            return PlaceInstruction(
                Disposition.DUPLICATE, place=place, names=names,
                existing=existing, timezone_method=timezone_method
            )

        owner = self.known_names.lookup(place.external_id, skip_places=True)
        if owner is not None:
            return PlaceInstruction(
                Disposition.ALTERNATE_NAME, place=place, names=names,
                owner=owner, timezone_method=timezone_method
            )

        return PlaceInstruction(Disposition.NEW, place=place, names=names, timezone_method=timezone_method)

    # =========================
    # Emit
    # =========================
    def emit(self, instruction: PlaceInstruction) -> Optional[int]:
        """Write one instruction to the store; returns the affected place id"""
        place = instruction.place

        if instruction.disposition is Disposition.NEW:
            place_id = self.db.upsert_place(place)
            place.id = place_id
            self.known_names.add(OwnerType.PLACE, place.external_id, place_id, place.key)
            self.stats.inserted += 1

        elif instruction.disposition is Disposition.DUPLICATE:
            place_id = instruction.existing["id"]
            self.refresh_duplicate(instruction.existing, place)
            self.stats.duplicates += 1

        elif instruction.disposition is Disposition.ALTERNATE_NAME:
            owner = instruction.owner
            if owner.key != place.key:
                self.db.upsert_alternate_name(AlternateName(
                    name=place.name, key=place.key,
                    owner_type=owner.owner_type, owner_id=owner.owner_id,
                ))
            self.stats.alternate_names += 1
            return None

        else:
            return None

        self.store_variant(place_id, place.key, instruction.names)
        return place_id

    def refresh_duplicate(self, existing: Dict[str, Any], place: CanonicalPlace):
        """Refresh mutable fields; coordinates only move to a more precise fix"""
        latitude = longitude = None
        incoming = decimal_places(place.latitude) + decimal_places(place.longitude)
        current = decimal_places(existing.get("latitude")) + decimal_places(existing.get("longitude"))

        if incoming > current:
            latitude, longitude = place.latitude, place.longitude

        self.db.refresh_place(
            existing["id"],
            population=place.population or None,
            rank=max(place.rank, existing.get("rank") or 0),
            timezone=place.timezone,
            latitude=latitude,
            longitude=longitude,
        )

    def store_variant(self, place_id: int, key: str, names: Optional[ProcessedNames]):
        if not names or not names.variant:
            return
        variant_key = simplify(names.city, as_variant=True)
        if variant_key and variant_key != key:
            self.db.upsert_alternate_name(AlternateName(
                name=names.variant, key=variant_key,
                owner_type=OwnerType.PLACE.value, owner_id=place_id,
            ))

    # =========================
    # Drivers
    # =========================
    def ingest_record(self, record: RawPlaceRecord):
        self.stats.read += 1

        try:
            instruction = self.process_record(record)

            if instruction.disposition is Disposition.REJECTED:
                self.stats.reject(instruction.reason)
            else:
                self.stats.accepted += 1
                self.stats.timezone_methods[instruction.timezone_method] += 1
                if instruction.names and instruction.names.diagnostics:
                    self.stats.diagnostics += len(instruction.names.diagnostics)
                self.emit(instruction)

        except duckdb.Error as e:
            self.stats.errors += 1
            logger.error(
                f"Store error for {record.external_id} \"{record.name}\" "
                f"({record.feature_code}, {record.admin1_code}, {record.country_code}): {e}"
            )

        if self.progress_callback and self.stats.read % self.progress_interval == 0:
            self.progress_callback(self.stats)

    def ingest_records(self, records: Iterable[RawPlaceRecord]) -> IngestStats:
        """Process one batch, priority country first"""
        priority_code2 = self.reference.code3_to_code2.get(self.priority_country, self.priority_country)

        for record in order_batch(records, priority_code2):
            self.ingest_record(record)

        return self.stats

    def ingest_file(self, file_path: Path, chunk_size: Optional[int] = None, show_progress: bool = True) -> IngestStats:
        """
        Stream a GeoNames places file in batches

        Args:
            file_path: cities*.txt or allCountries.txt
            chunk_size: Rows per batch
            show_progress: Display a tqdm progress bar

        Returns:
            Accumulated IngestStats
        """
        logger.info(f"Ingesting places from {file_path.name} (first pass: {self.first_pass})")
        progress = create_progress_bar(desc=f"Places {file_path.name}", disable=not show_progress)

        try:
            for chunk in iter_tsv_chunks(file_path, GEONAMES_COLUMNS, chunk_size):
                records = []
                for row in chunk.to_dict("records"):
                    record = RawPlaceRecord.from_row(row)
                    if record is None:
                        self.stats.read += 1
                        self.stats.reject("malformed")
                    else:
                        records.append(record)

                self.ingest_records(records)
                progress.update(len(chunk))
        finally:
            progress.close()

        logger.info(
            f"Places from {file_path.name}: {self.stats.inserted} new, "
            f"{self.stats.duplicates} duplicates, {self.stats.alternate_names} alternate names, "
            f"{self.stats.total_rejected} rejected, {self.stats.errors} errors"
        )
        return self.stats
