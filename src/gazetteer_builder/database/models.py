"""
Data models and schema definitions for the gazetteer database
Uses dataclasses for Python-side representation, DuckDB for storage
"""
from dataclasses import dataclass
from typing import Optional, Dict, Any
from enum import Enum

from .. import config


class ProcessingStatus(str, Enum):
    """Status of processing runs"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class OwnerType(str, Enum):
    """One-letter owner codes for alternate names, in lookup priority order"""
    PLACE = "P"
    ADMIN2 = "D"
    ADMIN1 = "S"
    COUNTRY = "C"


@dataclass
class CanonicalPlace:
    """
    A searchable place
    key is derived from name and is not unique
    """
    key: str
    name: str
    country: str  # ISO alpha-3, or "XX?" when unrecognized
    admin1: Optional[str] = None  # State code (US/CA) or cleaned admin1 name
    admin2: Optional[str] = None  # County
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    elevation: Optional[int] = None
    population: int = 0
    timezone: Optional[str] = None
    feature_code: Optional[str] = None
    rank: int = 0
    phonetic1: Optional[str] = None
    phonetic2: Optional[str] = None  # None when identical to phonetic1
    source: str = config.AUTHORITATIVE_SOURCE
    external_id: Optional[int] = None  # GeoNames id; None for synthetic places
    id: Optional[int] = None  # Auto-generated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "key_name": self.key,
            "name": self.name,
            "admin2": self.admin2,
            "admin1": self.admin1,
            "country": self.country,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "elevation": self.elevation,
            "population": self.population,
            "timezone": self.timezone,
            "feature_code": self.feature_code,
            "rank": self.rank,
            "phonetic1": self.phonetic1,
            "phonetic2": self.phonetic2,
            "source": self.source,
            "external_id": self.external_id,
        }


@dataclass
class AlternateName:
    """
    Another name for a place, admin1, admin2 or country
    Only stored when its key differs from the owner's key
    """
    name: str
    key: str
    owner_type: str  # OwnerType value
    owner_id: int  # places.id for places, external id for reference tables
    lang: str = ""
    is_preferred: bool = False
    is_short: bool = False
    is_colloquial: bool = False
    is_historic: bool = False
    external_id: Optional[int] = None  # alternateNameId from the feed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "key_name": self.key,
            "lang": self.lang,
            "owner_type": self.owner_type,
            "owner_id": self.owner_id,
            "is_preferred": self.is_preferred,
            "is_short": self.is_short,
            "is_colloquial": self.is_colloquial,
            "is_historic": self.is_historic,
            "external_id": self.external_id,
        }


@dataclass
class PostalAssignment:
    """
    A postal code point, anchored to a canonical place
    """
    country: str
    postal_code: str
    name: str
    admin1: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[int] = None  # 1 estimated, 4 geonameid, 6 centroid
    timezone: Optional[str] = None
    place_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country": self.country,
            "postal_code": self.postal_code,
            "name": self.name,
            "admin1": self.admin1,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "timezone": self.timezone,
            "place_id": self.place_id,
        }


# =========================
# Schema SQL Definitions
# =========================
SCHEMA_SQL = """
-- Countries table: One row per GeoNames country
CREATE TABLE IF NOT EXISTS countries (
    external_id BIGINT PRIMARY KEY,
    name VARCHAR NOT NULL,
    key_name VARCHAR NOT NULL,
    iso2 VARCHAR,
    iso3 VARCHAR NOT NULL,
    old_code2 VARCHAR,
    postal_regex VARCHAR,
    source VARCHAR DEFAULT 'GEON'
);

-- Admin1 table: States, provinces, regions
CREATE TABLE IF NOT EXISTS admin1 (
    external_id BIGINT PRIMARY KEY,
    name VARCHAR NOT NULL,
    key_name VARCHAR NOT NULL,  -- e.g. USA.MO
    code VARCHAR,
    source VARCHAR DEFAULT 'GEON'
);

-- Admin2 table: Counties, districts
CREATE TABLE IF NOT EXISTS admin2 (
    external_id BIGINT PRIMARY KEY,
    name VARCHAR NOT NULL,
    key_name VARCHAR NOT NULL,  -- e.g. USA.MO.510
    code VARCHAR,
    source VARCHAR DEFAULT 'GEON'
);

-- Places table: Canonical searchable places
CREATE TABLE IF NOT EXISTS places (
    id BIGINT PRIMARY KEY,
    key_name VARCHAR NOT NULL,  -- Not unique
    name VARCHAR NOT NULL,
    admin2 VARCHAR,
    admin1 VARCHAR,
    country VARCHAR NOT NULL,
    latitude DOUBLE,
    longitude DOUBLE,
    elevation INTEGER,
    population BIGINT DEFAULT 0,
    timezone VARCHAR,
    feature_code VARCHAR,
    rank INTEGER DEFAULT 0,
    phonetic1 VARCHAR,
    phonetic2 VARCHAR,
    source VARCHAR NOT NULL,  -- GEON authoritative, GEOZ synthetic
    external_id BIGINT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,

    UNIQUE (source, external_id)
);

-- Create sequence for place IDs
CREATE SEQUENCE IF NOT EXISTS seq_places_id START 1;

-- Indexes for places
CREATE INDEX IF NOT EXISTS idx_places_key ON places(key_name);
CREATE INDEX IF NOT EXISTS idx_places_country ON places(country);

-- Alternate names table: Other names and languages for any owner
CREATE TABLE IF NOT EXISTS alt_names (
    id BIGINT PRIMARY KEY,
    name VARCHAR NOT NULL,
    key_name VARCHAR NOT NULL,
    lang VARCHAR NOT NULL DEFAULT '',
    owner_type VARCHAR NOT NULL CHECK (owner_type IN ('P', 'D', 'S', 'C')),
    owner_id BIGINT NOT NULL,
    is_preferred BOOLEAN DEFAULT FALSE,
    is_short BOOLEAN DEFAULT FALSE,
    is_colloquial BOOLEAN DEFAULT FALSE,
    is_historic BOOLEAN DEFAULT FALSE,
    external_id BIGINT,

    UNIQUE (owner_type, owner_id, key_name, lang)
);

-- Create sequence for alternate name IDs
CREATE SEQUENCE IF NOT EXISTS seq_alt_names_id START 1;

CREATE INDEX IF NOT EXISTS idx_alt_names_key ON alt_names(key_name);

-- Postal codes table
CREATE TABLE IF NOT EXISTS postal_codes (
    country VARCHAR NOT NULL,
    postal_code VARCHAR NOT NULL,
    name VARCHAR NOT NULL,
    admin1 VARCHAR,
    latitude DOUBLE,
    longitude DOUBLE,
    accuracy INTEGER,
    timezone VARCHAR,
    place_id BIGINT,

    PRIMARY KEY (country, postal_code, name)
);

-- Processing runs table: Audit trail
CREATE TABLE IF NOT EXISTS processing_runs (
    id INTEGER PRIMARY KEY,
    run_type VARCHAR NOT NULL,
    status VARCHAR DEFAULT 'pending',
    started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    completed_at TIMESTAMP,
    config_json VARCHAR,
    stats_json VARCHAR,
    error_message VARCHAR,
    total_items INTEGER DEFAULT 0,
    processed_items INTEGER DEFAULT 0,
    failed_items INTEGER DEFAULT 0
);

-- Create sequence for run IDs
CREATE SEQUENCE IF NOT EXISTS seq_runs_id START 1;

-- Search view: places with their country names
CREATE OR REPLACE VIEW v_places_full AS
SELECT
    p.id,
    p.key_name,
    p.name,
    p.admin2,
    p.admin1,
    p.country,
    c.name AS country_name,
    p.latitude,
    p.longitude,
    p.population,
    p.timezone,
    p.feature_code,
    p.rank,
    p.source
FROM places p
LEFT JOIN countries c ON p.country = c.iso3;
"""

# Column order used for bulk reference upserts
COUNTRY_COLUMNS = [
    "external_id", "name", "key_name", "iso2", "iso3", "old_code2", "postal_regex", "source",
]
ADMIN_COLUMNS = ["external_id", "name", "key_name", "code", "source"]

PLACE_COLUMNS = [
    "key_name", "name", "admin2", "admin1", "country", "latitude", "longitude",
    "elevation", "population", "timezone", "feature_code", "rank",
    "phonetic1", "phonetic2", "source", "external_id",
]

ALT_NAME_COLUMNS = [
    "name", "key_name", "lang", "owner_type", "owner_id", "is_preferred",
    "is_short", "is_colloquial", "is_historic", "external_id",
]
