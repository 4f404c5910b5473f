"""
Central configuration for the Gazetteer Builder pipeline
Handles environment variables, paths, feed locations and pipeline settings
"""
import os
from pathlib import Path
from typing import Optional, Tuple
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# =========================
# Base Paths
# =========================
PROJECT_ROOT = Path(__file__).resolve().parents[2]
DATA_DIR = Path(os.getenv("GAZETTEER_DATA_DIR", PROJECT_ROOT / "data"))

CONFIG_DIR = DATA_DIR / "00_config"
CACHE_DIR = DATA_DIR / "cache"
ARCHIVE_DIR = DATA_DIR / "archive"
REPORTS_DIR = DATA_DIR / "reports"

LOGS_DIR = PROJECT_ROOT / "logs"

# Static lists shipped with the package
PACKAGE_DATA_DIR = Path(__file__).resolve().parent / "data"


# Ensure critical directories exist
for dir_path in [CONFIG_DIR, CACHE_DIR, ARCHIVE_DIR, REPORTS_DIR, LOGS_DIR]:
    dir_path.mkdir(parents=True, exist_ok=True)

# =========================
# Database
# =========================
DB_PATH = Path(os.getenv("GAZETTEER_DB_PATH", DATA_DIR / "gazetteer.duckdb"))

# =========================
# Source Feeds
# =========================
GEONAMES_BASE_URL = os.getenv(
    "GEONAMES_BASE_URL", "https://download.geonames.org/export/dump"
)
GEONAMES_POSTAL_URL = os.getenv(
    "GEONAMES_POSTAL_URL", "https://download.geonames.org/export/zip"
)
TIMEZONE_RELEASE_URL = os.getenv(
    "TIMEZONE_RELEASE_URL",
    "https://api.github.com/repos/evansiroky/timezone-boundary-builder/releases/latest",
)

FEEDS = {
    "country_info": {
        "url": f"{GEONAMES_BASE_URL}/countryInfo.txt",
        "file": CACHE_DIR / "countryInfo.txt",
    },
    "admin1": {
        "url": f"{GEONAMES_BASE_URL}/admin1CodesASCII.txt",
        "file": CACHE_DIR / "admin1Codes.txt",
    },
    "admin2": {
        "url": f"{GEONAMES_BASE_URL}/admin2Codes.txt",
        "file": CACHE_DIR / "admin2Codes.txt",
    },
    "cities": {
        "url": f"{GEONAMES_BASE_URL}/cities15000.zip",
        "file": CACHE_DIR / "cities15000.zip",
        "member": "cities15000.txt",
    },
    "all_countries": {
        "url": f"{GEONAMES_BASE_URL}/allCountries.zip",
        "file": CACHE_DIR / "allCountries.zip",
        "member": "allCountries.txt",
    },
    "alternate_names": {
        "url": f"{GEONAMES_BASE_URL}/alternateNamesV2.zip",
        "file": CACHE_DIR / "alternateNamesV2.zip",
        "member": "alternateNamesV2.txt",
    },
    "postal_codes": {
        "url": f"{GEONAMES_POSTAL_URL}/allCountries.zip",
        "file": CACHE_DIR / "postal_allCountries.zip",
        "member": "allCountries.txt",
    },
}

US_COUNTIES_FILE = Path(os.getenv("US_COUNTIES_FILE", CONFIG_DIR / "us_counties.txt"))
CELESTIAL_FILE = PACKAGE_DATA_DIR / "celestial.txt"

TIMEZONE_SHAPES_FILE = CACHE_DIR / "timezone_shapes.zip"
TIMEZONE_SHAPES_JSON_FILE = CACHE_DIR / "timezone_shapes.json"

# =========================
# File Acquisition Settings
# =========================
THREE_MONTHS = 90 * 86400  # seconds

FETCH_CONFIG = {
    "max_retries": 5,
    "retry_min_wait": 1,
    "retry_max_wait": 20,
    "timeout": 120,
    "chunk_size": 1 << 16,
    "max_cache_age": THREE_MONTHS,
    "user_agent": "Gazetteer Builder",
}

# =========================
# Pipeline Settings
# =========================
PIPELINE_CONFIG = {
    "priority_country": "USA",  # Processed first within each batch
    "chunk_size": 50_000,  # Feed rows per batch
    "progress_interval": 10_000,  # Observer callback every N records
    "broad_min_population": 0,  # Populated places in non-first-pass files
}

# Source tags
AUTHORITATIVE_SOURCE = "GEON"
SYNTHETIC_SOURCE = "GEOZ"

# =========================
# Timezone Settings
# =========================
TIMEZONE_CONFIG = {
    "asset_name": "timezones-with-oceans.geojson.zip",
    "cell_degrees": 15,
    "proximity_steps": (0.05, 0.1, 0.25, 0.5),
}

# =========================
# Dedup Settings
# =========================
DEDUP_CONFIG = {
    "duplicate_box_degrees": 0.25,  # Key + country + admin1 match window
    "close_neighbor_km": 3.0,  # Legacy dataset review radius
}

# =========================
# Logging Configuration
# =========================
LOG_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "detailed": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": "INFO",
            "formatter": "standard",
            "stream": "ext://sys.stdout",
        },
        "file": {
            "class": "logging.FileHandler",
            "level": "DEBUG",
            "formatter": "detailed",
            "filename": str(LOGS_DIR / "gazetteer.log"),
            "mode": "a",
        },
    },
    "loggers": {
        "gazetteer_builder": {
            "level": "DEBUG",
            "handlers": ["console", "file"],
            "propagate": False,
        }
    },
    "root": {"level": "INFO", "handlers": ["console", "file"]},
}


# =========================
# Helper Functions
# =========================
def get_feed(name: str) -> Tuple[str, Path, Optional[str]]:
    """
    Look up a configured source feed

    Args:
        name: Feed name (key of FEEDS)

    Returns:
        Tuple of (url, cache file path, archive member or None)

    Raises:
        KeyError: If the feed is unknown
    """
    feed = FEEDS[name]
    return feed["url"], feed["file"], feed.get("member")


def get_report_path(filename: str, reports_dir: Optional[Path] = None) -> Path:
    """
    Get standardized output path for a report file

    Args:
        filename: Report filename
        reports_dir: Optional custom report directory

    Returns:
        Path object for the report file
    """
    if reports_dir is None:
        reports_dir = REPORTS_DIR

    reports_dir.mkdir(parents=True, exist_ok=True)
    return reports_dir / filename


# =========================
# Environment Info
# =========================
def print_config_summary():
    """Print configuration summary for debugging"""
    print("=" * 60)
    print("Gazetteer Builder Configuration")
    print("=" * 60)
    print(f"Project Root: {PROJECT_ROOT}")
    print(f"Data Directory: {DATA_DIR}")
    print(f"Cache Directory: {CACHE_DIR}")
    print(f"Database: {DB_PATH}")
    print(f"Logs Directory: {LOGS_DIR}")
    print(f"\nGeoNames: {GEONAMES_BASE_URL}")
    print(f"US counties list: {'✓ Found' if US_COUNTIES_FILE.exists() else '✗ Derived from admin2'}")
    print("\nPipeline:")
    print(f"  Priority Country: {PIPELINE_CONFIG['priority_country']}")
    print(f"  Chunk Size: {PIPELINE_CONFIG['chunk_size']}")
    print(f"  Proximity Steps: {TIMEZONE_CONFIG['proximity_steps']}")
    print(f"  Duplicate Box: ±{DEDUP_CONFIG['duplicate_box_degrees']}°")
    print("=" * 60)


if __name__ == "__main__":
    print_config_summary()
