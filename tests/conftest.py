"""
Pytest configuration and shared fixtures
"""
import pytest
import pandas as pd
from pathlib import Path
import tempfile
import shutil
import sys
import json
import zipfile

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from gazetteer_builder.reference import ADMIN_CODE_COLUMNS, COUNTRY_INFO_COLUMNS, ReferenceData


# =========================
# Pytest Configuration
# =========================
def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no network or disk database)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (in-memory DuckDB, feed files)"
    )
    config.addinivalue_line(
        "markers", "slow: Slow tests (large datasets)"
    )


# =========================
# Directory Fixtures
# =========================
@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path)


# =========================
# Reference Data Fixtures
# =========================
def _country_row(iso, iso3, fips, name, geonameid, postal_regex=""):
    row = {column: "" for column in COUNTRY_INFO_COLUMNS}
    row.update({
        "iso": iso, "iso3": iso3, "fips": fips, "name": name,
        "geonameid": geonameid, "postal_regex": postal_regex,
    })
    return row


@pytest.fixture
def country_info_df():
    """countryInfo.txt rows for a handful of countries"""
    return pd.DataFrame([
        _country_row("US", "USA", "US", "United States", "6252001", r"^\d{5}(-\d{4})?$"),
        _country_row("CA", "CAN", "CA", "Canada", "6251999"),
        _country_row("GB", "GBR", "UK", "United Kingdom", "2635167"),
        _country_row("FR", "FRA", "FR", "France", "3017382"),
        _country_row("DE", "DEU", "GM", "Germany", "2921044"),
    ], columns=COUNTRY_INFO_COLUMNS)


@pytest.fixture
def admin1_df():
    """admin1CodesASCII.txt rows"""
    return pd.DataFrame([
        ["US.MO", "Missouri", "Missouri", "4398678"],
        ["US.IL", "Illinois", "Illinois", "4896861"],
        ["US.VA", "Virginia", "Virginia", "6254928"],
        ["US.DC", "Washington, D.C.", "Washington, D.C.", "4138106"],
        ["CA.08", "Ontario", "Ontario", "6093943"],
        ["GB.ENG", "England", "England", "6269131"],
        ["FR.11", "Île-de-France", "Ile-de-France", "3012874"],
        ["DE.16", "Berlin", "Berlin", "2950157"],
    ], columns=ADMIN_CODE_COLUMNS)


@pytest.fixture
def admin2_df():
    """admin2Codes.txt rows"""
    return pd.DataFrame([
        ["US.MO.510", "City of Saint Louis", "City of Saint Louis", "4407084"],
        ["US.MO.189", "Saint Louis County", "Saint Louis County", "4407092"],
        ["US.IL.031", "Cook County", "Cook County", "4888671"],
        ["US.VA.760", "City of Richmond", "City of Richmond", "4781756"],
        ["US.DC.001", "District of Columbia", "District of Columbia", "4138103"],
        ["FR.11.75", "Paris", "Paris", "2968815"],
    ], columns=ADMIN_CODE_COLUMNS)


@pytest.fixture
def us_county_lines():
    """Recognized "<county>, <state>" list"""
    return ["Saint Louis, MO", "Cook, IL", "DeKalb, IL", "McDonald, MO", "Henrico, VA"]


@pytest.fixture
def reference(country_info_df, admin1_df, admin2_df, us_county_lines):
    """ReferenceData built from the sample frames"""
    return ReferenceData.from_frames(
        country_info_df, admin1_df, admin2_df,
        us_counties=us_county_lines,
        celestial_names=["Mars", "Vega", "Titan"],
    )


@pytest.fixture
def reference_files(temp_dir, country_info_df, admin1_df, admin2_df):
    """The sample frames written as GeoNames feed files"""
    country_file = temp_dir / "countryInfo.txt"
    with open(country_file, "w", encoding="utf-8") as f:
        f.write("# GeoNames country info\n#ISO\tISO3\t...\n")
        country_info_df.to_csv(f, sep="\t", header=False, index=False)

    admin1_file = temp_dir / "admin1CodesASCII.txt"
    admin1_df.to_csv(admin1_file, sep="\t", header=False, index=False)

    admin2_file = temp_dir / "admin2Codes.txt"
    admin2_df.to_csv(admin2_file, sep="\t", header=False, index=False)

    return {"country_info": country_file, "admin1": admin1_file, "admin2": admin2_file}


# =========================
# Database Fixtures
# =========================
@pytest.fixture
def db():
    """In-memory DatabaseManager with the schema created"""
    from gazetteer_builder.database import DatabaseManager

    manager = DatabaseManager(":memory:")
    manager.initialize_schema()
    yield manager
    manager.close()


# =========================
# Feed File Fixtures
# =========================
def geonames_line(geonameid, name, lat, lon, feature_class="P", feature_code="PPL",
                  country="US", admin1="MO", admin2="", population=0,
                  elevation="", dem="", timezone=""):
    """One tab-separated GeoNames places line"""
    fields = [
        str(geonameid), name, name, "", str(lat), str(lon), feature_class, feature_code,
        country, "", admin1, admin2, "", "", str(population), str(elevation), str(dem),
        timezone, "2024-01-01",
    ]
    return "\t".join(fields) + "\n"


@pytest.fixture
def make_geonames_line():
    return geonames_line


@pytest.fixture
def cities_file(temp_dir):
    """Small cities feed"""
    path = temp_dir / "cities15000.txt"
    with open(path, "w", encoding="utf-8") as f:
        f.write(geonames_line(4407066, "St. Louis", 38.62727, -90.19789, feature_code="PPLA2",
                              admin2="510", population=315685, timezone="America/Chicago"))
        f.write(geonames_line(4887398, "Chicago", 41.85003, -87.65005, admin1="IL", admin2="031",
                              population=2720546, timezone="America/Chicago"))
        f.write(geonames_line(2988507, "Paris", 48.85341, 2.3488, feature_code="PPLC",
                              country="FR", admin1="11", admin2="75", population=2138551,
                              timezone="Europe/Paris"))
        f.write(geonames_line(6941013, "Lakeside Trailer Park", 38.5, -90.5, population=120))
        f.write(geonames_line(5000001, "Nowhere", 10.0, 10.0, country="US", admin1="00"))
    return path


# =========================
# Timezone Fixtures
# =========================
def _box(min_lon, min_lat, max_lon, max_lat):
    return [[
        [min_lon, min_lat], [max_lon, min_lat], [max_lon, max_lat],
        [min_lon, max_lat], [min_lon, min_lat],
    ]]


@pytest.fixture
def timezone_geojson(temp_dir):
    """Timezone polygons as a GeoJSON FeatureCollection"""
    data = {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {"tzid": "America/Chicago"},
                "geometry": {"type": "Polygon", "coordinates": _box(-100.0, 30.0, -85.0, 45.0)},
            },
            {
                "type": "Feature",
                "properties": {"tzid": "America/New_York"},
                "geometry": {"type": "Polygon", "coordinates": _box(-85.0, 30.0, -70.0, 45.0)},
            },
            {
                "type": "Feature",
                "properties": {"tzid": "Etc/GMT+12"},
                "geometry": {"type": "Polygon", "coordinates": _box(-180.0, -10.0, -170.0, 10.0)},
            },
            {
                "type": "Feature",
                "properties": {"tzid": "Pacific/Fiji"},
                "geometry": {"type": "Polygon", "coordinates": _box(175.0, -20.0, 180.0, -15.0)},
            },
        ],
    }

    path = temp_dir / "timezones.json"
    with open(path, "w") as f:
        json.dump(data, f)

    return path


@pytest.fixture
def timezone_zip(temp_dir, timezone_geojson):
    """The timezone GeoJSON packed in a single-member zip"""
    path = temp_dir / "timezones.geojson.zip"
    with zipfile.ZipFile(path, "w") as zf:
        zf.write(timezone_geojson, arcname="combined.json")
    return path
