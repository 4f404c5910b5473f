"""
Integration tests for place ingestion
Tests filtering, classification (new / duplicate / alternate name) and emission
"""
import pytest
import sys
from pathlib import Path

import duckdb

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from gazetteer_builder.database.models import OwnerType
from gazetteer_builder.ingest import (
    Disposition,
    KnownNameIndex,
    PlaceIngestor,
    RawPlaceRecord,
    decimal_places,
    order_batch,
)
from gazetteer_builder.transformers.timezones import TimezoneIndex, TimezoneResolver, load_timezone_polygons


def record(external_id, name="Springfield", latitude=37.21533, longitude=-93.29824, **kwargs):
    defaults = dict(
        feature_class="P", feature_code="PPL", country_code="US",
        admin1_code="MO", population=1000,
    )
    defaults.update(kwargs)
    return RawPlaceRecord(
        external_id=external_id, name=name, latitude=latitude, longitude=longitude, **defaults
    )


@pytest.fixture
def ingestor(db, reference):
    return PlaceIngestor(db, reference)


# =========================
# Record Parsing Tests
# =========================
@pytest.mark.unit
class TestRawPlaceRecord:
    """Test RawPlaceRecord.from_row"""

    def test_from_row(self):
        """Test typed fields"""
        rec = RawPlaceRecord.from_row({
            "geonameid": "4407066", "name": " St. Louis ", "latitude": "38.62727",
            "longitude": "-90.19789", "population": "315685", "elevation": "",
            "dem": "142", "feature_class": "P",
        })
        assert rec.external_id == 4407066
        assert rec.name == "St. Louis"
        assert rec.population == 315685
        assert rec.elevation is None
        assert rec.dem == 142

    def test_unusable_rows(self):
        """Test rows without id or coordinates"""
        assert RawPlaceRecord.from_row({"geonameid": "x", "latitude": "1", "longitude": "2"}) is None
        assert RawPlaceRecord.from_row({"geonameid": "1", "latitude": "", "longitude": "2"}) is None


@pytest.mark.unit
class TestHelpers:
    """Test decimal_places and order_batch"""

    def test_decimal_places(self):
        """Test digits after the decimal point"""
        assert decimal_places(37.2) == 1
        assert decimal_places(37.21533) == 5
        assert decimal_places(37.0) == 0
        assert decimal_places(None) == 0

    def test_priority_country_first(self):
        """Test priority country leads, then external id"""
        batch = [record(3, country_code="FR"), record(2), record(1, country_code="CA"), record(5)]
        assert [r.external_id for r in order_batch(batch, "US")] == [2, 5, 1, 3]


# =========================
# Filter Tests
# =========================
@pytest.mark.unit
class TestFilterRecord:
    """Test PlaceIngestor.filter_record"""

    def test_accepts_populated_place(self, ingestor):
        """Test ordinary populated places pass"""
        assert ingestor.filter_record(record(1)) is None

    @pytest.mark.parametrize("kwargs, reason", [
        ({"name": "Springfield, Ohio"}, "comma"),
        ({"admin1_code": "00"}, "no_admin1"),
        ({"feature_code": "PPLX"}, "feature_code"),
        ({"feature_class": "T", "feature_code": "LK"}, "feature_code"),
        ({"feature_class": "H", "feature_code": "LK"}, "feature_class"),
        ({"feature_class": "T", "feature_code": "MT", "elevation": 450}, "low_elevation"),
        ({"feature_class": "T", "feature_code": "PK"}, "low_elevation"),
    ])
    def test_rejections(self, ingestor, kwargs, reason):
        """Test each rejection reason"""
        assert ingestor.filter_record(record(1, **kwargs)) == reason

    def test_peak_height_from_dem(self, ingestor):
        """Test the elevation model stands in for a missing elevation"""
        assert ingestor.filter_record(record(1, feature_class="T", feature_code="MT", dem=1200)) is None

    def test_terrain_without_height_rule(self, ingestor):
        """Test islands and capes need no height"""
        assert ingestor.filter_record(record(1, feature_class="T", feature_code="ISL")) is None

    def test_min_population(self, db, reference):
        """Test the populated-place population floor"""
        ingestor = PlaceIngestor(db, reference, min_population=5000)
        assert ingestor.filter_record(record(1, population=500)) == "population"
        assert ingestor.filter_record(record(2, population=5000)) is None

    def test_seen_once(self, ingestor):
        """Test the same id is accepted once per stream"""
        assert ingestor.filter_record(record(1)) is None
        assert ingestor.filter_record(record(1)) == "seen"

    def test_rejected_not_marked_seen(self, ingestor):
        """Test a rejected record does not block a later valid one"""
        assert ingestor.filter_record(record(1, admin1_code="00")) == "no_admin1"
        assert ingestor.filter_record(record(1)) is None


# =========================
# Classification & Emission Tests
# =========================
@pytest.mark.integration
class TestPlaceIngestion:
    """Test PlaceIngestor end to end against an in-memory store"""

    def test_new_place(self, ingestor, db):
        """Test a fresh record is inserted with its derived fields"""
        ingestor.ingest_record(record(4409896, timezone="America/Chicago", population=169176))

        row = db.find_place_by_external_id("GEON", 4409896)
        assert row["key_name"] == "SPRINGFIELD"
        assert row["country"] == "USA"
        assert row["admin1"] == "MO"
        assert row["rank"] == 2
        assert row["timezone"] == "America/Chicago"
        assert row["phonetic1"]
        assert ingestor.stats.inserted == 1
        assert ingestor.stats.timezone_methods["source"] == 1

    def test_reingest_is_duplicate(self, db, reference):
        """Test a second stream with the same ids refreshes, not inserts"""
        PlaceIngestor(db, reference).ingest_record(record(1, population=1000))

        second = PlaceIngestor(db, reference)
        second.ingest_record(record(1, population=2000))

        assert second.stats.duplicates == 1
        assert db.get_table_stats()["places"] == 1
        assert db.find_place_by_external_id("GEON", 1)["population"] == 2000

    def test_duplicate_by_proximity(self, db, reference):
        """Test same key inside the box merges and keeps the best rank"""
        first = PlaceIngestor(db, reference)
        first.ingest_record(record(1, timezone="America/Chicago"))

        broad = PlaceIngestor(db, reference, first_pass=False)
        instruction = broad.process_record(record(2, latitude=37.3, longitude=-93.3,
                                                  feature_code="PPLA", population=0))
        assert instruction.disposition is Disposition.DUPLICATE
        assert instruction.timezone_method == "proximity"

        broad.emit(instruction)
        row = db.find_place_by_external_id("GEON", 1)
        assert row["rank"] == 2
        assert row["latitude"] == pytest.approx(37.21533)
        assert db.get_table_stats()["places"] == 1

    def test_duplicate_takes_more_precise_coordinates(self, db, reference):
        """Test coordinates move only to a more precise fix"""
        PlaceIngestor(db, reference).ingest_record(record(1, latitude=37.2, longitude=-93.3))

        second = PlaceIngestor(db, reference)
        second.ingest_record(record(2, latitude=37.21533, longitude=-93.29824))

        row = db.find_place_by_external_id("GEON", 1)
        assert row["latitude"] == pytest.approx(37.21533)
        assert row["longitude"] == pytest.approx(-93.29824)

    def test_different_admin1_is_new(self, db, reference):
        """Test same key in another state is a separate place"""
        ingestor = PlaceIngestor(db, reference)
        ingestor.ingest_record(record(1))
        ingestor.ingest_record(record(2, admin1_code="IL", latitude=37.3))

        assert ingestor.stats.inserted == 2

    def test_known_owner_becomes_alternate_name(self, db, reference):
        """Test a record whose id belongs to an admin area adds a name to it"""
        known = KnownNameIndex()
        known.add(OwnerType.ADMIN2, 4407084, 4407084, "USA.MO.510")
        ingestor = PlaceIngestor(db, reference, known_names=known)

        ingestor.ingest_record(record(4407084, name="Saint Louis City", latitude=38.6, longitude=-90.2))

        assert ingestor.stats.alternate_names == 1
        assert db.get_table_stats()["places"] == 0
        names = db.get_alternate_names("D", 4407084)
        assert [n["key_name"] for n in names] == ["STLOUISCITY"]

    def test_new_place_registered_as_owner(self, ingestor):
        """Test inserted places join the known-name index"""
        ingestor.ingest_record(record(1))
        owner = ingestor.known_names.lookup(1)
        assert owner.owner_type == "P"
        assert owner.key == "SPRINGFIELD"

    def test_variant_stored(self, ingestor, db):
        """Test a generic leading word yields an alternate name"""
        ingestor.ingest_record(record(5128000, name="Lake Placid", admin1_code="NY",
                                      latitude=44.27962, longitude=-73.98198))

        place = db.find_place_by_external_id("GEON", 5128000)
        names = db.get_alternate_names("P", place["id"])
        assert [(n["name"], n["key_name"]) for n in names] == [("Placid", "PLACID")]

    def test_inverted_name_variant_key(self, ingestor, db):
        """Test an un-inverted name stores its bare form without the leading article"""
        ingestor.ingest_record(record(4588718, name="Mount Pleasant, The",
                                      latitude=38.4, longitude=-90.6))

        place = db.find_place_by_external_id("GEON", 4588718)
        assert place["name"] == "The Mount Pleasant"
        assert place["key_name"] == "THEMOUNTPLEASANT"

        names = db.get_alternate_names("P", place["id"])
        assert [(n["name"], n["key_name"]) for n in names] == [("Mount Pleasant", "MOUNTPLEASANT")]

    def test_timezone_from_index(self, db, reference, timezone_geojson):
        """Test records without a timezone use the polygon index"""
        index = TimezoneIndex().build(load_timezone_polygons(timezone_geojson))
        ingestor = PlaceIngestor(db, reference, TimezoneResolver(index=index, store=db))

        ingestor.ingest_record(record(1, latitude=41.85, longitude=-87.65, admin1_code="IL"))

        assert db.find_place_by_external_id("GEON", 1)["timezone"] == "America/Chicago"
        assert ingestor.stats.timezone_methods["index"] == 1

    def test_store_error_counted(self, ingestor, db, monkeypatch):
        """Test a failed write is logged and the stream continues"""
        original = db.upsert_place

        def failing(place):
            if place.external_id == 1:
                raise duckdb.Error("disk full")
            return original(place)

        monkeypatch.setattr(db, "upsert_place", failing)

        ingestor.ingest_record(record(1))
        ingestor.ingest_record(record(2, name="Joplin", latitude=37.08423, longitude=-94.51328))

        assert ingestor.stats.errors == 1
        assert ingestor.stats.inserted == 1

    def test_progress_callback(self, db, reference):
        """Test the observer is called every interval"""
        seen = []
        ingestor = PlaceIngestor(db, reference, progress_callback=lambda s: seen.append(s.read),
                                 progress_interval=2)

        ingestor.ingest_records([record(i, admin1_code="00") for i in range(5)])

        assert seen == [2, 4]


@pytest.mark.integration
class TestIngestFile:
    """Test streaming a feed file"""

    def test_cities_file(self, db, reference, cities_file):
        """Test a small cities feed"""
        ingestor = PlaceIngestor(db, reference)
        stats = ingestor.ingest_file(cities_file, show_progress=False)

        assert stats.read == 5
        assert stats.inserted == 3
        assert stats.rejected == {"noise": 1, "no_admin1": 1}

        saint_louis = db.find_place_by_external_id("GEON", 4407066)
        assert saint_louis["key_name"] == "STLOUIS"
        assert saint_louis["admin2"] is None

        chicago = db.find_place_by_external_id("GEON", 4887398)
        assert chicago["admin2"] == "Cook"
        assert chicago["rank"] == 3

        paris = db.find_place_by_external_id("GEON", 2988507)
        assert paris["country"] == "FRA"
        assert paris["admin1"] == "Île-de-France"
        assert paris["rank"] == 4

    def test_second_pass_all_duplicates(self, db, reference, cities_file):
        """Test a rebuild over the same feed adds nothing"""
        PlaceIngestor(db, reference).ingest_file(cities_file, show_progress=False)
        stats = PlaceIngestor(db, reference, first_pass=False).ingest_file(cities_file, show_progress=False)

        assert stats.inserted == 0
        assert stats.duplicates == 3
        assert db.get_table_stats()["places"] == 3


@pytest.mark.integration
class TestKnownNameIndex:
    """Test owner lookup"""

    def test_priority_order(self):
        """Test places shadow admin areas, admin2 shadows admin1"""
        index = KnownNameIndex()
        index.add(OwnerType.COUNTRY, 10, 10, "C")
        index.add(OwnerType.ADMIN1, 10, 10, "S")
        index.add(OwnerType.ADMIN2, 10, 10, "D")
        index.add(OwnerType.PLACE, 10, 99, "P")

        assert index.lookup(10).owner_type == "P"
        assert index.lookup(10).owner_id == 99
        assert index.lookup(10, skip_places=True).owner_type == "D"
        assert index.lookup(11) is None
        assert index.lookup(None) is None

    def test_from_store(self, db, reference):
        """Test the index loads every owner table"""
        db.upsert_countries(reference.countries.values())
        db.upsert_admin("admin1", reference.admin1s.values())
        PlaceIngestor(db, reference).ingest_record(record(1))

        index = KnownNameIndex.from_store(db)

        assert index.lookup(6252001).owner_type == "C"
        assert index.lookup(4398678).key == "USA.MO"
        assert index.lookup(1).owner_type == "P"
        assert index.counts()["C"] == 5
