"""
Integration tests for alternate-name ingestion
"""
import pytest
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from gazetteer_builder.alternates import ALTERNATE_NAME_COLUMNS, AlternateNameIngestor
from gazetteer_builder.database.models import OwnerType
from gazetteer_builder.ingest import KnownNameIndex


def alt_row(alternate_name_id, geonameid, name, lang="", preferred="", short="", colloquial="", historic=""):
    return {
        "alternate_name_id": str(alternate_name_id), "geonameid": str(geonameid),
        "isolanguage": lang, "alternate_name": name, "is_preferred": preferred,
        "is_short": short, "is_colloquial": colloquial, "is_historic": historic,
        "from": "", "to": "",
    }


@pytest.fixture
def known_names():
    index = KnownNameIndex()
    index.add(OwnerType.PLACE, 4407066, 1, "STLOUIS")
    index.add(OwnerType.ADMIN1, 4398678, 4398678, "USA.MO")
    index.add(OwnerType.COUNTRY, 2635167, 2635167, "UNITEDKINGDOM")
    return index


@pytest.mark.unit
class TestBuildAlternateName:
    """Test AlternateNameIngestor.build_alternate_name"""

    def test_place_name(self, db, known_names):
        """Test a new name for a place"""
        ingestor = AlternateNameIngestor(db, known_names)
        alt = ingestor.build_alternate_name(alt_row(1, 4407066, "San Luis", lang="es", preferred="1"))

        assert alt.owner_type == "P"
        assert alt.owner_id == 1
        assert alt.name == "San Luis"
        assert alt.key == "SANLUIS"
        assert alt.lang == "es"
        assert alt.is_preferred is True
        assert alt.is_historic is False
        assert alt.external_id == 1

    def test_same_key_skipped(self, db, known_names):
        """Test names folding to the owner's key add nothing"""
        ingestor = AlternateNameIngestor(db, known_names)
        assert ingestor.build_alternate_name(alt_row(2, 4407066, "St. Louis")) is None
        assert ingestor.build_alternate_name(alt_row(9, 4407066, "Saint-Louis", lang="fr")) is None
        assert ingestor.stats.rejected["same_key"] == 2

    def test_pseudo_language_skipped(self, db, known_names):
        """Test links and codes are not names"""
        ingestor = AlternateNameIngestor(db, known_names)
        assert ingestor.build_alternate_name(alt_row(3, 4407066, "https://en.wikipedia.org/wiki/St._Louis", lang="link")) is None
        assert ingestor.build_alternate_name(alt_row(4, 4407066, "STL", lang="iata")) is None
        assert ingestor.stats.rejected["pseudo_language"] == 2

    def test_unknown_owner_skipped(self, db, known_names):
        """Test names for ids outside the gazetteer"""
        ingestor = AlternateNameIngestor(db, known_names)
        assert ingestor.build_alternate_name(alt_row(5, 999, "Nowhere")) is None
        assert ingestor.stats.rejected["no_owner"] == 1

    def test_empty_key_skipped(self, db, known_names):
        """Test names that fold to nothing"""
        ingestor = AlternateNameIngestor(db, known_names)
        assert ingestor.build_alternate_name(alt_row(6, 4407066, "!!!")) is None
        assert ingestor.stats.rejected["empty_key"] == 1

    def test_admin_and_country_owners(self, db, known_names):
        """Test owners other than places"""
        ingestor = AlternateNameIngestor(db, known_names)

        state = ingestor.build_alternate_name(alt_row(7, 4398678, "Misuri", lang="es"))
        assert (state.owner_type, state.owner_id, state.key) == ("S", 4398678, "MISURI")

        country = ingestor.build_alternate_name(alt_row(8, 2635167, "Great Britain", lang="en", colloquial="1"))
        assert (country.owner_type, country.key, country.is_colloquial) == ("C", "GREATBRITAIN", True)


@pytest.mark.integration
class TestAlternateNameFile:
    """Test streaming an alternate names feed"""

    def test_ingest_file(self, db, known_names, temp_dir):
        """Test rows are stored and repeated rows are idempotent"""
        path = temp_dir / "alternateNamesV2.txt"
        rows = [
            alt_row(1, 4407066, "San Luis", lang="es"),
            alt_row(2, 4407066, "St. Louis", lang="en"),
            alt_row(3, 4407066, "Сент-Луис", lang="ru"),
            alt_row(4, 4407066, "STL", lang="iata"),
            alt_row(1, 4407066, "San Luis", lang="es", preferred="1"),
        ]
        with open(path, "w", encoding="utf-8") as f:
            for row in rows:
                f.write("\t".join(row[c] for c in ALTERNATE_NAME_COLUMNS) + "\n")

        ingestor = AlternateNameIngestor(db, known_names)
        stats = ingestor.ingest_file(path, show_progress=False)

        assert stats.read == 5
        assert stats.alternate_names == 3
        assert stats.errors == 0
        assert stats.total_rejected == 2

        stored = db.get_alternate_names("P", 1)
        assert {(n["lang"], n["name"]) for n in stored} == {("es", "San Luis"), ("ru", "Сент-Луис")}
        assert [n["is_preferred"] for n in stored if n["lang"] == "es"] == [True]
