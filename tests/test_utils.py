"""
Unit tests for utils module
Tests FileFetcher, archive extraction, feed readers and geo helpers
"""
import pytest
import os
import sys
import time
import zipfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from gazetteer_builder import utils


def _response(status_code, chunks=(), json_data=None):
    """Context-managed streaming response mock"""
    response = MagicMock(status_code=status_code)
    response.iter_content.return_value = list(chunks)
    response.json.return_value = json_data
    cm = MagicMock()
    cm.__enter__.return_value = response
    cm.__exit__.return_value = False
    return cm


@pytest.fixture
def fetcher(temp_dir):
    f = utils.FileFetcher(archive_dir=temp_dir / "archive", timeout=5)
    f.session = MagicMock()
    return f


def _age(path: Path, seconds: float):
    old = time.time() - seconds
    os.utime(path, (old, old))


# =========================
# FileFetcher Tests
# =========================
@pytest.mark.unit
class TestFileFetcher:
    """Test FileFetcher caching, fallback and retry"""

    def test_fresh_cache_skips_network(self, fetcher, temp_dir):
        """Test a recent cached file is reused"""
        cached = temp_dir / "countryInfo.txt"
        cached.write_text("cached")

        assert fetcher.fetch("https://example.org/countryInfo.txt", cached, max_age=3600) == cached
        fetcher.session.get.assert_not_called()

    def test_download(self, fetcher, temp_dir):
        """Test a missing file is downloaded"""
        fetcher.session.get.return_value = _response(200, [b"US\t", b"USA\n"])
        dest = temp_dir / "cache" / "countryInfo.txt"

        assert fetcher.fetch("https://example.org/countryInfo.txt", dest) == dest
        assert dest.read_bytes() == b"US\tUSA\n"
        assert not dest.with_suffix(".txt.tmp").exists()

    def test_stale_cache_sends_if_modified_since(self, fetcher, temp_dir):
        """Test revalidation with a 304 keeps the file and refreshes its time"""
        cached = temp_dir / "admin1Codes.txt"
        cached.write_text("cached")
        _age(cached, 200 * 86400)

        fetcher.session.get.return_value = _response(304)
        fetcher.fetch("https://example.org/admin1CodesASCII.txt", cached, max_age=90 * 86400)

        headers = fetcher.session.get.call_args[1]["headers"]
        assert "If-Modified-Since" in headers
        assert cached.read_text() == "cached"
        assert time.time() - cached.stat().st_mtime < 60

    def test_empty_cache_file_discarded(self, fetcher, temp_dir):
        """Test zero-length files count as missing"""
        cached = temp_dir / "empty.txt"
        cached.touch()
        fetcher.session.get.return_value = _response(200, [b"data"])

        fetcher.fetch("https://example.org/empty.txt", cached, max_age=3600)

        assert cached.read_bytes() == b"data"

    def test_http_error_uses_cached_copy(self, fetcher, temp_dir):
        """Test a failed download falls back to the stale cache"""
        cached = temp_dir / "admin2Codes.txt"
        cached.write_text("stale")
        _age(cached, 200 * 86400)
        fetcher.session.get.return_value = _response(404)

        assert fetcher.fetch("https://example.org/admin2Codes.txt", cached, max_age=3600) == cached
        assert cached.read_text() == "stale"

    def test_http_error_uses_archived_copy(self, fetcher, temp_dir):
        """Test the archive directory is the last resort"""
        archived = temp_dir / "archive" / "cities15000.zip"
        archived.parent.mkdir(parents=True)
        archived.write_bytes(b"zip")
        fetcher.session.get.return_value = _response(403)

        assert fetcher.fetch("https://example.org/cities15000.zip", temp_dir / "cities15000.zip") == archived

    def test_no_copy_raises(self, fetcher, temp_dir):
        """Test failure with nothing cached is fatal"""
        fetcher.session.get.return_value = _response(404)

        with pytest.raises(utils.FetchError):
            fetcher.fetch("https://example.org/missing.zip", temp_dir / "missing.zip")

    @patch("time.sleep")
    def test_server_error_retried(self, mock_sleep, fetcher, temp_dir):
        """Test 5xx responses are retried"""
        fetcher.session.get.side_effect = [_response(503), _response(429), _response(200, [b"ok"])]
        dest = temp_dir / "retry.txt"

        fetcher.fetch("https://example.org/retry.txt", dest)

        assert dest.read_bytes() == b"ok"
        assert fetcher.session.get.call_count == 3

    @patch("time.sleep")
    def test_connection_errors_exhaust_retries(self, mock_sleep, fetcher, temp_dir):
        """Test persistent connection failures give up after max_retries attempts"""
        fetcher.session.get.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(utils.FetchError):
            fetcher.fetch("https://example.org/down.txt", temp_dir / "down.txt")

        assert fetcher.session.get.call_count == utils.config.FETCH_CONFIG["max_retries"]

    def test_fetch_json(self, fetcher):
        """Test JSON documents"""
        response = MagicMock(status_code=200)
        response.json.return_value = {"assets": []}
        fetcher.session.get.return_value = response

        assert fetcher.fetch_json("https://example.org/release") == {"assets": []}

    def test_fetch_json_invalid(self, fetcher):
        """Test invalid JSON raises FetchError"""
        response = MagicMock(status_code=200)
        response.json.side_effect = ValueError("bad json")
        fetcher.session.get.return_value = response

        with pytest.raises(utils.FetchError):
            fetcher.fetch_json("https://example.org/release")


# =========================
# Archive Tests
# =========================
@pytest.mark.unit
class TestExtractArchiveMember:
    """Test zip extraction"""

    @pytest.fixture
    def archive(self, temp_dir):
        path = temp_dir / "cities15000.zip"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("cities15000.txt", "4407066\tSt. Louis\n")
        _age(path, 3600)
        return path

    def test_extract_member(self, archive):
        """Test extraction inherits the archive time"""
        result = utils.extract_archive_member(archive, "cities15000.txt")

        assert result == archive.parent / "cities15000.txt"
        assert result.read_text() == "4407066\tSt. Louis\n"
        assert abs(result.stat().st_mtime - archive.stat().st_mtime) < 1

    def test_single_member_default(self, archive, temp_dir):
        """Test the only member is used when none is named"""
        dest = temp_dir / "out" / "cities.txt"
        dest.parent.mkdir()
        assert utils.extract_archive_member(archive, destination=dest) == dest
        assert dest.exists()

    def test_reuses_current_extraction(self, archive):
        """Test an extraction as new as its archive is not redone"""
        result = utils.extract_archive_member(archive, "cities15000.txt")
        result.write_text("kept")
        mtime = archive.stat().st_mtime
        os.utime(result, (mtime, mtime))

        utils.extract_archive_member(archive, "cities15000.txt")

        assert result.read_text() == "kept"

    def test_missing_member(self, archive):
        """Test an absent member raises"""
        with pytest.raises(utils.ArchiveError):
            utils.extract_archive_member(archive, "allCountries.txt")

    def test_missing_archive(self, temp_dir):
        """Test an absent archive raises ArchiveError"""
        with pytest.raises(utils.ArchiveError):
            utils.extract_archive_member(temp_dir / "cities15000.zip", "cities15000.txt")

    def test_failed_copy_removes_partial_file(self, archive, monkeypatch):
        """Test an interrupted extraction leaves no partial output behind"""
        def interrupted(src, dst, *args, **kwargs):
            dst.write(b"4407066\tSt.")
            raise OSError("No space left on device")

        monkeypatch.setattr(utils.shutil, "copyfileobj", interrupted)

        with pytest.raises(utils.ArchiveError):
            utils.extract_archive_member(archive, "cities15000.txt")

        assert not (archive.parent / "cities15000.txt.tmp").exists()
        assert not (archive.parent / "cities15000.txt").exists()

    def test_corrupt_archive(self, temp_dir):
        """Test a non-zip file raises"""
        path = temp_dir / "broken.zip"
        path.write_bytes(b"not a zip")
        with pytest.raises(utils.ArchiveError):
            utils.extract_archive_member(path)

    def test_ambiguous_archive(self, temp_dir):
        """Test several members without a name raises"""
        path = temp_dir / "two.zip"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("a.txt", "a")
            zf.writestr("b.txt", "b")
        with pytest.raises(utils.ArchiveError):
            utils.extract_archive_member(path)


# =========================
# Feed Reader Tests
# =========================
@pytest.mark.unit
class TestFeedReaders:
    """Test TSV and list readers"""

    def test_read_tsv_skips_comments(self, temp_dir):
        """Test comment lines are dropped and cells stay strings"""
        path = temp_dir / "feed.txt"
        path.write_text('#header\nUS\t00501\t"quoted\nFR\t\tx\n', encoding="utf-8")

        df = utils.read_tsv(path, ["a", "b", "c"], skip_comments=True)

        assert len(df) == 2
        assert df.loc[0, "b"] == "00501"
        assert df.loc[0, "c"] == '"quoted'
        assert df.loc[1, "b"] == ""

    def test_iter_tsv_chunks(self, temp_dir):
        """Test chunked streaming"""
        path = temp_dir / "feed.txt"
        path.write_text("".join(f"{i}\tname{i}\n" for i in range(5)), encoding="utf-8")

        chunks = list(utils.iter_tsv_chunks(path, ["id", "name"], chunk_size=2))

        assert [len(c) for c in chunks] == [2, 2, 1]
        assert chunks[2].iloc[0]["name"] == "name4"

    def test_read_lines(self, temp_dir):
        """Test blank lines and whitespace are dropped"""
        path = temp_dir / "list.txt"
        path.write_text("Mars\n\n  Vega  \n", encoding="utf-8")
        assert utils.read_lines(path) == ["Mars", "Vega"]

    @pytest.mark.parametrize("value, expected", [
        ("42", 42), (" 7 ", 7), ("", None), ("x", None), (None, None),
    ])
    def test_to_int(self, value, expected):
        """Test integer parsing"""
        assert utils.to_int(value) == expected

    def test_to_float(self):
        """Test float parsing"""
        assert utils.to_float("-93.29824") == pytest.approx(-93.29824)
        assert utils.to_float("") is None
        assert utils.to_float(float("nan")) is None
        assert utils.to_float("x", 0.0) == 0.0


# =========================
# Geo Helper Tests
# =========================
@pytest.mark.unit
class TestRoughDistance:
    """Test rough_distance_km"""

    def test_same_point(self):
        """Test identical points are zero apart"""
        assert utils.rough_distance_km(38.627, -90.199, 38.627, -90.199) == pytest.approx(0.0, abs=1e-6)

    def test_one_degree_latitude(self):
        """Test a degree of latitude"""
        assert utils.rough_distance_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.32, abs=0.1)

    def test_antipodes(self):
        """Test half the circumference"""
        assert utils.rough_distance_km(0.0, 0.0, 0.0, 180.0) == pytest.approx(20037.6, abs=1.0)


@pytest.mark.unit
class TestSafeStat:
    """Test safe_stat"""

    def test_missing(self, temp_dir):
        """Test missing files"""
        assert utils.safe_stat(temp_dir / "nope") is None

    def test_empty_deleted(self, temp_dir):
        """Test zero-length files are removed on request"""
        path = temp_dir / "empty"
        path.touch()
        assert utils.safe_stat(path, delete_if_empty=True) is None
        assert not path.exists()
