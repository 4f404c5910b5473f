"""
Shared utilities for the Gazetteer Builder pipeline
Contains file acquisition, archive extraction, feed readers and geo helpers
"""
import csv
import io
import logging
import math
import os
import shutil
import time
import zipfile
from email.utils import formatdate
from pathlib import Path
from typing import Dict, Any, Iterator, List, Optional, Union

import pandas as pd
import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)
from tqdm import tqdm

from . import config

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6378.14


# =========================
# Custom Exceptions
# =========================
class GazetteerError(Exception):
    """Base exception for gazetteer build errors"""
    pass


class FetchError(GazetteerError):
    """Raised when a feed cannot be acquired and no cached copy exists"""
    pass


class TransientFetchError(FetchError):
    """Raised for retryable download failures (timeouts, 429, 5xx)"""
    pass


class ArchiveError(GazetteerError):
    """Raised when an archive is corrupt or lacks the requested member"""
    pass


class ReferenceDataError(GazetteerError):
    """Raised when a reference feed is missing or corrupt (fatal)"""
    pass


class TimezoneIndexError(GazetteerError):
    """Raised when the timezone index is misused or cannot be built"""
    pass


# =========================
# File Acquisition
# =========================
def safe_stat(path: Path, delete_if_empty: bool = False) -> Optional[os.stat_result]:
    """
    Stat a file, returning None when it does not exist

    Args:
        path: File to stat
        delete_if_empty: Remove zero-length files and report them as missing

    Returns:
        os.stat_result or None
    """
    try:
        stats = path.stat()
    except OSError:
        return None

    if delete_if_empty and stats.st_size == 0:
        path.unlink(missing_ok=True)
        return None

    return stats


class FileFetcher:
    """
    Downloads source feeds into a local cache with automatic retry logic

    A fresh cached file is reused without touching the network. When a
    download fails the previously cached copy is used, then a copy under
    the archive directory.
    """

    def __init__(
        self,
        archive_dir: Optional[Path] = None,
        timeout: Optional[int] = None,
        debug: bool = False
    ):
        """
        Initialize file fetcher

        Args:
            archive_dir: Directory holding last-resort copies (uses config if None)
            timeout: Request timeout in seconds (uses config if None)
            debug: Enable debug logging
        """
        self.archive_dir = Path(archive_dir) if archive_dir else config.ARCHIVE_DIR
        self.timeout = timeout or config.FETCH_CONFIG["timeout"]
        self.debug = debug
        self.session = requests.Session()
        self.session.headers["User-Agent"] = config.FETCH_CONFIG["user_agent"]

    def fetch(
        self,
        url: str,
        destination: Union[str, Path],
        max_age: Optional[float] = None
    ) -> Path:
        """
        Return a local copy of url, downloading it when the cache is stale

        Args:
            url: Source URL
            destination: Cache file path
            max_age: Maximum cache age in seconds (None = always revalidate)

        Returns:
            Path to a readable local file

        Raises:
            FetchError: If the download fails and no cached or archived copy exists
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        stats = safe_stat(destination, delete_if_empty=True)

        if stats and max_age is not None and time.time() - stats.st_mtime < max_age:
            logger.info(f"Using cached {destination.name}")
            return destination

        if not stats:
            logger.info(f"Retrieving {destination.name}")

        try:
            updated = self._download(url, destination, stats)
        except FetchError as e:
            return self._fallback(destination, stats, e)
        except requests.RequestException as e:
            return self._fallback(destination, stats, e)

        if stats:
            logger.info(
                f"{'Updating' if updated else 'Using cached'} {destination.name}"
            )

        return destination

    def _fallback(
        self,
        destination: Path,
        stats: Optional[os.stat_result],
        error: Exception
    ) -> Path:
        if stats:
            logger.warning(
                f"Failed to acquire {destination.name} ({error}). Will use cached copy."
            )
            return destination

        archived = self.archive_dir / destination.name
        if safe_stat(archived):
            logger.warning(
                f"Failed to acquire {destination.name} ({error}). Will use archived copy."
            )
            return archived

        raise FetchError(f"Failed to acquire {destination.name}: {error}")

    @retry(
        reraise=True,
        stop=stop_after_attempt(config.FETCH_CONFIG["max_retries"]),
        wait=wait_exponential(
            multiplier=1,
            min=config.FETCH_CONFIG["retry_min_wait"],
            max=config.FETCH_CONFIG["retry_max_wait"]
        ),
        retry=retry_if_exception_type(TransientFetchError),
    )
    def _download(
        self,
        url: str,
        destination: Path,
        stats: Optional[os.stat_result]
    ) -> bool:
        """
        Download url to destination via a temp file

        Returns:
            True if the file was (re)written, False if the server reported
            the cached copy as current

        Raises:
            TransientFetchError: For timeouts, connection errors, 429 and 5xx (retried)
            FetchError: For other HTTP errors
        """
        headers = {}
        if stats:
            headers["If-Modified-Since"] = formatdate(stats.st_mtime, usegmt=True)

        temp_path = destination.with_suffix(destination.suffix + ".tmp")

        try:
            with self.session.get(
                url, headers=headers, stream=True, timeout=self.timeout
            ) as response:
                if response.status_code == 304:
                    os.utime(destination)
                    return False

                if response.status_code == 429 or response.status_code >= 500:
                    logger.warning(f"{response.status_code} from {url}, will retry...")
                    raise TransientFetchError(f"{response.status_code}: {url}")

                if response.status_code >= 400:
                    raise FetchError(f"{response.status_code} error: {url}")

                with open(temp_path, "wb") as f:
                    for chunk in response.iter_content(
                        chunk_size=config.FETCH_CONFIG["chunk_size"]
                    ):
                        f.write(chunk)

        except (requests.ConnectionError, requests.Timeout) as e:
            temp_path.unlink(missing_ok=True)
            raise TransientFetchError(f"Request failed: {e}")
        except FetchError:
            temp_path.unlink(missing_ok=True)
            raise

        temp_path.replace(destination)

        if self.debug:
            logger.debug(f"Downloaded {url} -> {destination}")

        return True

    @retry(
        reraise=True,
        stop=stop_after_attempt(config.FETCH_CONFIG["max_retries"]),
        wait=wait_exponential(
            multiplier=1,
            min=config.FETCH_CONFIG["retry_min_wait"],
            max=config.FETCH_CONFIG["retry_max_wait"]
        ),
        retry=retry_if_exception_type(TransientFetchError),
    )
    def fetch_json(self, url: str) -> Dict[str, Any]:
        """
        GET a JSON document (release metadata and the like)

        Raises:
            TransientFetchError: For retryable failures
            FetchError: For other HTTP errors or invalid JSON
        """
        try:
            response = self.session.get(url, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientFetchError(f"Request failed: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientFetchError(f"{response.status_code}: {url}")
        if response.status_code >= 400:
            raise FetchError(f"{response.status_code} error: {url}")

        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {url}: {e}")


# =========================
# Archive Extraction
# =========================
def extract_archive_member(
    archive_path: Path,
    member: Optional[str] = None,
    destination: Optional[Path] = None
) -> Path:
    """
    Extract one member of a zip archive next to it

    The extracted file's modification time is set to the archive's, so an
    extraction is reused until the archive itself changes.

    Args:
        archive_path: Path to zip archive
        member: Member name (archive must hold exactly one file if None)
        destination: Output path (defaults to archive directory / member name)

    Returns:
        Path to the extracted file

    Raises:
        ArchiveError: If the archive is missing or corrupt, or lacks the member
    """
    archive_path = Path(archive_path)
    archive_stats = safe_stat(archive_path)
    if archive_stats is None:
        raise ArchiveError(f"Archive not found: {archive_path}")
    archive_mtime = archive_stats.st_mtime

    try:
        with zipfile.ZipFile(archive_path) as zf:
            names = zf.namelist()

            if member is None:
                if len(names) != 1:
                    raise ArchiveError(
                        f"{archive_path.name} holds {len(names)} members, expected one"
                    )
                member = names[0]
            elif member not in names:
                raise ArchiveError(f"{archive_path.name} does not contain {member}")

            if destination is None:
                destination = archive_path.parent / Path(member).name

            existing = safe_stat(destination, delete_if_empty=True)
            if existing and abs(existing.st_mtime - archive_mtime) <= 2:
                logger.info(f"Using cached unzipped {destination.name}")
                return destination

            logger.info(f"Unzipping {member} from {archive_path.name}")
            temp_path = destination.with_suffix(destination.suffix + ".tmp")
            try:
                with zf.open(member) as src, open(temp_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            except (OSError, zipfile.BadZipFile) as e:
                temp_path.unlink(missing_ok=True)
                raise ArchiveError(f"Failed to extract {member} from {archive_path}: {e}")

    except zipfile.BadZipFile as e:
        raise ArchiveError(f"Corrupt archive {archive_path}: {e}")

    temp_path.replace(destination)
    os.utime(destination, (archive_mtime, archive_mtime))

    return destination


# =========================
# Feed Readers
# =========================
_TSV_OPTIONS = {
    "sep": "\t",
    "header": None,
    "dtype": str,
    "keep_default_na": False,
    "na_filter": False,
    "quoting": csv.QUOTE_NONE,
    "on_bad_lines": "skip",
    "encoding": "utf-8",
}


def read_tsv(
    file_path: Path,
    names: List[str],
    skip_comments: bool = False
) -> pd.DataFrame:
    """
    Read a tab-delimited feed into a string-typed DataFrame

    Args:
        file_path: Path to feed
        names: Column names (rows with extra fields are skipped)
        skip_comments: Drop lines starting with '#'

    Returns:
        DataFrame with every cell as str ('' for missing)
    """
    if skip_comments:
        with open(file_path, "r", encoding="utf-8") as f:
            text = "".join(line for line in f if not line.startswith("#"))
        source = io.StringIO(text)
    else:
        source = file_path

    options = dict(_TSV_OPTIONS)
    if skip_comments:
        del options["encoding"]

    df = pd.read_csv(source, names=names, **options)
    return df.fillna("")


def iter_tsv_chunks(
    file_path: Path,
    names: List[str],
    chunk_size: Optional[int] = None
) -> Iterator[pd.DataFrame]:
    """
    Stream a large tab-delimited feed in string-typed chunks

    Args:
        file_path: Path to feed
        names: Column names
        chunk_size: Rows per chunk (uses config if None)

    Yields:
        DataFrame chunks
    """
    chunk_size = chunk_size or config.PIPELINE_CONFIG["chunk_size"]

    with pd.read_csv(file_path, names=names, chunksize=chunk_size, **_TSV_OPTIONS) as reader:
        for chunk in reader:
            yield chunk.fillna("")


def read_lines(file_path: Path) -> List[str]:
    """Read a line-oriented list, dropping blanks and surrounding whitespace"""
    with open(file_path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip()]


def to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    """Parse an integer feed field, returning default for blanks and junk"""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Parse a float feed field, returning default for blanks and junk"""
    try:
        result = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return default if math.isnan(result) else result


# =========================
# Geo Helpers
# =========================
def rough_distance_km(
    lat1: float,
    lon1: float,
    lat2: float,
    lon2: float
) -> float:
    """
    Rough great-circle distance between two coordinates in kilometers

    Uses the spherical law of cosines, good enough for flagging neighbors.

    Args:
        lat1, lon1: First coordinate
        lat2, lon2: Second coordinate

    Returns:
        Distance in kilometers
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    cos_delta = (
        math.sin(phi1) * math.sin(phi2) +
        math.cos(phi1) * math.cos(phi2) * math.cos(math.radians(lon1 - lon2))
    )
    # Rounding can push identical points just past 1
    cos_delta = max(-1.0, min(1.0, cos_delta))

    return math.acos(cos_delta) * EARTH_RADIUS_KM


# =========================
# Progress Tracking
# =========================
def create_progress_bar(
    total: Optional[int] = None,
    desc: str = "Processing",
    disable: bool = False
) -> tqdm:
    """
    Create progress bar

    Args:
        total: Total items (None for unknown-length streams)
        desc: Description
        disable: Suppress output

    Returns:
        tqdm progress bar
    """
    return tqdm(total=total, desc=desc, unit="rec", disable=disable)
