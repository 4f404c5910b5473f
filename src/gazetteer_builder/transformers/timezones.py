"""
Timezone transformer - Assign IANA timezones to coordinates

Uses the timezone-boundary-builder GeoJSON release (timezones-with-oceans).
Path: data/cache/timezone_shapes.json

Polygons are bucketed into a 24 x 12 grid of 15 degree cells by bounding
box, so a point lookup only runs exact point-in-polygon tests against the
few polygons sharing its cell. When no polygon covers a point, the
TimezoneResolver falls back to timezones already stored for nearby places.
"""

from __future__ import annotations
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

from shapely.geometry import Point, shape
from shapely.prepared import prep

from .. import config
from ..utils import FetchError, TimezoneIndexError, extract_archive_member

logger = logging.getLogger(__name__)

_INDEX: Optional["TimezoneIndex"] = None


@dataclass(frozen=True)
class TimezonePolygon:
    tzid: str
    geometry: object = field(repr=False, compare=False)
    bbox: tuple = ()  # (min_lon, min_lat, max_lon, max_lat)
    prepared: object = field(default=None, repr=False, compare=False)

    @classmethod
    def from_geometry(cls, tzid: str, geometry) -> "TimezonePolygon":
        return cls(tzid=tzid, geometry=geometry, bbox=tuple(geometry.bounds), prepared=prep(geometry))

    def covers(self, lat: float, lon: float) -> bool:
        # boundary points count as inside
        return self.prepared.covers(Point(lon, lat))


class TimezoneIndex:
    """Grid-bucketed point -> timezone lookup. Built once; read-only afterwards."""

    def __init__(self, cell_degrees: int | None = None):
        self.cell_degrees = cell_degrees or config.TIMEZONE_CONFIG["cell_degrees"]
        self.columns = 360 // self.cell_degrees
        self.rows = 180 // self.cell_degrees
        self.grid: list[list[list[TimezonePolygon]]] = [
            [[] for _ in range(self.rows)] for _ in range(self.columns)
        ]
        self.loaded = False
        self.polygon_count = 0

    def _row(self, lat: float) -> int:
        return min(max(math.floor((lat + 90) / self.cell_degrees), 0), self.rows - 1)

    def cells_for_bbox(self, bbox: Sequence[float]) -> list[tuple[int, int]]:
        """Every (column, row) cell a bounding box touches, antimeridian-aware."""
        min_lon, min_lat, max_lon, max_lat = bbox

        if max_lon - min_lon >= 360:
            columns = list(range(self.columns))
        else:
            lon_a = min_lon + 360 if min_lon < 0 else min_lon
            lon_b = max_lon
            while lon_b < lon_a:
                lon_b += 360
            columns = []
            for x in range(math.floor(lon_a / self.cell_degrees), math.floor(lon_b / self.cell_degrees) + 1):
                if x % self.columns not in columns:
                    columns.append(x % self.columns)

        rows = range(self._row(min_lat), self._row(max_lat) + 1)
        return [(x, y) for x in columns for y in rows]

    def build(self, polygons: Iterable[TimezonePolygon]) -> "TimezoneIndex":
        if self.loaded:
            raise TimezoneIndexError("Timezone index is already built")

        for polygon in polygons:
            for x, y in self.cells_for_bbox(polygon.bbox):
                self.grid[x][y].append(polygon)
            self.polygon_count += 1

        self.loaded = True
        logger.info(f"Timezone index built from {self.polygon_count} polygons")
        return self

    def candidates(self, lat: float, lon: float) -> list[TimezonePolygon]:
        x = math.floor((lon % 360) / self.cell_degrees) % self.columns
        return self.grid[x][self._row(lat)]

    def find_timezone(self, lat: float, lon: float) -> Optional[str]:
        """First polygon in the point's cell that covers it, else None."""
        for polygon in self.candidates(lat, lon):
            if polygon.covers(lat, lon):
                return polygon.tzid
        return None


def load_timezone_polygons(path: str | Path) -> list[TimezonePolygon]:
    """
    Read a timezone GeoJSON FeatureCollection, skipping Etc/ zones.

    Raises:
        TimezoneIndexError: If the file is not a usable FeatureCollection
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise TimezoneIndexError(f"Cannot read timezone shapes {path}: {e}")

    features = data.get("features") if isinstance(data, dict) else None
    if features is None:
        raise TimezoneIndexError(f"{path} is not a GeoJSON FeatureCollection")

    polygons = []
    for feature in features:
        tzid = (feature.get("properties") or {}).get("tzid")
        if not tzid or tzid.startswith("Etc/") or not feature.get("geometry"):
            continue
        geometry = shape(feature["geometry"])
        if not geometry.is_empty:
            polygons.append(TimezonePolygon.from_geometry(tzid, geometry))

    logger.info(f"Loaded {len(polygons)} timezone polygons from {path.name}")
    return polygons


def fetch_timezone_shapes(fetcher) -> Path:
    """
    Download (or reuse) the latest timezone-with-oceans release and unzip it.

    Args:
        fetcher: utils.FileFetcher

    Returns:
        Path to the extracted GeoJSON file
    """
    archive = config.TIMEZONE_SHAPES_FILE
    asset_name = config.TIMEZONE_CONFIG["asset_name"]

    try:
        release = fetcher.fetch_json(config.TIMEZONE_RELEASE_URL)
        url = next(
            (a.get("browser_download_url") for a in release.get("assets", []) if a.get("name") == asset_name),
            None,
        )
        if not url:
            raise FetchError("Cannot obtain timezone shapes release info")
        archive = fetcher.fetch(url, archive, max_age=config.FETCH_CONFIG["max_cache_age"])
    except FetchError as e:
        if not archive.exists():
            raise
        logger.warning(f"{e}. Will use cached timezone shapes.")

    return extract_archive_member(archive, destination=config.TIMEZONE_SHAPES_JSON_FILE)


def get_timezone_index(path: str | Path | None = None) -> TimezoneIndex:
    """Process-wide index, built on first call."""
    global _INDEX
    if _INDEX is None:
        index = TimezoneIndex()
        index.build(load_timezone_polygons(path or config.TIMEZONE_SHAPES_JSON_FILE))
        _INDEX = index
    return _INDEX


class TimezoneStore(Protocol):
    def find_timezones_near(self, lat: float, lon: float, delta: float) -> list[tuple[str, str]]:
        ...


class TimezoneResolver:
    """
    Fallback chain for records without a timezone:
    source value, spatial index, then stored neighbors.
    """

    def __init__(
        self,
        index: TimezoneIndex | None = None,
        store: TimezoneStore | None = None,
        steps: Sequence[float] | None = None,
    ):
        self.index = index
        self.store = store
        self.steps = tuple(steps or config.TIMEZONE_CONFIG["proximity_steps"])

    def resolve(self, lat: Optional[float], lon: Optional[float], explicit: Optional[str] = None) -> tuple[Optional[str], str]:
        """Returns (timezone or None, method)."""
        if explicit:
            return explicit, "source"

        if lat is None or lon is None:
            return None, "unresolved"

        if self.index is not None and self.index.loaded:
            tz = self.index.find_timezone(lat, lon)
            if tz:
                return tz, "index"

        if self.store is not None:
            tz = self.proximity_lookup(lat, lon)
            if tz:
                return tz, "proximity"

        return None, "unresolved"

    def proximity_lookup(self, lat: float, lon: float) -> Optional[str]:
        """
        Widen a box around the point until stored places agree on exactly
        one (timezone, country). Any disagreement gives up.
        """
        for delta in self.steps:
            matches = set(self.store.find_timezones_near(lat, lon, delta))

            if len(matches) == 1:
                return next(iter(matches))[0]

            if len(matches) > 1:
                logger.debug(f"Timezone disagreement within ±{delta}° of ({lat}, {lon}): {sorted(matches)}")
                return None

        return None
