"""
Pipeline Orchestrator - Main CLI
Coordinates reference → places → alternate names → postal codes rebuild
"""
import sys
import logging
import logging.config
from pathlib import Path
from typing import Dict, Iterable, Optional
import argparse

import duckdb

from . import config
from .alternates import AlternateNameIngestor
from .database import DatabaseManager, GazetteerQueries
from .database.models import ProcessingStatus
from .ingest import IngestStats, KnownNameIndex, PlaceIngestor
from .neighbors import find_close_neighbors, write_neighbor_report
from .postal import PostalIngestor
from .reference import ReferenceData
from .resolver import adjust_us_county_name
from .transformers.timezones import TimezoneResolver, fetch_timezone_shapes, get_timezone_index
from .utils import FileFetcher, FetchError, GazetteerError, ReferenceDataError, extract_archive_member, safe_stat

logger = logging.getLogger(__name__)

STAGES = ["countries", "admin", "places", "alt_names", "postal"]
DEFAULT_STAGES = ["countries", "admin", "places"]


# =========================
# Pipeline Runner
# =========================
class Pipeline:
    """Orchestrates a gazetteer rebuild"""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        debug: bool = False,
        fetcher: Optional[FileFetcher] = None,
        show_progress: bool = True
    ):
        """
        Initialize pipeline

        Args:
            db_path: DuckDB file (uses config if None)
            debug: Enable debug logging
            fetcher: File acquisition service (created if None)
            show_progress: Display progress bars
        """
        self.debug = debug
        self.db = DatabaseManager(db_path)
        self.fetcher = fetcher or FileFetcher(debug=debug)
        self.show_progress = show_progress
        self.reference: Optional[ReferenceData] = None
        self.timezone_index = None

    # =========================
    # Initialization (no store mutation)
    # =========================
    def acquire(self, feed_name: str, override: Optional[Path] = None) -> Path:
        """Local path of a feed, downloading and unzipping as needed"""
        if override:
            override = Path(override)
            if safe_stat(override) is None:
                raise FetchError(f"Feed file not found for {feed_name}: {override}")
            return override

        url, cache_file, member = config.get_feed(feed_name)
        local = self.fetcher.fetch(url, cache_file, max_age=config.FETCH_CONFIG["max_cache_age"])

        if member:
            local = extract_archive_member(local, member)

        return local

    def load_reference(self, files: Optional[Dict[str, Path]] = None) -> ReferenceData:
        """Fetch and load reference tables; raises before anything is written"""
        files = files or {}
        us_counties = files.get("us_counties")
        self.reference = ReferenceData.load(
            self.acquire("country_info", files.get("country_info")),
            self.acquire("admin1", files.get("admin1")),
            self.acquire("admin2", files.get("admin2")),
            us_counties_file=self.acquire("us_counties", us_counties) if us_counties else config.US_COUNTIES_FILE,
            celestial_file=config.CELESTIAL_FILE,
        )
        return self.reference

    def load_timezones(self, shapes_file: Optional[Path] = None):
        """Build the process-wide timezone index"""
        path = shapes_file or fetch_timezone_shapes(self.fetcher)
        self.timezone_index = get_timezone_index(path)
        return self.timezone_index

    # =========================
    # Run
    # =========================
    def run(
        self,
        stages: Iterable[str],
        files: Optional[Dict[str, Path]] = None,
        timezones: bool = False,
        all_countries: bool = False
    ) -> Dict[str, Dict]:
        """
        Run the selected stages in dependency order

        Args:
            stages: Subset of STAGES
            files: Feed path overrides keyed by feed name
            timezones: Load timezone polygons for this run
            all_countries: Follow the cities pass with allCountries

        Returns:
            Stats per stage
        """
        stages = [s for s in STAGES if s in set(stages)]
        files = files or {}

        # Everything that can fail fatally happens before the first write
        self.load_reference(files)
        feeds = {}
        if "places" in stages:
            feeds["cities"] = self.acquire("cities", files.get("cities"))
            if all_countries:
                feeds["all_countries"] = self.acquire("all_countries", files.get("all_countries"))
        if "alt_names" in stages:
            feeds["alternate_names"] = self.acquire("alternate_names", files.get("alternate_names"))
        if "postal" in stages:
            feeds["postal_codes"] = self.acquire("postal_codes", files.get("postal_codes"))
        if timezones:
            shapes_file = files.get("timezones")
            self.load_timezones(self.acquire("timezones", shapes_file) if shapes_file else None)

        self.db.initialize_schema()
        results = {}

        for stage in stages:
            logger.info("=" * 60)
            logger.info(f"STAGE: {stage}")
            logger.info("=" * 60)
            results[stage] = self._run_stage(stage, lambda s=stage: self._stage(s, feeds))

        return results

    def _run_stage(self, name: str, func) -> Dict:
        run_id = self.db.start_processing_run(name, {
            "priority_country": config.PIPELINE_CONFIG["priority_country"],
            "timezones_loaded": bool(self.timezone_index),
        })

        try:
            stats = func()
        except (GazetteerError, duckdb.Error, OSError) as e:
            self.db.update_processing_run(run_id, status=ProcessingStatus.FAILED.value, error_message=str(e))
            raise

        stats_dict = stats.to_dict() if isinstance(stats, IngestStats) else stats
        status = ProcessingStatus.PARTIAL if stats_dict.get("errors") else ProcessingStatus.COMPLETED
        self.db.update_processing_run(
            run_id,
            status=status.value,
            processed_items=stats_dict.get("read", 0),
            failed_items=stats_dict.get("errors", 0),
            stats_dict=stats_dict,
        )

        return stats_dict

    def _stage(self, stage: str, feeds: Dict[str, Path]):
        ref = self.reference

        if stage == "countries":
            count = self.db.upsert_countries(ref.countries.values())
            return {"read": count, "inserted": count, "errors": 0}

        if stage == "admin":
            count = self.db.upsert_admin("admin1", ref.admin1s.values())
            count += self.db.upsert_admin("admin2", ref.admin2s.values())
            return {"read": count, "inserted": count, "errors": 0}

        resolver = TimezoneResolver(index=self.timezone_index, store=self.db)

        if stage == "places":
            known_names = KnownNameIndex.from_store(self.db)
            stats = PlaceIngestor(
                self.db, ref, resolver, known_names,
                first_pass=True, progress_callback=self._log_progress
            ).ingest_file(feeds["cities"], show_progress=self.show_progress)

            if "all_countries" in feeds:
                broad = PlaceIngestor(
                    self.db, ref, resolver, known_names,
                    first_pass=False,
                    min_population=config.PIPELINE_CONFIG["broad_min_population"],
                    progress_callback=self._log_progress
                ).ingest_file(feeds["all_countries"], show_progress=self.show_progress)
                return {"cities": stats.to_dict(), "all_countries": broad.to_dict(),
                        "read": stats.read + broad.read, "errors": stats.errors + broad.errors}

            return stats

        if stage == "alt_names":
            return AlternateNameIngestor(
                self.db, KnownNameIndex.from_store(self.db), progress_callback=self._log_progress
            ).ingest_file(feeds["alternate_names"], show_progress=self.show_progress)

        if stage == "postal":
            return PostalIngestor(
                self.db, ref, resolver, progress_callback=self._log_progress
            ).ingest_file(feeds["postal_codes"], show_progress=self.show_progress)

        raise ValueError(f"Unknown stage: {stage}")

    def _log_progress(self, stats: IngestStats):
        logger.debug(
            f"{stats.read} read, {stats.accepted} accepted, "
            f"{stats.total_rejected} rejected, {stats.errors} errors"
        )

    def close(self):
        self.db.close()


# =========================
# CLI Commands
# =========================
def cmd_build(args):
    """Rebuild the gazetteer"""
    if args.all:
        stages = STAGES
    else:
        stages = [s for s, flag in [
            ("countries", args.countries),
            ("admin", args.admin),
            ("places", args.places),
            ("alt_names", args.alt_names),
            ("postal", args.postal),
        ] if flag] or DEFAULT_STAGES

    files = {
        "country_info": args.country_file,
        "admin1": args.admin1_file,
        "admin2": args.admin2_file,
        "us_counties": args.us_counties_file,
        "cities": args.places_file,
        "all_countries": args.all_countries_file,
        "alternate_names": args.alt_names_file,
        "postal_codes": args.postal_file,
        "timezones": args.timezone_file,
    }
    files = {k: v for k, v in files.items() if v}

    pipeline = Pipeline(db_path=args.db, debug=args.debug, show_progress=not args.no_progress)
    try:
        stats = pipeline.run(
            stages,
            files=files,
            timezones=args.timezones or args.all,
            all_countries=args.all_countries,
        )
    except GazetteerError as e:
        logger.error(f"Build aborted: {e}")
        sys.exit(1)
    finally:
        pipeline.close()

    print("\n✅ Build complete!")
    for stage, stage_stats in stats.items():
        print(f"   {stage}: {stage_stats.get('read', 0)} read, {stage_stats.get('errors', 0)} errors")


def _load_cached_reference() -> Optional[ReferenceData]:
    try:
        return ReferenceData.load(
            config.FEEDS["country_info"]["file"],
            config.FEEDS["admin1"]["file"],
            config.FEEDS["admin2"]["file"],
            us_counties_file=config.US_COUNTIES_FILE,
            celestial_file=config.CELESTIAL_FILE,
        )
    except ReferenceDataError as e:
        logger.warning(f"Reference tables unavailable, state hints ignored: {e}")
        return None


def format_place(place: Dict) -> str:
    """One search result line; US counties get their long form ("Cook County")"""
    county = place["admin2"]
    if county and place["country"] == "USA":
        county = adjust_us_county_name(county, place["admin1"])

    where = ", ".join(p for p in [county, place["admin1"], place["country"]] if p)
    return (f"  {place['name']}, {where}  ({place['latitude']:.4f}, {place['longitude']:.4f})"
            f"  {place['timezone'] or '?'}  rank {place['rank']}  [{place['source']}]")


def cmd_search(args):
    """Look up a name in the built gazetteer"""
    reference = _load_cached_reference()

    with DatabaseManager(args.db, read_only=True) as db:
        results = GazetteerQueries(db, reference).search_places(args.name, args.state, args.limit)

    if reference is not None and reference.is_celestial_name(args.name):
        print(f'ℹ️  "{args.name}" is also the name of a celestial body')

    if not results:
        print(f'No places match "{args.name}"')
        return

    for place in results:
        print(format_place(place))


def cmd_stats(args):
    """Print table counts and quality figures"""
    with DatabaseManager(args.db, read_only=True) as db:
        queries = GazetteerQueries(db)
        overview = queries.get_overview_stats()
        unresolved = queries.get_unresolved_timezones(limit=args.limit)

    print("\n📊 Gazetteer statistics")
    for table, count in overview["tables"].items():
        print(f"   {table}: {count}")
    for row in overview["sources"]:
        print(f"   source {row['source']}: {row['place_count']}")
    print(f"   Missing timezone: {overview['missing_timezone']}")

    if not unresolved.empty:
        print("\nPlaces without a timezone:")
        print(unresolved.to_string(index=False))


def cmd_neighbors(args):
    """Report close same-name neighbors for manual review"""
    import pandas as pd

    if args.input:
        places = pd.read_csv(args.input, keep_default_na=False, na_values=[""])
    else:
        with DatabaseManager(args.db, read_only=True) as db:
            places = db.get_places_df(country=args.country)

    pairs = find_close_neighbors(places, radius_km=args.radius)
    output_path = args.output or config.get_report_path("close_neighbors.csv")
    write_neighbor_report(pairs, output_path)

    print(f"\n✅ {len(pairs)} close-neighbor pairs")
    print(f"   Output: {output_path}")


# =========================
# Main CLI
# =========================
def setup_logging(debug: bool = False):
    log_config = dict(config.LOG_CONFIG)
    if debug:
        log_config["handlers"] = {
            name: dict(handler, level="DEBUG") for name, handler in log_config["handlers"].items()
        }
    logging.config.dictConfig(log_config)


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Gazetteer Builder",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Reference tables and cities15000, with timezone polygons
  python -m gazetteer_builder.main build --countries --admin --places --timezones

  # Everything, including alternate names and postal codes
  python -m gazetteer_builder.main build --all

  # Look up a place
  python -m gazetteer_builder.main search "Springfield" --state mo

  # Close-neighbor review of a legacy list
  python -m gazetteer_builder.main neighbors --input legacy_places.csv
        """
    )

    parser.add_argument("--debug", action="store_true", help="Debug mode")
    parser.add_argument("--db", type=Path, default=config.DB_PATH, help="DuckDB file")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # ===== BUILD =====
    build_parser = subparsers.add_parser("build", help="Rebuild the gazetteer")
    build_parser.add_argument("--all", action="store_true", help="All stages plus timezones")
    build_parser.add_argument("--countries", action="store_true")
    build_parser.add_argument("--admin", action="store_true", help="Admin1 and admin2")
    build_parser.add_argument("--places", action="store_true")
    build_parser.add_argument("--alt-names", action="store_true")
    build_parser.add_argument("--postal", action="store_true")
    build_parser.add_argument("--timezones", action="store_true",
                              help="Load timezone polygons for this run")
    build_parser.add_argument("--all-countries", action="store_true",
                              help="Follow cities with the full allCountries file")
    build_parser.add_argument("--country-file", type=Path)
    build_parser.add_argument("--admin1-file", type=Path)
    build_parser.add_argument("--admin2-file", type=Path)
    build_parser.add_argument("--us-counties-file", type=Path)
    build_parser.add_argument("--places-file", type=Path)
    build_parser.add_argument("--all-countries-file", type=Path)
    build_parser.add_argument("--alt-names-file", type=Path)
    build_parser.add_argument("--postal-file", type=Path)
    build_parser.add_argument("--timezone-file", type=Path, help="Timezone GeoJSON")
    build_parser.add_argument("--no-progress", action="store_true")
    build_parser.set_defaults(func=cmd_build)

    # ===== SEARCH =====
    search_parser = subparsers.add_parser("search", help="Look up a place name")
    search_parser.add_argument("name")
    search_parser.add_argument("--state", help="State/country hint (e.g. mo, Eng)")
    search_parser.add_argument("--limit", type=int, default=20)
    search_parser.set_defaults(func=cmd_search)

    # ===== STATS =====
    stats_parser = subparsers.add_parser("stats", help="Table counts and quality figures")
    stats_parser.add_argument("--limit", type=int, default=20,
                              help="Unresolved-timezone rows to show")
    stats_parser.set_defaults(func=cmd_stats)

    # ===== NEIGHBORS =====
    neighbors_parser = subparsers.add_parser("neighbors", help="Close-neighbor review report")
    neighbors_parser.add_argument("--input", type=Path, help="Legacy place list CSV")
    neighbors_parser.add_argument("--country", help="ISO alpha-3 filter (database input)")
    neighbors_parser.add_argument("--radius", type=float, help="Radius in km")
    neighbors_parser.add_argument("--output", type=Path, help="Output CSV")
    neighbors_parser.set_defaults(func=cmd_neighbors)

    args = parser.parse_args()

    setup_logging(args.debug)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Run command
    args.func(args)


if __name__ == "__main__":
    main()
