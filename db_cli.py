#!/usr/bin/env python3
"""
Database CLI for Gazetteer Builder
Commands for initializing, inspecting, and exporting the DuckDB gazetteer
"""
import argparse
import logging
import sys
from pathlib import Path

import duckdb

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from gazetteer_builder import config
from gazetteer_builder.database import DatabaseManager, GazetteerQueries
from gazetteer_builder.main import STAGES

EXPORT_QUERIES = {
    "places": "SELECT * FROM v_places_full ORDER BY id",
    "alt_names": "SELECT * FROM alt_names ORDER BY owner_type, owner_id, id",
    "postal_codes": "SELECT * FROM postal_codes ORDER BY country, postal_code",
}


def _db_path(args) -> Path:
    return Path(args.db) if args.db else config.DB_PATH


def cmd_init(args):
    """Initialize database schema"""
    db_path = _db_path(args)

    print(f"🗄️  Initializing database: {db_path}")

    with DatabaseManager(db_path) as db:
        db.initialize_schema()
        stats = db.get_table_stats()

    print("✅ Database initialized!")
    print(f"   Tables created: {', '.join(stats)}")
    return 0


def cmd_stats(args):
    """Show database statistics and the latest run of each stage"""
    db_path = _db_path(args)

    if not db_path.exists():
        print(f"❌ Database not found: {db_path}")
        print("   Run 'db_cli.py init' or a build first")
        return 1

    with DatabaseManager(db_path, read_only=True) as db:
        print("📊 Table Statistics:")
        for table, count in db.get_table_stats().items():
            print(f"   {table}: {count:,}")

        print("\n🕒 Last Runs:")
        for stage in STAGES:
            run = db.get_last_run(stage)
            if run:
                print(f"   {stage}: {run['status']} at {run['completed_at'] or run['started_at']}"
                      f" ({run['processed_items']:,} processed, {run['failed_items']:,} failed)")

    return 0


def cmd_query(args):
    """Run report queries"""
    db_path = _db_path(args)

    if not db_path.exists():
        print(f"❌ Database not found: {db_path}")
        return 1

    with DatabaseManager(db_path, read_only=True) as db:
        queries = GazetteerQueries(db)

        if args.query == "countries":
            df = queries.get_country_counts(limit=args.top or 20)
            print("\n🌍 Places per Country:")
            print(df.to_string(index=False))

        elif args.query == "sources":
            df = queries.get_source_breakdown()
            print("\n🏷️  Places per Source:")
            print(df.to_string(index=False))

        elif args.query == "synthetic":
            df = queries.get_synthetic_places()
            print("\n📮 Synthetic Postal Places:")
            print(df.to_string(index=False))

        elif args.query == "unresolved":
            df = queries.get_unresolved_timezones(limit=args.top)
            print("\n🕓 Places without a Timezone:")
            print(df.to_string(index=False))

        elif args.query == "alt-names":
            if not args.filter:
                print("❌ --filter required for alt-names query")
                return 1
            df = queries.search_alternate_names(args.filter, limit=args.top or 20)
            print(f"\n🔤 Alternate Names matching \"{args.filter}\":")
            print(df.to_string(index=False))

        else:
            print(f"❌ Unknown query type: {args.query}")
            return 1

    return 0


def cmd_export(args):
    """Export a table to CSV"""
    db_path = _db_path(args)
    output_path = Path(args.output)

    if not db_path.exists():
        print(f"❌ Database not found: {db_path}")
        return 1

    with DatabaseManager(db_path, read_only=True) as db:
        count = db.export_to_csv(output_path, EXPORT_QUERIES[args.table])

    print(f"✅ Exported {count:,} rows to {output_path}")
    return 0


def cmd_sql(args):
    """Run raw SQL query"""
    db_path = _db_path(args)

    if not db_path.exists():
        print(f"❌ Database not found: {db_path}")
        return 1

    with DatabaseManager(db_path, read_only=True) as db:
        try:
            result = db.connection.execute(args.sql).fetchdf()
        except duckdb.Error as e:
            print(f"❌ SQL Error: {e}")
            return 1

    print(result.to_string(index=False))
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Gazetteer Builder Database CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Initialize database
  python db_cli.py init

  # Show statistics and last runs
  python db_cli.py stats

  # Run queries
  python db_cli.py query countries --top 10
  python db_cli.py query synthetic
  python db_cli.py query alt-names --filter "San Luis"

  # Export data
  python db_cli.py export --output places.csv
  python db_cli.py export --table postal_codes --output postal.csv

  # Raw SQL
  python db_cli.py sql "SELECT feature_code, COUNT(*) FROM places GROUP BY feature_code"
        """
    )

    parser.add_argument("--db", help="Database path (default: data/gazetteer.duckdb)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Init command
    subparsers.add_parser("init", help="Initialize database schema")

    # Stats command
    subparsers.add_parser("stats", help="Show database statistics")

    # Query command
    query_parser = subparsers.add_parser("query", help="Run report queries")
    query_parser.add_argument("query", choices=["countries", "sources", "synthetic", "unresolved", "alt-names"])
    query_parser.add_argument("--filter", help="Name prefix for alt-names")
    query_parser.add_argument("--top", type=int, help="Number of rows")

    # Export command
    export_parser = subparsers.add_parser("export", help="Export a table to CSV")
    export_parser.add_argument("--output", required=True, help="Output CSV path")
    export_parser.add_argument("--table", choices=sorted(EXPORT_QUERIES), default="places")

    # SQL command
    sql_parser = subparsers.add_parser("sql", help="Run raw SQL query")
    sql_parser.add_argument("sql", help="SQL query to execute")

    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s"
    )

    if not args.command:
        parser.print_help()
        return 1

    # Route to command
    commands = {
        "init": cmd_init,
        "stats": cmd_stats,
        "query": cmd_query,
        "export": cmd_export,
        "sql": cmd_sql,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main() or 0)
