"""
Operator CLI for telemd.

Runs retention cleanups and estimates, lists policies, processes erasure
requests and performs one-off health checks against a configured
database.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from telemd.config.analytics_config import TelemdConfig, load_telemd_config
from telemd.exceptions import TelemetryError
from telemd.logging_setup import configure_logging
from telemd.service import AnalyticsService
from telemd.storage.retention_logging import format_duration
from telemd.storage.retention_manager import DataRetentionManager
from telemd.storage.retention_store import SQLiteRetentionStore


def build_config(args) -> TelemdConfig:
    config = load_telemd_config(args.config, environment=args.env)
    if args.db:
        config.database_path = args.db
    return config


def create_retention_manager(config: TelemdConfig) -> DataRetentionManager:
    return DataRetentionManager(SQLiteRetentionStore(config.database_path), config.retention)


async def run_cleanup(args) -> int:
    """Force a cleanup. Returns the number of failed policies."""
    manager = create_retention_manager(build_config(args))
    results = await manager.force_cleanup(args.policy)

    print(f"Cleanup completed: {len(results)} policies")
    print(f"Total records deleted: {sum(r.deleted_records for r in results)}")
    for result in results:
        status_icon = "✓" if result.success else "✗"
        line = (f"{status_icon} {result.policy}: {result.deleted_records} records "
                f"in {result.chunks} chunks, {format_duration(result.execution_time)}")
        if result.error:
            line += f" ({result.error})"
        print(line)

    return len([r for r in results if not r.success])


async def show_estimate(args) -> int:
    manager = create_retention_manager(build_config(args))
    estimates = await manager.estimate_cleanup_impact()

    print("Cleanup Impact Estimate")
    print("=" * 50)
    for estimate in estimates:
        if estimate.error:
            print(f"{estimate.policy}: error - {estimate.error}")
            continue
        print(f"{estimate.policy}: {estimate.estimated_deletions:,} of "
              f"{estimate.table_size:,} records older than "
              f"{estimate.cutoff_date.strftime('%Y-%m-%d %H:%M')} UTC")
    print(f"\nTotal: {sum(e.estimated_deletions for e in estimates):,} records")

    return len([e for e in estimates if e.error])


def show_policies(args) -> int:
    config = build_config(args)
    manager = create_retention_manager(config)

    print("Data Retention Policies")
    print("=" * 50)
    print(f"Schedule: {config.retention.cleanup_cron} (UTC)")
    for policy in manager.get_retention_policies():
        status = "ENABLED" if policy.enabled else "DISABLED"
        print(f"\n{policy.name} ({status})")
        print(f"  Table: {policy.table}")
        print(f"  Date column: {policy.date_column}")
        print(f"  Retention: {policy.retention_days} days")
    return 0


async def run_erasure(args) -> int:
    manager = create_retention_manager(build_config(args))
    result = await manager.erase_user_data(args.user_id)

    print(f"Erasure for {args.user_id}: {result.total_deleted} records deleted")
    for table, count in result.deleted_records.items():
        print(f"  {table}: {count}")
    for error in result.errors:
        print(f"  error: {error}")
    return 0 if result.success else 1


async def run_health_check(args) -> int:
    service = AnalyticsService(build_config(args))
    status = await service.health_monitor.check_now()

    print(f"Overall: {status.overall.value.upper()}")
    for check in status.checks:
        print(f"  {check.name}: {check.status.value} - {check.message} "
              f"({check.duration_ms:.1f}ms)")
    return 2 if status.overall.value == 'critical' else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='telemd',
        description="Analytics retention and health CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Estimate what the retention policies would delete
  telemd estimate --db data/analytics.db

  # Clean up specific policies now
  telemd cleanup --policy "Error Logs" "Health Check Logs"

  # Delete everything recorded for one user
  telemd erase --user-id 42
        """
    )

    parser.add_argument('--config', default=None,
                        help='Path to YAML configuration file')
    parser.add_argument('--db', default=None,
                        help='Path to SQLite database file (overrides configuration)')
    parser.add_argument('--env', default=None,
                        help='Configuration profile (development, production)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    parser.add_argument('--json-logs', action='store_true',
                        help='Render log lines as JSON')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    cleanup_parser = subparsers.add_parser('cleanup', help='Run retention cleanup now')
    cleanup_parser.add_argument('--policy', nargs='+',
                                help='Policy names to run (default: all enabled)')

    subparsers.add_parser('estimate', help='Dry run: count records cleanup would delete')
    subparsers.add_parser('policies', help='Show retention policies')

    erase_parser = subparsers.add_parser('erase', help='Delete all records of one user')
    erase_parser.add_argument('--user-id', required=True, help='User identifier')

    subparsers.add_parser('health', help='Run a one-off health check')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(logging.DEBUG if args.verbose else logging.INFO, json=args.json_logs)

    try:
        if args.command == 'cleanup':
            return 0 if asyncio.run(run_cleanup(args)) == 0 else 1
        elif args.command == 'estimate':
            return 0 if asyncio.run(show_estimate(args)) == 0 else 1
        elif args.command == 'policies':
            return show_policies(args)
        elif args.command == 'erase':
            return asyncio.run(run_erasure(args))
        elif args.command == 'health':
            return asyncio.run(run_health_check(args))
        else:
            print(f"Unknown command: {args.command}")
            return 1

    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 1
    except (TelemetryError, FileNotFoundError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
