#!/usr/bin/env python3
"""
MongoDB Migration Diff Tool

Verifies that every document of every selected collection exists on the
destination cluster with identical content, with support for:
- Chunk-parallel verification of sharded collections
- Durable recording of failed keys
- Targeted re-verification of recorded failures
- Status reporting of the failure records

Usage:
    ./scripts/mongodiff.py --config diff.yaml diff
    ./scripts/mongodiff.py --config diff.yaml diff --ns app.users --ns app.orders --threads 16
    ./scripts/mongodiff.py --config diff.yaml retry
    ./scripts/mongodiff.py --config diff.yaml status
"""

import sys
import argparse
import json
import logging
import signal
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from bson import json_util
from hvac.exceptions import VaultError
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from mongodiff.monitoring import DiffMetrics
from mongodiff.reconciliation import DiffRunner, MongoTopology, RetryStatus, RetryVerifier, StatusStore
from mongodiff.utils.config import ConfigError, load_run_config
from mongodiff.utils.logging_setup import configure_logging

logger = logging.getLogger("mongodiff.cli")


def connect(uri: str, name: str) -> MongoClient:
    """Open a client; connection errors surface on first use."""
    logger.info(f"Connecting to {name} cluster")
    return MongoClient(uri)


def command_diff(config, metrics) -> int:
    source = connect(config.source_uri, "source")
    dest = connect(config.dest_uri, "dest")
    status_client = connect(config.status_uri, "status")

    try:
        store = StatusStore.from_client(status_client, config.status_db_name, config.status_coll_name)
        runner = DiffRunner(config, source, dest, MongoTopology(source), status_store=store, metrics=metrics)

        # First Ctrl-C stops in-flight cursors; results so far are still recorded
        signal.signal(signal.SIGINT, lambda signum, frame: runner.cancel())

        summary = runner.run()
        print(json.dumps(summary.snapshot(), indent=2))
        return 1 if runner.store_error else 0
    finally:
        source.close()
        dest.close()
        status_client.close()


def command_retry(config, metrics, include_inconclusive: bool, no_mark: bool) -> int:
    source = connect(config.source_uri, "source")
    dest = connect(config.dest_uri, "dest")
    status_client = connect(config.status_uri, "status")

    statuses = [RetryStatus.FAILED]
    if include_inconclusive:
        statuses.append(RetryStatus.INCONCLUSIVE)

    try:
        store = StatusStore.from_client(status_client, config.status_db_name, config.status_coll_name)
        verifier = RetryVerifier(source, dest, store, metrics=metrics)
        report = verifier.retry(statuses=statuses, mark_results=not no_mark)
        print(json.dumps({
            "records": report.records,
            "keys_checked": report.keys_checked,
            "still_failing": report.still_failing,
            "duplicates": report.duplicates,
            "errors": report.errors,
            "unverified_records": report.unverified_records,
            "outcomes": {outcome.value: count for outcome, count in report.outcomes.items()},
        }, indent=2))
        return 0
    finally:
        source.close()
        dest.close()
        status_client.close()


def command_status(config) -> int:
    status_client = connect(config.status_uri, "status")

    try:
        coll = status_client[config.status_db_name][config.status_coll_name]
        counts = coll.aggregate([
            {"$group": {
                "_id": "$status",
                "records": {"$sum": 1},
                "keys": {"$sum": {"$size": "$mismatches"}},
            }},
            {"$sort": {"_id": 1}},
        ])
        print(json_util.dumps(list(counts), indent=2))
        return 0
    finally:
        status_client.close()


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="MongoDB Migration Diff Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument("--config", "-c", help="YAML config file")
    parser.add_argument("--source-uri", help="Source cluster connection string")
    parser.add_argument("--dest-uri", help="Destination cluster connection string")
    parser.add_argument("--status-db-uri", help="Status store connection string (default: dest)")
    parser.add_argument("--vault-path", help="Vault secret path holding connection strings")
    parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    diff_parser = subparsers.add_parser("diff", help="Verify all selected namespaces")
    diff_parser.add_argument("--ns", action="append", dest="include_namespaces", help="Namespace db.coll (repeatable)")
    diff_parser.add_argument("--threads", type=int, help="Worker threads")
    diff_parser.add_argument("--batch-size", type=int, help="Cursor batch size")

    retry_parser = subparsers.add_parser("retry", help="Re-verify recorded failures")
    retry_parser.add_argument("--include-inconclusive", action="store_true",
                              help="Also re-verify units whose fetch failed")
    retry_parser.add_argument("--no-mark", action="store_true", help="Leave record statuses unchanged")

    subparsers.add_parser("status", help="Summarize status store records")

    args = parser.parse_args()

    configure_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_logging=True if args.json_logs else None
    )

    if not args.command:
        parser.print_help()
        return 1

    overrides = {
        "source_uri": args.source_uri,
        "dest_uri": args.dest_uri,
        "status_db_uri": args.status_db_uri,
        "vault_path": args.vault_path,
        "metrics_port": args.metrics_port,
        "include_namespaces": getattr(args, "include_namespaces", None),
        "threads": getattr(args, "threads", None),
        "batch_size": getattr(args, "batch_size", None),
    }

    try:
        # status only reads the status store
        config = load_run_config(args.config, overrides=overrides, clusters=args.command != "status")
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except VaultError as e:
        logger.error(f"Vault error: {e}")
        return 2

    metrics = DiffMetrics()
    if config.metrics_port:
        metrics.start_server(config.metrics_port)

    try:
        if args.command == "diff":
            return command_diff(config, metrics)
        elif args.command == "retry":
            return command_retry(config, metrics, args.include_inconclusive, args.no_mark)
        elif args.command == "status":
            return command_status(config)
        return 1

    except PyMongoError as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        return 1


if __name__ == "__main__":
    sys.exit(main())
