"""kinmerge CLI - operational commands for the merge service.

Usage:
    python -m kinmerge init-db
    python -m kinmerge detect [--threshold N] [--batch-size N]
    python -m kinmerge expire
    python -m kinmerge undo <merge_record_id> --actor <actor_id>

All commands read KINMERGE_DATABASE_URL and the other KINMERGE_* settings from the
environment and print a JSON result to stdout.

Exit codes:
    0: Success
    1: Failure (domain error, configuration error or internal error)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import Any

from kinmerge.audit.sink import get_audit_sink
from kinmerge.persistence.db import DatabaseConfigError, get_engine
from kinmerge.persistence.migrate import get_head_revision, run_upgrade
from kinmerge.persistence.repositories.signals import SqlSignalStore
from kinmerge.services.merge.config import MergeConfigError, MergeSettings
from kinmerge.services.merge.detector import CollisionDetector
from kinmerge.services.merge.errors import MergeError
from kinmerge.services.merge.service import MergeProposalService

logger = logging.getLogger(__name__)


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


def _make_error_result(code: str, message: str, details: dict[str, Any] | None = None) -> dict:
    """Create an error result dict in the API error envelope shape."""
    return {"code": code, "message": message, "details": details or None}


def _build_service() -> MergeProposalService:
    return MergeProposalService(
        get_engine(),
        audit_sink=get_audit_sink(),
        settings=MergeSettings.from_env(),
    )


def cmd_init_db(args: argparse.Namespace) -> int:
    """Apply all migrations to the configured database."""
    run_upgrade(get_engine())
    _output_json({"revision": get_head_revision(), "status": "ok"})
    return 0


def cmd_detect(args: argparse.Namespace) -> int:
    """Run one collision detector pass."""
    service = _build_service()
    detector = CollisionDetector(
        service,
        SqlSignalStore(get_engine()),
        threshold=args.threshold,
        batch_size=args.batch_size,
    )
    summary = detector.run()
    _output_json(asdict(summary))
    return 0


def cmd_expire(args: argparse.Namespace) -> int:
    """Reject pending proposals that are past their expiry."""
    expired = _build_service().expire_stale()
    _output_json(
        {
            "expired": len(expired),
            "proposal_ids": [p.proposal_id for p in expired],
        }
    )
    return 0


def cmd_undo(args: argparse.Namespace) -> int:
    """Undo one executed merge."""
    record = _build_service().undo(args.merge_record_id, args.actor)
    _output_json(
        {
            "merge_record_id": record.merge_record_id,
            "source_id": record.source_id,
            "target_id": record.target_id,
            "undone": record.undone,
            "undone_at": record.undone_at,
        }
    )
    return 0


COMMAND_DISPATCH = {
    "init-db": cmd_init_db,
    "detect": cmd_detect,
    "expire": cmd_expire,
    "undo": cmd_undo,
}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="kinmerge",
        description="kinmerge - identity deduplication and merge service",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Apply database migrations")

    detect_parser = subparsers.add_parser(
        "detect", help="Turn high-risk duplicate candidates into merge proposals"
    )
    detect_parser.add_argument(
        "--threshold",
        type=int,
        default=None,
        help="Minimum candidate score 0-100 (default: KINMERGE_HIGH_RISK_THRESHOLD)",
    )
    detect_parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Maximum candidates per run (default: KINMERGE_DETECTOR_BATCH_SIZE)",
    )

    subparsers.add_parser("expire", help="Reject expired pending proposals")

    undo_parser = subparsers.add_parser("undo", help="Undo an executed merge")
    undo_parser.add_argument("merge_record_id", help="Merge record to reverse")
    undo_parser.add_argument("--actor", required=True, help="Actor performing the undo")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success
        1: Domain error, configuration error or internal error
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        return COMMAND_DISPATCH[args.command](args)
    except MergeError as e:
        _output_json(_make_error_result(e.code, e.message, e.details))
        return 1
    except (DatabaseConfigError, MergeConfigError) as e:
        _output_json(_make_error_result("CONFIGURATION_ERROR", str(e)))
        return 1
    except Exception as e:
        logger.exception("kinmerge %s failed", args.command)
        _output_json(_make_error_result("INTERNAL_ERROR", str(e)))
        return 1


if __name__ == "__main__":
    sys.exit(main())
