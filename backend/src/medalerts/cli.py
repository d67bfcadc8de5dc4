from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from typing import Sequence

from .batch_runner import build_batch_runner
from .config import ConfigurationError, get_settings, require_valid_configuration
from .messaging import create_message_sender
from .record_store import RecordStoreError, create_record_store

logger = logging.getLogger(__name__)


def _parse_now(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run one medication alert pass: evaluate due doses and low stock, "
            "deliver reminders, and persist dedup state."
        )
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate and report without sending messages or writing changes.",
    )
    parser.add_argument(
        "--now",
        type=_parse_now,
        default=None,
        help="Evaluate as of this ISO-8601 instant instead of the current time (naive values are UTC).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for the run (default: INFO).",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = get_settings()
    try:
        require_valid_configuration(settings, persistent_store=True)
        store = create_record_store(settings)
        sender = create_message_sender(settings)
    except (ConfigurationError, ValueError) as exc:
        logger.error("%s", exc)
        return 2

    runner = build_batch_runner(settings, store=store, sender=sender)
    try:
        response = runner.run(now=args.now, dry_run=args.dry_run)
    except RecordStoreError as exc:
        logger.error("alert run aborted by storage failure: %s", exc)
        return 1

    summary = response.model_dump(mode="json", exclude={"results"})
    print(json.dumps(summary, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
