from __future__ import annotations

import argparse
import json

from app.workers.sweep import build_dispatcher
from services.observability import configure_logging
from settings import settings


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one settlement sweep pass.")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--details", action="store_true", help="print per-record outcomes")
    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL)

    dispatcher = build_dispatcher()
    if args.batch_size:
        dispatcher.batch_size = args.batch_size

    summary = dispatcher.run_once()

    print(
        "counts:",
        f"processed={summary.processed}",
        f"succeeded={summary.succeeded}",
        f"reconciled={summary.reconciled}",
        f"failed={summary.failed}",
        f"skipped={summary.skipped}",
        f"aborted={summary.aborted}",
    )
    if args.details:
        print(json.dumps([d.to_dict() for d in summary.details], indent=2))


if __name__ == "__main__":
    main()
