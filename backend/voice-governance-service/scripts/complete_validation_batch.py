#!/usr/bin/env python3
"""
Close the current validation batch and print its metrics as JSON.

With --progress, print the progress of the current batch instead and leave
it open.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

SERVICE_DIR = Path(__file__).resolve().parents[1]
if str(SERVICE_DIR) not in sys.path:
    sys.path.insert(0, str(SERVICE_DIR))

from errors import GovernanceError  # noqa: E402
from governance_service import ValidationGovernanceService  # noqa: E402


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument(
        "--progress",
        action="store_true",
        help="Print progress of the current batch instead of closing it.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable INFO logging.")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    try:
        service = ValidationGovernanceService().start()
        if args.progress:
            payload = service.batches.validation_progress().model_dump(mode="json")
        else:
            payload = service.batches.complete_batch().model_dump(mode="json")
    except GovernanceError as exc:
        print(json.dumps({"error": exc.to_dict()}, ensure_ascii=False), file=sys.stderr)
        return 1

    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
