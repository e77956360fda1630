# scripts/check_payments.py
"""
Run one reconciliation sweep and print the summary as JSON.

    python -m scripts.check_payments --provider nowpayments --older-than-minutes 5 --limit 100

Meant for an external scheduler (cron, k8s CronJob). Exit code is non-zero only
when the sweep itself could not run; per-payment failures are in the summary.
"""
import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

from app import create_app  # noqa: E402
from services.payments.errors import PaymentError  # noqa: E402

logger = logging.getLogger("scripts.check_payments")


def _bounded(lo: int, hi: int):
    def parse(s: str) -> int:
        v = int(s)
        if not lo <= v <= hi:
            raise argparse.ArgumentTypeError(f"must be between {lo} and {hi}")
        return v
    return parse


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Refresh stale pending payments from their providers.")
    p.add_argument("--provider", choices=["nowpayments", "paypal"], default=None)
    p.add_argument("--older-than-minutes", type=_bounded(1, 60), default=5)
    p.add_argument("--limit", type=_bounded(1, 100), default=100)
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    app = create_app()
    service = app.extensions["payments"]
    try:
        with app.app_context():
            result = service.check_pending_payments(
                provider=args.provider,
                older_than_minutes=args.older_than_minutes,
                limit=args.limit,
            )
    except PaymentError as e:
        logger.error("Sweep failed: %s (%s)", e.message, e.code)
        print(json.dumps({"success": False, **e.to_dict()}))
        return 1

    print(json.dumps({"success": True, **result.to_dict()}))
    return 0


if __name__ == "__main__":
    sys.exit(main())
