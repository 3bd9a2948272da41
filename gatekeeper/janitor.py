import sys
import os
import argparse
import logging
from datetime import datetime, timedelta
from typing import Optional

from gatekeeper.bootstrap import build_engine
from gatekeeper.core.config import load_settings
from gatekeeper.core.lifecycle import LifecycleEngine
from gatekeeper.models.live_access import EventType, RequestEvent
from gatekeeper.models.request import AccessRequest, RequestStatus, utc_now

# Configure logging to work in both CLI and Lambda
logger = logging.getLogger()
if not logger.handlers:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

DEFAULT_POLL_MINUTES = 15


def handle_expiration(engine: LifecycleEngine, request: AccessRequest,
                      now: Optional[datetime] = None) -> RequestEvent:
    """
    Sends the combined "still active / just expired" view to every user of an
    expired request, then the plain expiry notice. Nothing in the store changes:
    EXPIRED is derived from the authorization window.
    """
    now = now or utc_now()
    event = engine.notify_live_access(EventType.EXPIRATION, request, now)
    engine.notifier.notify_expired(request)
    engine.record_event("AccessExpired", request, expired_at=request.expires_at)
    return event


def find_expired_since(engine: LifecycleEngine, since: datetime, now: datetime):
    """Granted requests whose window closed in (since, now]."""
    # A request expiring after `since` started at most live_window_hours before it
    window_start = since - engine.tracker.lookback
    expired = []
    for request in engine.store.list_granted_since(window_start):
        expires_at = request.expires_at
        if expires_at is not None and since < expires_at <= now:
            expired.append(request)
    return expired


def run_expiration_sweep(engine: LifecycleEngine, since: datetime, now: Optional[datetime] = None,
                         dry_run: bool = False) -> dict:
    """
    Core logic separated from the entry point so it can be called by CLI or Lambda.
    Missed or late polls only delay notifications: expiry is always recomputed from timestamps.
    """
    now = now or utc_now()
    logger.info("🧹 Janitor starting up...")
    logger.info(f"Querying for grants that expired between {since.isoformat()} and {now.isoformat()}...")

    expired_requests = find_expired_since(engine, since, now)
    if not expired_requests:
        logger.info("✨ No expired requests found.")
        return {"status": "success", "expired": 0, "errors": 0}

    logger.info(f"Found {len(expired_requests)} expired requests.")

    expired_count = 0
    error_count = 0
    for request in expired_requests:
        logger.info(f"Processing Expiration: {request.id} (Account: {request.account})")

        if dry_run:
            logger.info("DRY RUN: Skipping notifications.")
            continue

        try:
            handle_expiration(engine, request, now)
            expired_count += 1
        except Exception as e:
            logger.error(f"❌ Failed to process expiration of {request.id}: {e}")
            error_count += 1

    logger.info(f"Janitor Run Complete. Expired: {expired_count}, Errors: {error_count}")

    return {
        "status": "success" if error_count == 0 else "partial_failure",
        "expired": expired_count,
        "errors": error_count,
    }


def _bootstrap_engine() -> LifecycleEngine:
    return build_engine(load_settings())


# --- ENTRY POINT 1: AWS LAMBDA ---
def lambda_handler(event, context):
    """
    Invoked by the scheduler either for a single request
    ({"request_id": 42}) or as a periodic sweep ({"poll_minutes": 15}).
    """
    logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
    engine = _bootstrap_engine()
    now = utc_now()

    request_id = (event or {}).get("request_id")
    if request_id is not None:
        request = engine.store.get(int(request_id))
        if request.expires_at is None:
            logger.warning(f"Request {request.id} was never granted ({request.status.value}); nothing expires.")
            return {"status": "skipped", "expired": 0, "errors": 0}
        # An early trigger must not announce an expiry that has not happened
        if request.status_at(now) is not RequestStatus.EXPIRED:
            logger.warning(f"Request {request.id} has not expired yet (expires at {request.expires_at.isoformat()}).")
            return {"status": "skipped", "expired": 0, "errors": 0}
        handle_expiration(engine, request, now)
        return {"status": "success", "expired": 1, "errors": 0}

    poll_minutes = int((event or {}).get("poll_minutes", DEFAULT_POLL_MINUTES))
    return run_expiration_sweep(engine, since=now - timedelta(minutes=poll_minutes), now=now)


# --- ENTRY POINT 2: LOCAL CLI ---
def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Gatekeeper: The Janitor (Expiration Worker)")
    parser.add_argument("--config", help="Path to the gatekeeper settings file")
    parser.add_argument("--poll-minutes", type=int, default=DEFAULT_POLL_MINUTES,
                        help="Look back this many minutes for expired grants")
    parser.add_argument("--dry-run", action="store_true", help="Scan only, do not notify")
    parser.add_argument("--debug", action="store_true", help="Enable verbose logging")

    args = parser.parse_args(argv)

    if args.debug:
        logger.setLevel(logging.DEBUG)

    engine = build_engine(load_settings(args.config))
    now = utc_now()
    result = run_expiration_sweep(engine, since=now - timedelta(minutes=args.poll_minutes),
                                  now=now, dry_run=args.dry_run)

    # Map result to exit code for CI/CD
    return 1 if result["errors"] > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
