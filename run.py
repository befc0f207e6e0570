"""
Entry point: run one scheduler job, or the looping worker.

Usage::

    # Fill the posting horizon for every active template:
    python run.py generate

    # Regenerate one listing's schedule:
    python run.py generate --listing <listing_id>

    # Publish due posts / confirm due status changes:
    python run.py dispatch
    python run.py verify

    # Requeue entries stuck in processing:
    python run.py recover

    # Archive long-sold listings and expire stale "New" statuses:
    python run.py archive

    # Print the schedule dashboard (optionally for one organization):
    python run.py dashboard --org <organization_id>

    # Run everything on a loop (default interval from settings):
    python run.py worker --interval 60
"""

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Recurring listing post scheduler"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    generate = sub.add_parser("generate", help="Generate upcoming post slots")
    generate.add_argument("--listing", metavar="ID", help="Only this listing")
    generate.add_argument("--org", metavar="ID", help="Only this organization")

    sub.add_parser("dispatch", help="Publish due posts")
    sub.add_parser("verify", help="Process due status verifications")
    sub.add_parser("recover", help="Requeue entries stuck in processing")
    sub.add_parser("archive", help="Archive sold listings and expire New status")

    dashboard = sub.add_parser("dashboard", help="Print the schedule dashboard")
    dashboard.add_argument("--org", metavar="ID", help="Only this organization")
    dashboard.add_argument("--listing", metavar="ID", help="Summary for one listing")

    worker = sub.add_parser("worker", help="Run all jobs on a loop")
    worker.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between cycles (default: worker_interval_seconds)",
    )
    return parser


async def main() -> int:
    args = build_parser().parse_args()

    from listing_scheduler.config import get_settings, validate_env
    from listing_scheduler.database import get_db
    from listing_scheduler.logging import init_logger
    from listing_scheduler.scheduling import SchedulerWorker
    from listing_scheduler.service import SchedulerService

    validate_env(strict=True)
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    # --- Init database + structured logging -----------------------------
    db = await get_db()
    scheduler_logger = init_logger(log_dir=settings.log_dir, supabase_sink=db)
    logger.info("Database connected")

    service = SchedulerService(db, settings)

    if args.command == "generate":
        if args.listing:
            result = await service.generate_for_listing(args.listing)
            output = {
                "template_id": result.template_id,
                "phase": result.phase.value,
                "created": result.created_count,
                "skipped": result.skipped,
                "deactivated": result.deactivated,
            }
        else:
            output = await service.generate_recurring_schedules(organization_id=args.org)
    elif args.command == "dispatch":
        output = await service.invoke_process_scheduled_posts()
    elif args.command == "verify":
        output = await service.process_due_status_verifications()
    elif args.command == "recover":
        output = await service.recover_stuck_entries()
    elif args.command == "archive":
        output = {
            "archive": await service.auto_archive_sold_listings(),
            "expire": await service.auto_expire_new_status(),
        }
    elif args.command == "dashboard":
        if args.listing:
            output = await service.get_recurring_schedule_summary(args.listing)
        else:
            output = await service.get_unified_schedule_dashboard(args.org)
    else:
        worker = SchedulerWorker(
            service, interval_seconds=args.interval or settings.worker_interval_seconds
        )
        try:
            await worker.start()
        finally:
            await worker.stop()
            await scheduler_logger.flush()
        return 0

    await scheduler_logger.flush()
    print(json.dumps(output, indent=2, default=str))
    if isinstance(output, dict) and output.get("success") is False:
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
