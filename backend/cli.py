#!/usr/bin/env python3
"""
Operator command line for the timetable worker.

Usage:
    python cli.py sweep            # run the worker in the foreground
    python cli.py sweep --once     # one sweep, then exit
    python cli.py options          # print the portal dropdown options
    python cli.py parse Data/ExcelFiles/BV20-1.xls --course BV20 --grade 1 --group "RIT 1" --dry-run
"""

import argparse
import json
import logging
import sys
from collections import Counter

from config import Settings, configure_logging
from db_service import InMemoryGateway, SupabaseGateway
from scraper.excel_parser import TimetableParser
from scraper.models import FileUpdated
from scraper.retry_helper import OperationCancelled
from scraper.timetable_fetcher import TimetableFetcher
from sync_service import TimetableWorker

logger = logging.getLogger(__name__)


def cmd_sweep(args, settings: Settings) -> int:
    worker = TimetableWorker(settings)
    worker.dispatcher.start()
    try:
        if args.once:
            worker.scheduler.run_once()
        else:
            worker.scheduler.run()
    except (KeyboardInterrupt, OperationCancelled):
        logger.info("Sweep interrupted")
    finally:
        worker.stop()
    return 0


def cmd_options(args, settings: Settings) -> int:
    fetcher = TimetableFetcher(settings, publish=lambda event: None)
    options = fetcher.scrape_form_options(force=True)
    print(json.dumps(options.to_dict(), indent=2, ensure_ascii=False))
    return 0


def cmd_parse(args, settings: Settings) -> int:
    gateway = InMemoryGateway() if args.dry_run else SupabaseGateway.from_settings(settings)
    parser = TimetableParser(settings, lambda: gateway)
    event = FileUpdated(
        path=args.path,
        course_code=args.course,
        grade=args.grade,
        group_label=args.group,
        project=args.project,
    )
    stats = parser.handle_file_updated(event)
    print(stats.summary())

    if args.dry_run:
        group_names = {group_id: name for (name, _), group_id in gateway.groups.items()}
        per_group = Counter(group_names.get(s.group_id, "?") for s in gateway.sessions)
        for name, count in sorted(per_group.items()):
            print(f"  {name}: {count} sessions")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="timetable", description="Timetable portal fetch/parse worker")
    sub = p.add_subparsers(dest="command", required=True)

    sweep = sub.add_parser("sweep", help="Fetch every tracked target (forever unless --once)")
    sweep.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    sweep.set_defaults(func=cmd_sweep)

    options = sub.add_parser("options", help="Scrape and print the portal dropdown options")
    options.set_defaults(func=cmd_options)

    parse = sub.add_parser("parse", help="Parse a downloaded workbook")
    parse.add_argument("path", help="Path to the .xls export")
    parse.add_argument("--course", required=True, help="Course code, e.g. BV20")
    parse.add_argument("--grade", required=True, type=int, help="Grade (year of study)")
    parse.add_argument("--group", required=True, help="Group label to keep, e.g. 'RIT 1'")
    parse.add_argument("--project", default="", help="Project code, if the course has projects")
    parse.add_argument("--dry-run", action="store_true", help="Keep results in memory instead of Supabase")
    parse.set_defaults(func=cmd_parse)
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
