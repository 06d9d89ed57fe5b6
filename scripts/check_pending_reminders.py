#!/usr/bin/env python3
"""
Pending Reminders — list signers still waiting on a reminder.

For every remindable signer prints hours since creation, reminders sent,
and hours until the next reminder ("ready" when it is already due).

Usage:
    python scripts/check_pending_reminders.py
    python scripts/check_pending_reminders.py --json
    python scripts/check_pending_reminders.py --run-once   # also send what is due
"""
import asyncio
import os
import sys
import json
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _format_row(p) -> str:
    nxt = "ready" if p.ready else f"{p.hours_until_next:.1f}h"
    return (f"  #{p.subject.id:<6} {p.subject.email:<32} "
            f"{p.subject.document_name[:28]:<28} "
            f"age={p.hours_since_created:>7.1f}h  sent={p.subject.reminder_count}/3  "
            f"next={nxt}")


async def check(as_json: bool = False, run_once: bool = False) -> int:
    from config.settings import load_settings
    from channels.email import SmtpEmailGateway
    from database.session import create_engine_for, make_session_factory
    from database.store import SqlStore
    from reminders.scheduler import ReminderScheduler
    from utils.log_setup import configure_logging

    settings = load_settings()
    configure_logging(settings.log_level, settings.log_format)
    engine = create_engine_for(settings.database.url)
    store = SqlStore(make_session_factory(engine))
    scheduler = ReminderScheduler(store, SmtpEmailGateway(settings.email),
                                  settings.base_url, settings.reminders)
    try:
        pending = await scheduler.preview()

        if as_json:
            print(json.dumps([
                {
                    "submitter_id": p.subject.id,
                    "email": p.subject.email,
                    "document": p.subject.document_name,
                    "reminder_count": p.subject.reminder_count,
                    "next_stage": p.next_stage,
                    "hours_since_created": p.hours_since_created,
                    "hours_until_next": p.hours_until_next,
                    "ready": p.ready,
                }
                for p in pending
            ], indent=2))
        else:
            print(f"Pending reminders: {len(pending)}")
            for p in pending:
                print(_format_row(p))

        if run_once:
            summary = await scheduler.run_pass()
            print(f"Pass: {summary.to_dict()}")
        return 0
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="List pending signature reminders")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    parser.add_argument("--run-once", action="store_true", help="Send due reminders after listing")
    args = parser.parse_args()

    sys.exit(asyncio.run(check(as_json=args.json, run_once=args.run_once)))


if __name__ == "__main__":
    main()
