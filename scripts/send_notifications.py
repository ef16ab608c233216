#!/usr/bin/env python3
"""Dispatch daily or weekly digests for every active course.

Intended to be run from a scheduler (cron):
  python scripts/send_notifications.py daily    # every day
  python scripts/send_notifications.py weekly   # once a week

Environment:
- NOTIFICATIONS_DISPATCHER  dotted path of a callable returning the dispatcher
"""

import sys

from app import create_app
from canvas_poller import load_factory
from notifications import DAILY, WEEKLY, collect


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    kind = argv[0] if argv else DAILY
    if kind not in (DAILY, WEEKLY):
        raise SystemExit(f"usage: send_notifications.py [{DAILY}|{WEEKLY}]")

    app = create_app()
    dispatcher = load_factory("NOTIFICATIONS_DISPATCHER")()
    with app.app_context():
        result = collect(kind, dispatcher)

    print({"ok": result["failed"] == 0, **result})
    return result


if __name__ == "__main__":
    main()
