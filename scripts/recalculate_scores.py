#!/usr/bin/env python3
"""Rebuild asset impact and trending scores for every course.

Intended to be run from a scheduler (cron) once an hour; trending scores decay
only through this job.
"""

import logging

from app import create_app
from courses import get_active_courses
from scores import recalculate_impact_scores, recalculate_trending_scores


log = logging.getLogger("recalculate_scores")


def main():
    recalculated = failed = 0

    app = create_app()
    with app.app_context():
        courses = get_active_courses()
        for course in courses:
            try:
                recalculate_impact_scores(course)
                recalculate_trending_scores(course)
                recalculated += 1
            except Exception:
                failed += 1
                log.exception("Unable to recalculate scores for course %s", course.id)

    print({
        "ok": failed == 0,
        "recalculated": recalculated,
        "failed": failed,
        "total_active": len(courses),
    })


if __name__ == "__main__":
    main()
