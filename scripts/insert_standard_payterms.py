"""Give every project that has an estimate but no pay terms a standard schedule.

Usage:
  python scripts/insert_standard_payterms.py --schedule 75_25_split [--dry-run]
"""
import argparse
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv  # noqa: E402
load_dotenv()

from billing import STANDARD_PAY_TERMS, standard_pay_terms  # noqa: E402
from database import get_db  # noqa: E402
from logging_config import setup_logging  # noqa: E402

log = logging.getLogger('payterms')


def projects_without_terms(conn):
    return conn.execute(
        '''SELECT p.id, p.project_name, MAX(e.id) AS estimate_id
           FROM projects p JOIN estimates e ON e.project_id = p.id
           WHERE NOT EXISTS (SELECT 1 FROM pay_terms pt WHERE pt.project_id = p.id)
           GROUP BY p.id, p.project_name ORDER BY p.id'''
    ).fetchall()


def insert_standard_terms(conn, schedule, dry_run=False):
    terms = standard_pay_terms(schedule)
    projects = projects_without_terms(conn)
    for p in projects:
        if dry_run:
            print(f"[DRY] {p['project_name']}: would add {len(terms)} term(s)")
            continue
        for t in terms:
            conn.execute(
                '''INSERT INTO pay_terms (project_id, estimate_id, term_type, term_name, description, percentage,
                   due_description, status, sort_order) VALUES (?,?,?,?,?,?,?,?,?)''',
                (p['id'], p['estimate_id'], t['term_type'], t['term_name'], t['description'],
                 t['percentage'], t['due_description'], 'Pending', t['sort_order'])
            )
        log.info('Added %s terms to %s', schedule, p['project_name'])
    if not dry_run:
        conn.commit()
    return len(projects)


def main(argv=None):
    ap = argparse.ArgumentParser(description='Insert standard pay terms for projects that have none')
    ap.add_argument('--schedule', default='75_25_split', choices=sorted(STANDARD_PAY_TERMS))
    ap.add_argument('--dry-run', action='store_true')
    args = ap.parse_args(argv)
    setup_logging(log_to_file=False)
    conn = get_db()
    try:
        count = insert_standard_terms(conn, args.schedule, dry_run=args.dry_run)
    finally:
        conn.close()
    verb = "would be updated" if args.dry_run else "updated"
    print(f"{count} project(s) {verb}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
