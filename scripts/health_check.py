"""Check database connectivity and schema from the command line.

Exit status is 0 when the database is reachable and every table exists, 1 otherwise.
Pass --init to create missing tables before checking.
"""
import argparse
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv  # noqa: E402
load_dotenv()

from database import check_health, init_db  # noqa: E402
from logging_config import setup_logging  # noqa: E402


def main(argv=None):
    ap = argparse.ArgumentParser(description='Database health check')
    ap.add_argument('--init', action='store_true', help='Create missing tables and seed defaults first')
    ap.add_argument('--json', action='store_true', help='Print the raw result as JSON')
    args = ap.parse_args(argv)
    setup_logging(log_to_file=False)

    if args.init:
        init_db()
    result = check_health()
    healthy = result['connected'] and not result['missing_tables']

    if args.json:
        print(json.dumps(dict(result, healthy=healthy), indent=2))
    else:
        print(f"Dialect:   {result['dialect']}")
        print(f"Connected: {'yes' if result['connected'] else 'no'}")
        if result.get('error'):
            print(f"Error:     {result['error']}")
        if result['missing_tables']:
            print(f"Missing:   {', '.join(result['missing_tables'])}")
        print('HEALTHY' if healthy else 'UNHEALTHY')
    return 0 if healthy else 1


if __name__ == '__main__':
    sys.exit(main())
