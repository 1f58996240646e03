"""CLI entry point for scheduled tournament jobs.

Meant to be run by an external scheduler (cron, Render cron jobs, ...)::

    python -m tourney.run_jobs start-due
    python -m tourney.run_jobs retry-payouts --tournament-id 12
"""

import argparse
import json

from tourney.app import create_app
from tourney.services.lifecycle import start_due_tournaments
from tourney.services.prizes import deliver_pending_payouts


def _build_parser():
    parser = argparse.ArgumentParser(
        description='Run scheduled tournament jobs.',
    )
    parser.add_argument(
        '--env',
        default='development',
        choices=['development', 'testing', 'production'],
        help='App config environment to use (default: development).',
    )
    subparsers = parser.add_subparsers(dest='job', required=True)

    subparsers.add_parser(
        'start-due',
        help='Start every upcoming or registration tournament whose start_time has passed.',
    )

    retry = subparsers.add_parser(
        'retry-payouts',
        help='Deliver prize and refund payouts that are still pending.',
    )
    retry.add_argument(
        '--tournament-id',
        type=int,
        help='Only retry payouts for this tournament.',
    )
    retry.add_argument(
        '--limit',
        type=int,
        default=200,
        help='Maximum number of payouts to attempt (default: 200).',
    )
    return parser


def run_job(args):
    if args.job == 'start-due':
        return start_due_tournaments()
    return deliver_pending_payouts(
        tournament_id=args.tournament_id,
        limit=max(1, args.limit),
    )


def main(argv=None):
    args = _build_parser().parse_args(argv)
    app = create_app(args.env)

    with app.app_context():
        result = run_job(args)
        print(json.dumps(result, indent=2, default=str))
        return 0


if __name__ == '__main__':
    raise SystemExit(main())
