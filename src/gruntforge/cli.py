from __future__ import annotations

import argparse
import json
import sys

import httpx

from gruntforge.domain.models import DEFAULT_TECHNOLOGIES, TIER_NAMES


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='gruntforge', description='Run competing coding workers and pick a winner')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Orchestrator API base URL')

    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Create and start a run')
    run.add_argument('--prompt', required=True, help='Natural-language coding task')
    run.add_argument('--tier', default='medium', choices=list(TIER_NAMES), help='Worker tier')
    run.add_argument('--max-execution', type=int, default=14400, help='Execution budget in seconds')
    run.add_argument('--partial-interval', type=int, default=1800, help='Seconds between partial assessments')
    run.add_argument(
        '--technology',
        action='append',
        default=[],
        help=f'Technology to target (repeatable, default: {", ".join(DEFAULT_TECHNOLOGIES)})',
    )
    run.add_argument('--wait', action='store_true', help='Block until the run finishes')

    runs = sub.add_parser('runs', help='List runs')
    runs.add_argument('--limit', type=int, default=20)

    status = sub.add_parser('status', help='Show one run')
    status.add_argument('run_id')

    events = sub.add_parser('events', help='Show run events')
    events.add_argument('run_id')

    sub.add_parser('tiers', help='List worker tiers')
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')

    with httpx.Client(timeout=None if getattr(args, 'wait', False) else 60) as client:
        if args.command == 'run':
            response = client.post(
                f'{base}/api/runs',
                json={
                    'prompt': args.prompt,
                    'tier': args.tier,
                    'max_execution_seconds': int(args.max_execution),
                    'partial_assessment_interval_seconds': int(args.partial_interval),
                    'technologies': args.technology or list(DEFAULT_TECHNOLOGIES),
                    'background': not args.wait,
                },
            )
        elif args.command == 'runs':
            response = client.get(f'{base}/api/runs', params={'limit': args.limit})
        elif args.command == 'status':
            response = client.get(f'{base}/api/runs/{args.run_id}')
        elif args.command == 'events':
            response = client.get(f'{base}/api/runs/{args.run_id}/events')
        elif args.command == 'tiers':
            response = client.get(f'{base}/api/tiers')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1
    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
