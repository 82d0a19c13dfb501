"""
regionctl command line interface

Usage:
    regionctl [options] status
    regionctl [options] health-failover
    regionctl [options] failover-to-secondary [--force]
    regionctl [options] failback-to-primary [--force]
    regionctl [options] deploy [--image-tag TAG | --artifact URI]
    regionctl [options] rollback REVISION
    regionctl [options] scale COUNT
    regionctl [options] history
    regionctl [options] test
    regionctl [options] dr-drill

The structured result is printed to stdout as JSON. Exit codes: 0 success,
1 recoverable failure, 2 manual intervention required.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .config import load_config
from .errors import ConfigurationError, Outcome
from .orchestrator import OperationResult, Orchestrator
from .utils.logger import setup_logging

logger = logging.getLogger(__name__)

COMMAND_ALIASES = {
    'auto': 'health-failover',
    'secondary': 'failover-to-secondary',
    'primary': 'failback-to-primary',
}


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='regionctl',
        description='Multi-region availability and release controller'
    )
    parser.add_argument('--config', help='YAML configuration file')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Report what would change without changing anything')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])
    parser.add_argument('--log-format', default='text', choices=['text', 'json'])

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('status', help='Show region health, DNS routing and service state')
    subparsers.add_parser('health-failover', aliases=['auto'],
                          help='Evaluate health and reconcile DNS routing')
    for name, alias, text in (
        ('failover-to-secondary', 'secondary', 'Route traffic to the secondary region'),
        ('failback-to-primary', 'primary', 'Route traffic back to the primary region'),
    ):
        sub = subparsers.add_parser(name, aliases=[alias], help=text)
        sub.add_argument('--force', action='store_true',
                         help='Promote the target even if it is not healthy')

    deploy = subparsers.add_parser('deploy', help='Roll out a new image')
    source = deploy.add_mutually_exclusive_group()
    source.add_argument('--image-tag', help='Image tag in the configured repository')
    source.add_argument('--artifact', help='Full image URI')

    rollback = subparsers.add_parser('rollback', help='Roll back to a specific revision')
    rollback.add_argument('revision', help='Revision (task definition ARN or family:revision)')

    scale = subparsers.add_parser('scale', help='Scale the service')
    scale.add_argument('count', type=non_negative_int, help='Desired instance count')

    history = subparsers.add_parser('history', help='Show deployment history')
    history.add_argument('--limit', type=int, default=10)

    subparsers.add_parser('test', help='Status, one reconcile cycle, status again')
    subparsers.add_parser('dr-drill', help='Run the disaster-recovery drill')

    return parser


def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if args.dry_run:
        overrides['dry_run'] = True
    if getattr(args, 'image_tag', None):
        overrides['deployment'] = {'image_tag': args.image_tag}
    return overrides


async def run_command(orchestrator: Orchestrator, args: argparse.Namespace) -> OperationResult:
    command = COMMAND_ALIASES.get(args.command, args.command)

    if command == 'status':
        return await orchestrator.status()
    if command == 'health-failover':
        return await orchestrator.evaluate_and_reconcile()
    if command == 'failover-to-secondary':
        return await orchestrator.failover_to_secondary(force=args.force)
    if command == 'failback-to-primary':
        return await orchestrator.failback_to_primary(force=args.force)
    if command == 'deploy':
        return await orchestrator.deploy(artifact=args.artifact, image_tag=args.image_tag)
    if command == 'rollback':
        return await orchestrator.rollback(args.revision)
    if command == 'scale':
        return await orchestrator.scale(args.count)
    if command == 'history':
        return await orchestrator.history(limit=args.limit)
    if command == 'test':
        return await orchestrator.failover_test()
    if command == 'dr-drill':
        return await orchestrator.run_disaster_recovery_drill()
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point; returns the process exit code"""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, structured=args.log_format == 'json')

    try:
        config = load_config(args.config, config_overrides(args))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e.message}")
        result = OperationResult(
            COMMAND_ALIASES.get(args.command, args.command),
            Outcome.FAILED,
            e.message,
            {'error': 'ConfigurationError'},
        )
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return result.exit_code

    if config.dry_run:
        logger.info("DRY RUN mode - no changes will be made")

    orchestrator = Orchestrator(config)
    result = asyncio.run(run_command(orchestrator, args))

    if config.pushgateway_url:
        orchestrator.metrics.push(config.pushgateway_url, job=f"regionctl-{result.command}")

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return result.exit_code


if __name__ == '__main__':
    sys.exit(main())
