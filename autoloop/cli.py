#!/usr/bin/env python3
"""autoloop CLI entrypoint."""

import sys
import argparse
import logging
from pathlib import Path

from autoloop.lib.config import ConfigError
from autoloop.lib.constants import DEFAULT_STATE_DIR, EXIT_FAILED, EXIT_INPUT_ERROR
from autoloop.lib.validate import ValidationError
from autoloop.runner.locking import LockTimeout
from autoloop.commands import init as cmd_init_module
from autoloop.commands import add as cmd_add_module
from autoloop.commands import run as cmd_run_module
from autoloop.commands import queue as cmd_queue_module
from autoloop.commands import status as cmd_status_module
from autoloop.commands import reset as cmd_reset_module
from autoloop.commands import compact as cmd_compact_module
from autoloop.commands import validate as cmd_validate_module


def get_state_dir(args) -> Path:
    """State directory from --state-dir, default ./.autoloop"""
    return Path(args.state_dir or DEFAULT_STATE_DIR).expanduser()


def require_state_dir(args) -> Path:
    """State directory that must already exist."""
    state_dir = get_state_dir(args)
    if not state_dir.is_dir():
        print(f"ERROR: State directory not found: {state_dir}. Run 'loop init' first.")
        sys.exit(EXIT_INPUT_ERROR)
    return state_dir


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )


def cmd_init(args):
    return cmd_init_module.cmd_init(args, get_state_dir(args))


def cmd_add(args):
    return cmd_add_module.cmd_add(args, require_state_dir(args))


def cmd_run(args):
    return cmd_run_module.cmd_run(args, require_state_dir(args))


def cmd_next(args):
    return cmd_queue_module.cmd_next(args, require_state_dir(args))


def cmd_counts(args):
    return cmd_queue_module.cmd_counts(args, require_state_dir(args))


def cmd_chain(args):
    return cmd_queue_module.cmd_chain(args, require_state_dir(args))


def cmd_status(args):
    return cmd_status_module.cmd_status(args, require_state_dir(args))


def cmd_reset(args):
    return cmd_reset_module.cmd_reset(args, require_state_dir(args))


def cmd_compact(args):
    return cmd_compact_module.cmd_compact(args, require_state_dir(args))


def cmd_validate(args):
    return cmd_validate_module.cmd_validate(args, require_state_dir(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='loop', description='Autonomous task loop')
    parser.add_argument('--state-dir', '-d', help=f'State directory (default: {DEFAULT_STATE_DIR})')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # loop init
    p_init = subparsers.add_parser('init', help='Create state directory with default config')
    p_init.add_argument('--force', action='store_true', help='Overwrite existing files')
    p_init.set_defaults(func=cmd_init)

    # loop add
    p_add = subparsers.add_parser('add', help='Add task records from a JSON/YAML file')
    p_add.add_argument('file', help='File with a list of task records')
    p_add.set_defaults(func=cmd_add)

    # loop run
    p_run = subparsers.add_parser('run', help='Run the loop')
    p_run.add_argument('--once', action='store_true', help='Run a single iteration')
    p_run.add_argument('--max-iterations', type=int, help='Stop after N iterations (0 = unbounded)')
    p_run.add_argument('--max-hours', type=float, help='Stop after H hours (0 = unbounded)')
    p_run.set_defaults(func=cmd_run)

    # loop next
    p_next = subparsers.add_parser('next', help='Show the next task the loop would pick')
    p_next.add_argument('--verbose', '-v', dest='explain', action='store_true', help='Show score breakdown')
    p_next.add_argument('--limit', '-n', type=int, default=1, help='Also list the following N-1 tasks')
    p_next.set_defaults(func=cmd_next)

    # loop counts
    p_counts = subparsers.add_parser('counts', help='Task counts')
    p_counts.add_argument('--by', choices=['status', 'type'], default='status')
    p_counts.set_defaults(func=cmd_counts)

    # loop chain
    p_chain = subparsers.add_parser('chain', help='Show what a task is waiting on')
    p_chain.add_argument('task_id', help='Task ID')
    p_chain.set_defaults(func=cmd_chain)

    # loop status
    p_status = subparsers.add_parser('status', help='Show loop health and queue state')
    p_status.set_defaults(func=cmd_status)

    # loop reset
    p_reset = subparsers.add_parser('reset', help='Clear a tripped circuit breaker')
    p_reset.set_defaults(func=cmd_reset)

    # loop compact
    p_compact = subparsers.add_parser('compact', help='Compact the progress log')
    p_compact.add_argument('--force', action='store_true', help='Compact even when under the limits')
    p_compact.set_defaults(func=cmd_compact)

    # loop validate
    p_validate = subparsers.add_parser('validate', help='Validate state directory files')
    p_validate.set_defaults(func=cmd_validate)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        return args.func(args)
    except (ConfigError, ValidationError) as e:
        print(f"ERROR: {e}")
        return EXIT_INPUT_ERROR
    except LockTimeout as e:
        print(f"ERROR: {e}. Is another driver running?")
        return EXIT_FAILED


if __name__ == '__main__':
    sys.exit(main())
