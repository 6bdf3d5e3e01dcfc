# rowqueue/core/cli.py
"""
CLI for rowqueue workers and queue maintenance.

App locators follow the usual convention:
1. Dotted module path: `rowqueue worker myapp.queueing:app`
2. File path: `rowqueue worker myapp/queueing.py:app`
3. The attribute may be omitted when the module holds exactly one RowQueue
Convenience: if cwd has pyproject.toml, cwd is added to sys.path.
"""

import argparse
import json
import logging
import os
import signal
import sys
from collections.abc import Sequence
from types import FrameType
from typing import Any, Optional

import psycopg
from result import is_err

from rowqueue.core.app import RowQueue
from rowqueue.core.brokers.setup import schema_statements
from rowqueue.core.errors import ConfigurationError, ErrorCode, RowQueueError
from rowqueue.core.logging import get_logger, set_default_level
from rowqueue.core.models.app import parse_queue_list
from rowqueue.core.utils.imports import (
    import_file_path,
    import_module_path,
    is_file_path,
    setup_sys_path_from_cwd,
)
from rowqueue.core.worker.child_runner import locate_worker_class
from rowqueue.core.worker.config import WorkerConfig
from rowqueue.core.worker.worker import Worker

logger = get_logger('cli')

_LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def discover_app(module_locator: str) -> tuple[RowQueue, str]:
    """
    Import a module and find its RowQueue instance.

    Returns:
        (app, locator) where locator is the normalized ``module:attr`` form
        (file paths made absolute) that isolated children use to rebuild it.
    """
    setup_sys_path_from_cwd()

    module_path, _, attr_name = module_locator.partition(':')
    if not module_path:
        raise ConfigurationError(
            message='app locator is empty',
            code=ErrorCode.CLI_INVALID_ARGS,
            help_text="use 'module.path:app' or '/path/to/file.py:app'",
        )
    try:
        if is_file_path(module_path):
            module_path = os.path.realpath(module_path)
            mod = import_file_path(module_path)
        else:
            mod = import_module_path(module_path)
    except (ImportError, FileNotFoundError) as exc:
        raise ConfigurationError(
            message=f"cannot import '{module_path}'",
            code=ErrorCode.WORKER_INVALID_LOCATOR,
            notes=[f'{type(exc).__name__}: {exc}'],
            help_text='run from the project root or fix PYTHONPATH',
        ) from exc

    if attr_name:
        app = getattr(mod, attr_name, None)
        if not isinstance(app, RowQueue):
            raise ConfigurationError(
                message=f"'{attr_name}' is not a RowQueue instance",
                code=ErrorCode.WORKER_INVALID_LOCATOR,
                notes=[f'locator: {module_locator!r}', f'resolved to: {type(app).__name__}'],
            )
        return app, f'{module_path}:{attr_name}'

    found = [(name, obj) for name, obj in vars(mod).items() if isinstance(obj, RowQueue)]
    if len(found) != 1:
        raise ConfigurationError(
            message=f'expected exactly one RowQueue instance in {module_path}, found {len(found)}',
            code=ErrorCode.WORKER_INVALID_LOCATOR,
            notes=[f'candidates: {[name for name, _ in found]}'] if found else [],
            help_text=f"name the instance explicitly: '{module_path}:app'",
        )
    name, app = found[0]
    logger.info(f"Discovered rowqueue app '{name}' from {module_path}")
    return app, f'{module_path}:{name}'


def setup_logging(loglevel: str) -> int:
    """Apply the level to every rowqueue logger (existing and future)."""
    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)
    for name in logging.Logger.manager.loggerDict:
        if isinstance(name, str) and name.startswith('rowqueue.'):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)
    return level


def parse_json_args(raw_args: Sequence[str]) -> list[Any]:
    """Decode each positional job argument as JSON."""
    values: list[Any] = []
    for raw in raw_args:
        try:
            values.append(json.loads(raw))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                message='job arguments must be JSON values',
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[f'got: {raw!r}', str(exc)],
                help_text='quote strings as JSON, e.g. \'"text"\', and pass numbers bare',
            ) from exc
    return values


def normalize_locator(locator: str) -> str:
    """Make the file half of ``path.py:attr`` absolute; dotted locators pass through."""
    mod_path, sep, attr = locator.partition(':')
    if is_file_path(mod_path):
        return f'{os.path.realpath(mod_path)}{sep}{attr}'
    return locator


def worker_command(args: argparse.Namespace) -> None:
    level = setup_logging(args.loglevel)
    app, locator = discover_app(args.app)
    worker_cls: type[Worker] = Worker
    worker_locator = None
    if args.worker_class:
        worker_locator = normalize_locator(args.worker_class)
        worker_cls = locate_worker_class(worker_locator)
    cfg = WorkerConfig.from_app_config(
        app.config,
        queue=args.queue,
        queues=parse_queue_list(args.queues) or None,
        top_bound=args.top_bound,
        fork_worker=True if args.fork else None,
        app_locator=locator,
        worker_class=worker_locator,
        loglevel=level,
    )
    worker = worker_cls(app, cfg)

    def _on_signal(signum: int, _frame: Optional[FrameType]) -> None:
        logger.info(f'Received {signal.Signals(signum).name}, stopping worker...')
        worker.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _on_signal)

    try:
        worker.start()
    finally:
        app.close()


def setup_command(args: argparse.Namespace) -> None:
    if args.print_sql:
        print(';\n\n'.join(schema_statements()) + ';')
        return
    setup_logging(args.loglevel)
    app, _ = discover_app(args.app)
    result = app.setup()
    if is_err(result):
        logger.error(result.err_value.message)
        sys.exit(1)


def drop_command(args: argparse.Namespace) -> None:
    setup_logging(args.loglevel)
    app, _ = discover_app(args.app)
    result = app.drop()
    if is_err(result):
        logger.error(result.err_value.message)
        sys.exit(1)


def enqueue_command(args: argparse.Namespace) -> None:
    setup_logging(args.loglevel)
    job_args = parse_json_args(args.args)
    app, _ = discover_app(args.app)
    try:
        job = app.enqueue(args.method, *job_args, queue=args.queue)
    finally:
        app.close()
    print(job.id)


def count_command(args: argparse.Namespace) -> None:
    setup_logging(args.loglevel)
    app, _ = discover_app(args.app)
    try:
        print(app.queue(args.queue).count())
    finally:
        app.close()


def _add_common(parser: argparse.ArgumentParser, default_level: str = 'INFO') -> None:
    parser.add_argument('app', help='App locator (e.g., myapp.queueing:app)')
    parser.add_argument(
        '--loglevel',
        choices=_LOGLEVELS,
        default=default_level,
        type=str.upper,
        help=f'Logging level (default: {default_level})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='rowqueue',
        description='rowqueue - PostgreSQL job queue workers and maintenance',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  rowqueue setup myapp.queueing:app
  rowqueue worker myapp.queueing:app --queues urgent,default --fork
  rowqueue enqueue myapp.queueing:app Reporter.run 42 '"monthly"'
  rowqueue count myapp.queueing:app --queue urgent
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    worker_parser = subparsers.add_parser('worker', help='Start a worker')
    _add_common(worker_parser)
    worker_parser.add_argument('--queue', help='Primary queue (default: from config)')
    worker_parser.add_argument(
        '--queues', help='Comma-separated queues to lock from, in priority order'
    )
    worker_parser.add_argument(
        '--top-bound', type=int, dest='top_bound', help='Lock candidates per queue'
    )
    worker_parser.add_argument(
        '--fork',
        action='store_true',
        default=False,
        help='Run every cycle in an isolated child process',
    )
    worker_parser.add_argument(
        '--worker-class',
        dest='worker_class',
        help='Worker subclass to run, as module:Class or path/to/file.py:Class',
    )

    setup_parser = subparsers.add_parser('setup', help='Create the jobs table and trigger')
    _add_common(setup_parser)
    setup_parser.add_argument(
        '--print-sql',
        action='store_true',
        default=False,
        dest='print_sql',
        help='Print the DDL instead of running it',
    )

    drop_parser = subparsers.add_parser('drop', help='Drop the jobs table and trigger')
    _add_common(drop_parser)

    enqueue_parser = subparsers.add_parser('enqueue', help='Insert one job')
    _add_common(enqueue_parser, default_level='WARNING')
    enqueue_parser.add_argument('method', help='Handler key, e.g. Reporter.run')
    enqueue_parser.add_argument('args', nargs='*', help='Job arguments as JSON values')
    enqueue_parser.add_argument('--queue', help='Target queue (default: from config)')

    count_parser = subparsers.add_parser('count', help='Count jobs in a queue')
    _add_common(count_parser, default_level='WARNING')
    count_parser.add_argument('--queue', help='Queue to count (default: from config)')

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        match args.command:
            case 'worker':
                worker_command(args)
            case 'setup':
                setup_command(args)
            case 'drop':
                drop_command(args)
            case 'enqueue':
                enqueue_command(args)
            case 'count':
                count_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except RowQueueError as e:
        logger.error(str(e))
        sys.exit(1)
    except psycopg.Error as e:
        logger.error(f'Database error: {e}')
        sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
