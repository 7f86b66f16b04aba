#!/usr/bin/env python3
"""
Command Line Interface for HL7 Recorder
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from pathlib import Path

from .config_utils import (
    AppConfig, MarkerConfig, PathResolver, build_capture_filter, load_config,
    validate_marker_config
)
from .logging_setup import setup_logging
from .session_store import SessionStore, SessionStoreError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = '/etc/hl7-recorder/hl7-recorder.toml'


def _format_time(ms):
    if ms is None:
        return '-'
    return datetime.fromtimestamp(ms / 1000).strftime('%Y-%m-%d %H:%M:%S')


def _load(args):
    """Load configuration; a missing default config file means built-in defaults"""
    config_file = Path(args.config)
    try:
        config = load_config(config_file)
    except FileNotFoundError:
        if args.config != DEFAULT_CONFIG:
            print(f"❌ Configuration file not found: {config_file}")
            print("   Use --config to specify a different file")
            sys.exit(1)
        logger.warning(f"{config_file} not found, using built-in defaults")
        config = {}
    except Exception as e:
        print(f"❌ Error loading configuration: {e}")
        sys.exit(1)

    return config, PathResolver(config, development_mode=args.dev)


def _open_store(path_resolver: PathResolver) -> SessionStore:
    store = SessionStore(path_resolver.get_sessions_dir())
    store.initialize()
    return store


def cmd_daemon(args, config, path_resolver):
    from .recorder_daemon import RecorderDaemon

    path_resolver.ensure_directories()
    setup_logging('debug' if args.debug else AppConfig.from_toml(config).log_level,
                  path_resolver.get_log_dir())

    daemon = RecorderDaemon(config, path_resolver)
    daemon.run(start_capture=not args.no_capture)


def cmd_sessions(args, config, path_resolver):
    store = _open_store(path_resolver)

    if args.sessions_command == 'list':
        sessions = sorted(store.load_all(), key=lambda s: s.start_time)
        if args.status:
            sessions = [s for s in sessions if s.submission_status.value == args.status]

        print(f"{'SESSION':<36} {'START':<20} {'MSGS':>5} {'DONE':<5} {'STATUS':<10} {'TRIES':>5}")
        for s in sessions:
            print(f"{s.id:<36} {_format_time(s.start_time):<20} {len(s.messages):>5} "
                  f"{'yes' if s.is_complete else 'no':<5} {s.submission_status.value:<10} "
                  f"{s.submission_attempts:>5}")
        print(f"\n{len(sessions)} sessions")

    elif args.sessions_command == 'show':
        try:
            session = store.load(args.session_id)
        except (SessionStoreError, ValueError) as e:
            print(f"❌ {e}")
            sys.exit(1)
        if session is None:
            print(f"❌ Session not found: {args.session_id}")
            sys.exit(1)
        print(json.dumps(session.to_dict(), indent=2))

    elif args.sessions_command in ('retry', 'ignore'):
        action = store.mark_for_retry if args.sessions_command == 'retry' else store.mark_ignored
        try:
            found = action(args.session_id)
        except (SessionStoreError, ValueError) as e:
            print(f"❌ {e}")
            sys.exit(1)
        if not found:
            print(f"❌ Session not found: {args.session_id}")
            sys.exit(1)
        print(f"✅ Session {args.session_id} marked "
              f"{'pending' if args.sessions_command == 'retry' else 'ignored'}")


def cmd_cleanup(args, config, path_resolver):
    from .cleanup_worker import CleanupWorker

    app_config = AppConfig.from_toml(config)
    worker = CleanupWorker(
        store=_open_store(path_resolver),
        trash_dir=path_resolver.get_trash_dir(),
        retention_days=app_config.retention_days,
        dry_run_mode=args.dry_run or app_config.dry_run_mode,
    )
    summary = worker.run_cleanup_now()

    prefix = "[DRY RUN] Would free" if summary.dry_run else "Freed"
    print(f"{prefix} {summary.bytes_freed / 1024:.1f} KB")
    print(f"  Files deleted:  {summary.files_deleted}")
    print(f"  Files in trash: {summary.files_in_trash}")


def cmd_submit(args, config, path_resolver):
    from .submission_worker import SubmissionWorker

    app_config = AppConfig.from_toml(config)
    if not app_config.submission_endpoint:
        print("❌ No submission endpoint configured ([submission] endpoint)")
        sys.exit(1)

    results = []
    worker = SubmissionWorker(
        store=_open_store(path_resolver),
        endpoint=app_config.submission_endpoint,
        auth_header=app_config.submission_auth_header,
        concurrency=app_config.submission_concurrency,
        max_retries=app_config.submission_max_retries,
        on_result=results.append,
    )
    worker.run_cycle()
    worker.wait_idle()

    submitted = sum(1 for r in results if r.success)
    print(f"Submitted {submitted}/{len(results)} sessions")
    for r in results:
        if not r.success:
            print(f"  ❌ {r.session_id}: {r.error} ({r.attempts} attempts)")


def cmd_recover(args, config, path_resolver):
    store = _open_store(path_resolver)
    stats = store.perform_crash_recovery()
    sessions = store.load_and_migrate_all()
    print(f"Recovered: {stats.recovered}, cleaned: {stats.cleaned}, sessions on disk: {len(sessions)}")


def cmd_filter(args, config, path_resolver):
    markers = MarkerConfig.from_toml(config.get('markers', {}))
    result = validate_marker_config(markers)
    if not result.valid:
        print("❌ Invalid marker configuration:")
        for error in result.errors:
            print(f"   {error}")
        sys.exit(1)
    print(build_capture_filter(markers))


def cmd_paths(args, config, path_resolver):
    path_resolver.print_summary()


COMMANDS = {
    'daemon': cmd_daemon,
    'sessions': cmd_sessions,
    'cleanup': cmd_cleanup,
    'submit': cmd_submit,
    'recover': cmd_recover,
    'filter': cmd_filter,
    'paths': cmd_paths,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='hl7-recorder',
        description='HL7 session recorder: capture, persist, clean up and deliver device sessions',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--config', '-c', default=DEFAULT_CONFIG, help='Configuration file path')
    parser.add_argument('--dev', action='store_true', help='Use development paths')
    parser.add_argument('--debug', '-d', action='store_true', help='Enable DEBUG logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Daemon command
    daemon_parser = subparsers.add_parser('daemon', help='Run recorder daemon')
    daemon_parser.add_argument('--no-capture', action='store_true',
                               help='Run workers only, do not start capture')

    # Session management
    sessions_parser = subparsers.add_parser('sessions', help='Inspect persisted sessions')
    sessions_subparsers = sessions_parser.add_subparsers(dest='sessions_command',
                                                         help='Session command')
    list_parser = sessions_subparsers.add_parser('list', help='List persisted sessions')
    list_parser.add_argument('--status', choices=['pending', 'submitted', 'failed', 'ignored'],
                             help='Only sessions with this submission status')
    for name, help_text in (('show', 'Print one session as JSON'),
                            ('retry', 'Queue a session for resubmission'),
                            ('ignore', 'Exclude a session from submission')):
        sub = sessions_subparsers.add_parser(name, help=help_text)
        sub.add_argument('session_id', help='Session id')

    # Cleanup
    cleanup_parser = subparsers.add_parser('cleanup', help='Run one retention sweep')
    cleanup_parser.add_argument('--dry-run', action='store_true',
                                help='Show what would be deleted without deleting')

    subparsers.add_parser('submit', help='Submit pending sessions once')
    subparsers.add_parser('recover', help='Resolve interrupted writes and migrate old records')
    subparsers.add_parser('filter', help='Print the capture filter for the marker configuration')
    subparsers.add_parser('paths', help='Show resolved paths')

    return parser


def main(argv=None):
    """Main entry point for hl7-recorder command"""
    parser = build_parser()
    args = parser.parse_args(argv)

    # If no command specified, show help
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == 'sessions' and not args.sessions_command:
        parser.parse_args(['sessions', '--help'])

    if args.command != 'daemon':
        setup_logging('debug' if args.debug else 'warning')

    config, path_resolver = _load(args)
    COMMANDS[args.command](args, config, path_resolver)


if __name__ == '__main__':
    main()
