#!/usr/bin/env python

"""
Tikker - Main Entry Point

Headless front end for the tracking engine: every invocation restores the
persisted session, performs one intent against the server and exits.

Usage:
    python main.py status
    python main.py profile add NAME URL --token TOKEN
    python main.py start CUSTOMER PROJECT ACTIVITY [-d DESCRIPTION] [--not-billable]
    python main.py stop
    python main.py task start TASK_ID
    python main.py task stop [--status closed]
"""

import argparse
import asyncio
import logging
import sys

from PySide6.QtCore import QCoreApplication

from tikker.bootstrap import TikkerApp
from tikker.domain import AuthConfig, AuthType, TaskStatus, TikkerError
from tikker.infra.config import get_settings
from tikker.services.timer_service import format_time

logger = logging.getLogger("tikker")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tikker", description="Time tracking client")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="show connection, bindings and totals")
    sub.add_parser("refresh", help="reload all cached collections")

    profile = sub.add_parser("profile", help="manage connection profiles")
    profile_sub = profile.add_subparsers(dest="profile_command", required=True)
    add = profile_sub.add_parser("add")
    add.add_argument("name")
    add.add_argument("url")
    add.add_argument("--token")
    add.add_argument("--username")
    add.add_argument("--password")
    add.add_argument("--auto-connect", action="store_true")
    use = profile_sub.add_parser("use")
    use.add_argument("profile_id")
    profile_sub.add_parser("list")

    start = sub.add_parser("start", help="start a time entry")
    start.add_argument("customer", type=int)
    start.add_argument("project", type=int)
    start.add_argument("activity", type=int)
    start.add_argument("-d", "--description")
    start.add_argument("--not-billable", action="store_true")
    start.add_argument("--tag", action="append", dest="tags")

    sub.add_parser("stop", help="stop the running time entry")

    task = sub.add_parser("task", help="work on a task")
    task_sub = task.add_subparsers(dest="task_command", required=True)
    task_start = task_sub.add_parser("start")
    task_start.add_argument("task_id", type=int)
    task_stop = task_sub.add_parser("stop")
    task_stop.add_argument("--status", choices=[s.value for s in TaskStatus])

    return parser


def handle_profile(args) -> int:
    settings = get_settings()
    if args.profile_command == "list":
        for p in settings.profiles:
            marker = "*" if p.id == settings.current_profile_id else " "
            print(f"{marker} {p.id}  {p.name}  {p.auth.base_url}")
        return 0
    if args.profile_command == "use":
        return 0 if settings.set_current_profile(args.profile_id) else 1

    auth_type = AuthType.API_TOKEN if args.token else AuthType.LEGACY
    auth = AuthConfig(type=auth_type, base_url=args.url, api_token=args.token,
                      username=args.username, password=args.password)
    profile = settings.add_profile(args.name, auth, auto_connect=args.auto_connect)
    print(profile.id)
    return 0


def print_status(app: TikkerApp) -> None:
    state = app.session.state
    print(f"Connected:   {state.is_connected}")
    if state.user:
        print(f"User:        {state.user.username}")
    if state.current_time_entry:
        entry = state.current_time_entry
        print(f"Time entry:  #{entry.id} since {entry.begin:%Y-%m-%d %H:%M}")
    if state.current_task:
        print(f"Task:        #{state.current_task.id} {state.current_task.title}")
    print(f"Timer:       {app.timer.status.value} {format_time(app.timer.total_elapsed())}")
    history = app.session.history
    print(f"Tracked:     {format_time(history.total_time)} (billable {format_time(history.billable_time)})")


async def run(args) -> int:
    app = await TikkerApp.create()
    try:
        if args.command != "status":
            await app.connect(force=True)

        if args.command == "start":
            entry = await app.session.start_time_entry(
                args.customer, args.project, args.activity,
                description=args.description,
                billable=not args.not_billable,
                tags=args.tags,
            )
            print(f"Started time entry #{entry.id}")
        elif args.command == "stop":
            entry = await app.session.stop_time_entry()
            print(f"Stopped time entry #{entry.id} ({format_time(entry.duration)})")
        elif args.command == "task" and args.task_command == "start":
            task = await app.session.start_task(args.task_id)
            print(f"Task #{task.id} in progress")
        elif args.command == "task":
            status = TaskStatus(args.status) if args.status else None
            task = await app.session.stop_task(status)
            print(f"Task #{task.id} now {task.status.value}, {format_time(task.actual_duration)} tracked")
        elif args.command == "refresh":
            await app.session.refresh()

        print_status(app)
        return 0
    except TikkerError as e:
        logger.error(str(e))
        return 1
    finally:
        await app.shutdown()


def main():
    """Main entry point"""
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "profile":
        return handle_profile(args)

    # Signals and timers need a Qt application object
    qt_app = QCoreApplication.instance() or QCoreApplication(sys.argv)
    qt_app.setApplicationName("Tikker")
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
