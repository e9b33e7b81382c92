from __future__ import annotations

import argparse
import logging
import sys
import threading
from datetime import datetime, timezone
from urllib.parse import urlparse

import httpx

from marksync.client.session import BookmarkSession
from marksync.client.store import HttpBookmarkStore
from marksync.config import ClientConfig
from marksync.errors import FetchError, MarksyncError, ValidationError


def format_host(url: str) -> str:
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return url
    if not hostname:
        return url
    return hostname.replace("www.", "", 1)


def format_age(created_at: datetime, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    seconds = int((now - created_at).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    if seconds < 604800:
        return f"{seconds // 86400}d ago"
    return created_at.date().isoformat()


def render(records, out=None) -> None:
    out = out or sys.stdout
    if not records:
        print("No bookmarks yet. Add your first one with `marksync-client add`.", file=out)
        return
    print(f"Your Bookmarks ({len(records)})", file=out)
    for record in records:
        print(
            f"{record.id:>6}  {record.title}  "
            f"[{format_host(record.url)}, {format_age(record.created_at)}]",
            file=out,
        )
    out.flush()


def _login(args, transport=None) -> int:
    with httpx.Client(timeout=args.timeout, transport=transport) as client:
        response = client.post(
            f"{args.url.rstrip('/')}/api/v1/auth/token",
            json={"username": args.username, "password": args.password},
        )
    if response.status_code != 200:
        print(f"error: {response.json().get('error', 'login failed')}", file=sys.stderr)
        return 1
    print(response.json()["token"])
    return 0


def _open_session(args, transport=None) -> BookmarkSession:
    store = HttpBookmarkStore(
        args.url,
        args.token,
        timeout=args.timeout,
        poll_interval=args.poll_interval,
        transport=transport,
    )
    try:
        user = store.current_user()
    except MarksyncError:
        store.close()
        raise
    return BookmarkSession(store, user["id"])


def _wait_for_interrupt() -> None:
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass


def _run_command(args, transport=None) -> int:
    session = _open_session(args, transport)
    try:
        if args.command == "list":
            session.controller.initialize()
            render(session.records)
        elif args.command == "add":
            record = session.add(args.title, args.url_value)
            print(f"Added {record.id}: {record.title}")
        elif args.command == "rm":
            session.remove(args.bookmark_id)
            print(f"Deleted {args.bookmark_id}")
        elif args.command == "watch":
            session.controller.add_listener(render)
            session.start()
            _wait_for_interrupt()
    finally:
        session.close()
        session.store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="marksync-client")
    p.add_argument("--url", default=ClientConfig.BASE_URL)
    p.add_argument("--token", default=ClientConfig.TOKEN)
    p.add_argument("--timeout", type=float, default=ClientConfig.TIMEOUT)
    p.add_argument("--poll-interval", type=float, default=ClientConfig.POLL_INTERVAL)
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="exchange credentials for an API token")
    login.add_argument("username")
    login.add_argument("password")

    sub.add_parser("list", help="print your bookmarks, newest first")

    add = sub.add_parser("add", help="create a bookmark")
    add.add_argument("title")
    add.add_argument("url_value", metavar="url")

    rm = sub.add_parser("rm", help="delete a bookmark")
    rm.add_argument("bookmark_id", type=int)

    sub.add_parser("watch", help="follow your bookmarks as they change")
    return p


def main(argv=None, transport=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "login":
        try:
            return _login(args, transport)
        except (httpx.HTTPError, ValueError) as exc:
            print(f"error: login failed: {exc}", file=sys.stderr)
            return 1
    if not args.token:
        print("error: an API token is required (--token or MARKSYNC_TOKEN)", file=sys.stderr)
        return 2

    try:
        return _run_command(args, transport)
    except ValidationError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 2
    except FetchError as exc:
        print(f"error: could not load your bookmarks: {exc}", file=sys.stderr)
        return 1
    except MarksyncError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
