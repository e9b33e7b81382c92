from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

import httpx

from marksync.client.events import ChangeEvent, event_from_change
from marksync.client.records import Bookmark
from marksync.config import ClientConfig
from marksync.errors import FetchError, ValidationError, WriteError


logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "MarksyncClient/1.0",
    "Accept": "application/json",
}


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class BookmarkStore(Protocol):
    def fetch_all(self, user_id) -> list[Bookmark]: ...

    def create(self, user_id, title: str, url: str) -> Bookmark: ...

    def delete(self, bookmark_id) -> None: ...

    def subscribe(
        self, user_id, handler: Callable[[ChangeEvent], None]
    ) -> Cancellable: ...


def _normalize_error(exc: Exception) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__


class ChangeSubscription:
    """Polls the service's change feed and hands each event to ``handler``.

    Events are delivered in cursor order on a daemon thread. A failed poll is
    logged and retried on the next tick from the same cursor.
    """

    def __init__(
        self,
        client: httpx.Client,
        handler: Callable[[ChangeEvent], None],
        cursor: int = 0,
        poll_interval: float = 2.0,
        join_timeout: float = 5.0,
    ):
        self._client = client
        self._handler = handler
        self.cursor = cursor
        self.poll_interval = poll_interval
        self.join_timeout = join_timeout
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        return not self._stopped.is_set()

    def start(self) -> None:
        if self._thread is not None or self._stopped.is_set():
            return
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="marksync-changes"
        )
        self._thread.start()

    def cancel(self) -> None:
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.join_timeout)

    def poll_once(self) -> int:
        """Drain the feed past the current cursor; return the number delivered."""
        delivered = 0
        while not self._stopped.is_set():
            response = self._client.get("/changes", params={"since": self.cursor})
            response.raise_for_status()
            body = response.json()
            for change in body.get("events") or []:
                if self._stopped.is_set():
                    return delivered
                # Advance first so a failing handler does not see the event again.
                self.cursor = max(self.cursor, int(change["cursor"]))
                try:
                    event = event_from_change(change)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning(
                        "Skipping malformed change %s: %s", change.get("cursor"), exc
                    )
                    continue
                self._handler(event)
                delivered += 1
            if not body.get("has_more"):
                break
        return delivered

    def _run(self) -> None:
        while not self._stopped.is_set():
            try:
                self.poll_once()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "Change poll failed at cursor %s: %s",
                    self.cursor,
                    _normalize_error(exc),
                )
            except Exception:
                logger.exception("Change handler failed at cursor %s", self.cursor)
            self._stopped.wait(self.poll_interval)


class HttpBookmarkStore:
    """Backing store implemented over the Marksync HTTP API.

    The service scopes every request to the owner of ``token``; the
    ``user_id`` arguments of the store contract are only used for logging.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        poll_interval: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.poll_interval = poll_interval
        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/api/v1",
            headers={**DEFAULT_HEADERS, "Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config=ClientConfig, **overrides) -> HttpBookmarkStore:
        options = {
            "base_url": config.BASE_URL,
            "token": config.TOKEN,
            "timeout": config.TIMEOUT,
            "poll_interval": config.POLL_INTERVAL,
        }
        options.update(overrides)
        return cls(**options)

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def current_user(self) -> dict:
        try:
            response = self._client.get("/me")
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise FetchError(f"could not load current user: {_normalize_error(exc)}") from exc

    def fetch_all(self, user_id) -> list[Bookmark]:
        try:
            response = self._client.get("/bookmarks")
            response.raise_for_status()
            items = response.json()["items"]
            return [Bookmark.from_dict(item) for item in items]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            raise FetchError(
                f"could not fetch bookmarks for user {user_id}: {_normalize_error(exc)}"
            ) from exc

    def create(self, user_id, title: str, url: str) -> Bookmark:
        try:
            response = self._client.post("/bookmarks", json={"title": title, "url": url})
        except httpx.HTTPError as exc:
            raise WriteError(f"could not create bookmark: {_normalize_error(exc)}") from exc

        if response.status_code == 400:
            body = _json_or_empty(response)
            raise ValidationError(
                body.get("field") or "url", body.get("error") or "invalid bookmark"
            )
        if response.is_error:
            raise WriteError(f"could not create bookmark: HTTP {response.status_code}")
        try:
            return Bookmark.from_dict(response.json())
        except (KeyError, TypeError, ValueError) as exc:
            raise WriteError(f"unexpected create response: {_normalize_error(exc)}") from exc

    def delete(self, bookmark_id) -> None:
        try:
            response = self._client.delete(f"/bookmarks/{bookmark_id}")
        except httpx.HTTPError as exc:
            raise WriteError(
                f"could not delete bookmark {bookmark_id}: {_normalize_error(exc)}"
            ) from exc

        if response.status_code == 404:
            logger.debug("Bookmark %s already gone on delete", bookmark_id)
            return
        if response.is_error:
            raise WriteError(
                f"could not delete bookmark {bookmark_id}: HTTP {response.status_code}"
            )

    def head_cursor(self) -> int:
        try:
            response = self._client.get("/changes/head")
            response.raise_for_status()
            return int(response.json()["cursor"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            raise FetchError(
                f"could not open change feed: {_normalize_error(exc)}"
            ) from exc

    def subscribe(
        self, user_id, handler: Callable[[ChangeEvent], None], start: bool = True
    ) -> ChangeSubscription:
        subscription = ChangeSubscription(
            self._client,
            handler,
            cursor=self.head_cursor(),
            poll_interval=self.poll_interval,
        )
        logger.debug(
            "Subscribed to changes for user %s from cursor %s",
            user_id,
            subscription.cursor,
        )
        if start:
            subscription.start()
        return subscription


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
