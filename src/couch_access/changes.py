# Copyright TELICENT LTD
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Change-feed subscription.

A `ChangeSubscription` keeps a continuous ``_changes`` feed open on a background
thread, decodes each row into a `ChangeRecord` and hands it to its owner in feed
order. Dropped connections are retried with exponential backoff, resuming after the
last delivered sequence; redelivered rows are harmless because the owning database
suppresses revisions it already knows.

    DISABLED -> CONNECTING -> STREAMING <-> RECONNECTING
        ^                                       |
        +------------------ stop() -------------+
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from ._codec import JsonType, decode_json
from ._utils import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_FEED_HEARTBEAT,
    DEFAULT_MAX_BACKOFF,
    build_url,
    encode_query,
)
from .exceptions import DecodeError, StatusError, TransportError

if TYPE_CHECKING:
    from .executor import Feed, RequestExecutor

LOGGER = logging.getLogger(__name__)

Sequence = Union[int, str]


class ChangeTrackerState(Enum):
    DISABLED = "disabled"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ChangeRecord:
    """One row of the change feed."""

    sequence: Sequence
    document_id: str
    revision: Optional[str]
    deleted: bool = False

    @classmethod
    def from_json(cls, row: JsonType) -> "ChangeRecord":
        """
        Build a record from a decoded feed row.

        Raises:
            DecodeError: If the row lacks "seq" or "id"
        """
        if not isinstance(row, dict):
            raise DecodeError(f"Change row is not an object: {row!r}")
        try:
            sequence = row["seq"]
            doc_id = row["id"]
        except KeyError as e:
            raise DecodeError(f"Change row is missing {e}") from e
        if not isinstance(doc_id, str) or not isinstance(sequence, (int, str)):
            raise DecodeError(f"Change row has malformed fields: {row!r}")

        revision = None
        changes = row.get("changes")
        if isinstance(changes, list) and changes and isinstance(changes[0], dict):
            revision = changes[0].get("rev")
        if revision is None:
            revision = row.get("rev")
        return cls(sequence, doc_id, revision, bool(row.get("deleted", False)))


def sequence_advances(current: Optional[Sequence], candidate: Sequence) -> bool:
    """
    True if `candidate` should replace `current` as the last seen sequence.

    Integer sequences never move backwards. Opaque string sequences (CouchDB 2+)
    cannot be ordered locally, so the most recent one wins.
    """
    if current is None:
        return True
    if isinstance(current, int) and isinstance(candidate, int):
        return candidate > current
    return candidate != current


class ChangeSubscription:
    """
    Background reader for a database's continuous change feed.

    Example:
        >>> sub = ChangeSubscription(db.url, executor, since=42, on_change=print)
        >>> sub.start()
        >>> ...
        >>> sub.stop()
    """

    def __init__(
        self,
        database_url: str,
        executor: "RequestExecutor",
        since: Optional[Sequence],
        on_change: Callable[[ChangeRecord], Any],
        heartbeat: int = DEFAULT_FEED_HEARTBEAT,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
    ):
        """
        Args:
            database_url: URL of the database whose feed to follow
            executor: Executor used to open the feed
            since: Sequence to resume after (None starts from the beginning)
            on_change: Called on the feed thread with each decoded record
            heartbeat: Heartbeat interval requested from the server, in milliseconds
            backoff_factor: Reconnect delay is ``backoff_factor ** retry`` seconds
            max_backoff: Upper bound for one reconnect delay in seconds
        """
        self._database_url = database_url
        self._executor = executor
        self._since = since
        self._on_change = on_change
        self._heartbeat = heartbeat
        self._backoff_factor = backoff_factor
        self._max_backoff = max_backoff

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._state = ChangeTrackerState.DISABLED
        self._feed: Optional["Feed"] = None
        self._thread: Optional[threading.Thread] = None
        self._retry = 0

    @property
    def state(self) -> ChangeTrackerState:
        return self._state

    @property
    def since(self) -> Optional[Sequence]:
        """The sequence the next (re)connection resumes after."""
        return self._since

    @property
    def feed_url(self) -> str:
        params = {"feed": "continuous", "heartbeat": self._heartbeat, "since": self._since}
        return build_url(self._database_url, "_changes") + encode_query(params)

    def start(self) -> None:
        """Start following the feed. A subscription can only be started once."""
        with self._lock:
            if self._thread is not None:
                return
            self._state = ChangeTrackerState.CONNECTING
            self._thread = threading.Thread(
                target=self._run, name=f"couch-access-changes {self._database_url}", daemon=True
            )
        LOGGER.info("Tracking changes of %s since %s", self._database_url, self._since)
        self._thread.start()

    def stop(self) -> None:
        """Stop following the feed. Rows read after this call are discarded."""
        with self._lock:
            if self._stop.is_set():
                return
            self._stop.set()
            self._state = ChangeTrackerState.DISABLED
            feed, self._feed = self._feed, None
        LOGGER.info("Stopped tracking changes of %s", self._database_url)
        if feed is not None:
            feed.close()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the feed thread to exit."""
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _set_state(self, state: ChangeTrackerState) -> None:
        with self._lock:
            if self._stop.is_set():
                return
            self._state = state
        LOGGER.debug("Change feed of %s is %s", self._database_url, state.value)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                if not self._consume() and not self._backoff("feed closed by the server"):
                    break
            except TransportError as e:
                if not self._backoff(e):
                    break
            except StatusError as e:
                if e.status < 500:
                    if not self._stop.is_set():
                        LOGGER.error("Change feed of %s was rejected: %s", self._database_url, e)
                    self.stop()
                    break
                if not self._backoff(e):
                    break
            except Exception:
                LOGGER.exception("Change feed of %s failed", self._database_url)
                self.stop()
                break

    def _consume(self) -> bool:
        """Read one connection's worth of the feed. Returns True if any line arrived."""
        feed = self._executor.open_feed(self.feed_url)
        with self._lock:
            if self._stop.is_set():
                stopped = True
            else:
                stopped = False
                self._feed = feed
        if stopped:
            feed.close()
            return True

        received = False
        self._set_state(ChangeTrackerState.STREAMING)
        try:
            for line in feed.lines():
                if self._stop.is_set():
                    return True
                received = True
                self._retry = 0
                self._handle_line(line)
            return received
        finally:
            with self._lock:
                if self._feed is feed:
                    self._feed = None
            feed.close()

    def _backoff(self, reason: object) -> bool:
        """Sleep before reconnecting. Returns False if stopped meanwhile."""
        if self._stop.is_set():
            return False
        self._retry += 1
        delay = min(self._backoff_factor ** self._retry, self._max_backoff)
        self._set_state(ChangeTrackerState.RECONNECTING)
        LOGGER.warning(
            "Change feed of %s dropped (%s); reconnecting in %.1f seconds (retry #%s)",
            self._database_url,
            reason,
            delay,
            self._retry,
        )
        return not self._stop.wait(delay)

    def _handle_line(self, line: Union[bytes, str]) -> None:
        line = line.strip()
        if not line:
            return  # heartbeat

        try:
            row = decode_json(line)
            if isinstance(row, dict) and "last_seq" in row and "id" not in row:
                self._since = row["last_seq"]
                return
            record = ChangeRecord.from_json(row)
        except DecodeError as e:
            LOGGER.warning("Skipping malformed change row from %s: %s", self._database_url, e)
            return

        if self._stop.is_set():
            return
        try:
            self._on_change(record)
        except Exception:
            LOGGER.exception("Handling change %r failed", record)
        self._since = record.sequence
