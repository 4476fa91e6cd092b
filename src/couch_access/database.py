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

"""CouchDB databases: document identity, bulk writes and change tracking."""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import IntFlag
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Sequence
from urllib.parse import unquote, urlsplit, urlunsplit

from ._codec import JsonType, expect_object
from ._utils import DESIGN_PREFIX, escape_database_name
from .cache import ResourceCache
from .changes import ChangeRecord, ChangeSubscription, sequence_advances
from .document import DesignDocument, Document
from .exceptions import DecodeError, RevisionConflict, StatusError
from .operation import Operation
from .resource import Resource
from .tracker import RevisionTracker

if TYPE_CHECKING:
    from .changes import Sequence as ChangeSequence
    from .server import Server

LOGGER = logging.getLogger(__name__)

# HTTP status equivalents of per-document errors in a _bulk_docs reply
_BULK_ERROR_STATUS = {"conflict": 409, "forbidden": 403, "unauthorized": 401, "not_found": 404}


class ReplicationOptions(IntFlag):
    """Option flags for `Database.pull_from` / `Database.push_to`."""

    NONE = 0
    CREATE_TARGET = 1  # create the destination database if it doesn't exist
    CONTINUOUS = 2  # keep replicating until cancelled
    CANCEL = 4  # cancel a matching replication in progress


@dataclass(frozen=True)
class DatabaseChange:
    """Notification of an external change to one document."""

    document: Document
    document_id: str
    revision: Optional[str]
    deleted: bool
    sequence: "ChangeSequence"


@dataclass(frozen=True)
class BulkResult:
    """Outcome of one document in a `put_changes` batch."""

    document_id: Optional[str]
    revision: Optional[str]
    error: Optional[StatusError]
    document: Optional[Document]

    @property
    def ok(self) -> bool:
        return self.error is None


class Database(Resource):
    """
    A CouchDB database; the factory for its documents.

    Documents are identity-cached: `document_with_id` returns the same object for
    an ID as long as anyone holds it (and for a while after, up to the retain
    limit). Documents with writes in flight are never dropped from the cache.

    Example:
        >>> db = server.database_named("notes")
        >>> unsubscribe = db.subscribe(lambda change: print(change.document_id))
        >>> db.enable_change_tracking()
        >>> op = db.put_changes([{"_id": "a", "x": 1}])
        >>> [r.revision for r in op.result]
        ['1-967a00dff5e02add41819138abb3284d']
    """

    def __init__(self, server: "Server", name: str, retain_limit: Optional[int] = None):
        """
        Args:
            server: The owning server
            name: Database name
            retain_limit: Idle documents to keep cached (default: the server's setting)
        """
        super().__init__(server, escape_database_name(name))
        self._name = name
        limit = server.doc_retain_limit if retain_limit is None else retain_limit
        self._doc_cache = ResourceCache(limit, strict=server.strict_cache)
        self._tracker = RevisionTracker(self._doc_cache, on_idle=self._flush_changes)

        self._seq_lock = threading.Lock()
        self._last_sequence: Optional["ChangeSequence"] = None

        self._changes_lock = threading.Lock()
        self._subscription: Optional[ChangeSubscription] = None
        self._pending: Deque[ChangeRecord] = deque()
        self._dispatching = False

        self._subscribers_lock = threading.Lock()
        self._subscribers: List[Callable[[DatabaseChange], Any]] = []

    @classmethod
    def with_url(cls, url: str, **server_options: Any) -> "Database":
        """
        Create a database directly from its URL, with a private `Server` parent.

        Unlike `Server.database_named`, two calls with the same URL return two
        distinct objects (with two distinct servers).
        """
        from .server import Server

        parts = urlsplit(url.rstrip("/"))
        base_path, _, name = parts.path.rpartition("/")
        if not name:
            raise ValueError(f"No database name in {url!r}")
        server_url = urlunsplit((parts.scheme, parts.netloc, base_path or "/", "", ""))
        return Server(server_url, **server_options).database_named(unquote(name))

    @property
    def name(self) -> str:
        return self._name

    @property
    def server(self) -> "Server":
        return self.parent  # type: ignore[return-value]

    @property
    def tracker(self) -> RevisionTracker:
        return self._tracker

    @property
    def document_cache(self) -> ResourceCache:
        return self._doc_cache

    # DATABASE API

    def create(self) -> Operation:
        """Create the database on the server. Fails with 412 if it already exists."""
        return self.send_http("PUT")

    def delete(self) -> Operation:
        """Delete the database from the server."""
        return self.send_http("DELETE")

    def get_info(self) -> Operation:
        """Fetch the database info object (doc_count, update_seq, ...)."""
        return self.send_http("GET", result=lambda body: expect_object(body, "database info"))

    def get_document_count(self) -> int:
        """Return the current number of documents. Blocks."""
        info = self.get_info().raise_for_error().result
        return int(info["doc_count"])

    # DOCUMENTS

    def document_with_id(self, doc_id: str) -> Document:
        """
        Return the one `Document` object for `doc_id`.

        Makes no server calls; the document doesn't need to exist yet.
        """
        if not doc_id:
            raise ValueError("Document ID cannot be empty")
        if doc_id.startswith(DESIGN_PREFIX):
            return self.design_document_with_name(doc_id[len(DESIGN_PREFIX):])
        return self._doc_cache.get_or_create(doc_id, lambda: Document(self, doc_id))

    def design_document_with_name(self, name: str) -> DesignDocument:
        """Return the one `DesignDocument` object named `name` (ID "_design/<name>")."""
        if not name:
            raise ValueError("Design document name cannot be empty")
        return self._doc_cache.get_or_create(DESIGN_PREFIX + name, lambda: DesignDocument(self, name))

    def untitled_document(self) -> Document:
        """
        Return a new document with no ID yet.

        Its first write is a POST and the server assigns the ID; from then on it is
        cached like any other document.
        """
        return Document(self, None)

    def _document_assigned_id(self, document: Document) -> None:
        self._doc_cache.register(document.document_id, document)

    def clear_document_cache(self) -> None:
        """Forget cached documents. Later lookups construct new objects."""
        self._doc_cache.clear()

    # BULK WRITES

    def put_changes(
        self,
        properties: Sequence[Dict[str, Any]],
        revisions: Optional[Sequence[Optional[str]]] = None,
    ) -> Operation:
        """
        Write several documents in one HTTP call.

        A dictionary with an "_id" updates or creates that document; without one the
        server assigns an ID. Updates must carry the current "_rev" (or pass it in
        `revisions`, parallel to `properties`).

        Each document succeeds or fails on its own. After completion the operation's
        `result` is a list of `BulkResult`, one per input, in input order.
        A reply that does not match the input fails the operation with `DecodeError`.

        Raises:
            ValueError: If `revisions` does not match `properties` in length
        """
        if revisions is not None and len(revisions) != len(properties):
            raise ValueError("revisions must have one entry per document")

        docs: List[Dict[str, Any]] = []
        for index, props in enumerate(properties):
            doc = dict(props)
            if revisions is not None and revisions[index]:
                doc["_rev"] = revisions[index]
            docs.append(doc)

        doc_ids: List[Optional[str]] = [doc.get("_id") for doc in docs]
        deleted = [bool(doc.get("_deleted", False)) for doc in docs]
        outcome: Dict[str, List[BulkResult]] = {}

        def check(body: JsonType) -> None:
            if not isinstance(body, list) or len(body) != len(doc_ids):
                got = len(body) if isinstance(body, list) else type(body).__name__
                raise DecodeError(f"Expected {len(doc_ids)} bulk results but got {got}")

        def completed(op: Operation) -> None:
            outcome["results"] = self._finish_bulk(op, doc_ids, deleted)

        op = Operation(
            self.child("_bulk_docs"),
            "POST",
            body={"docs": docs},
            result=lambda _body: outcome["results"],
            validate=check,
        )
        op.on_complete(completed)
        # Documents without an _id are unnamed writes until the reply names them
        for doc_id in doc_ids:
            self._tracker.begin_write(doc_id)
        return op.start()

    def _finish_bulk(
        self,
        op: Operation,
        doc_ids: List[Optional[str]],
        deleted: List[bool],
    ) -> List[BulkResult]:
        unnamed = sum(1 for doc_id in doc_ids if not doc_id)
        try:
            if op.error is not None:
                for doc_id in doc_ids:
                    if doc_id:
                        self._tracker.end_write(doc_id, error=op.error)
                return []

            results = []
            for doc_id, was_deleted, item in zip(doc_ids, deleted, op.response_body):
                item_id = doc_id
                revision = None
                error: Optional[StatusError] = None
                if not isinstance(item, dict):
                    error = StatusError(500, item, f"Malformed bulk result: {item!r}")
                else:
                    item_id = item.get("id", doc_id)
                    if "error" in item:
                        status = _BULK_ERROR_STATUS.get(item["error"], 500)
                        error = RevisionConflict(status, item) if status == 409 else StatusError(status, item)
                    else:
                        revision = item.get("rev")

                if doc_id:
                    self._tracker.end_write(doc_id, revision, deleted=was_deleted, error=error)
                elif item_id and revision:
                    self._tracker.note_revision(item_id, revision, was_deleted)

                document = self.document_with_id(item_id) if item_id else None
                results.append(BulkResult(item_id, revision, error, document))
            return results
        finally:
            for _ in range(unnamed):
                self._tracker.end_write(None)

    # REPLICATION

    def pull_from(self, source_url: str, options: ReplicationOptions = ReplicationOptions.NONE) -> Operation:
        """Replicate from the database at `source_url` into this one."""
        return self.server.replicate(source_url, self._name, options)

    def push_to(self, target_url: str, options: ReplicationOptions = ReplicationOptions.NONE) -> Operation:
        """Replicate from this database to the database at `target_url`."""
        return self.server.replicate(self._name, target_url, options)

    # CHANGE TRACKING

    @property
    def last_sequence_number(self) -> "ChangeSequence":
        """
        The last change sequence received from the database.

        If not known yet, the current value is fetched with a blocking request.
        Save it on exit and restore it before enabling tracking to be notified of
        everything that changed in between.
        """
        with self._seq_lock:
            if self._last_sequence is not None:
                return self._last_sequence

        info = self.get_info().raise_for_error().result
        try:
            sequence = info["update_seq"]
        except KeyError as e:
            raise DecodeError(f"Database info for {self._name!r} has no update_seq") from e

        with self._seq_lock:
            if self._last_sequence is None:
                self._last_sequence = sequence
            return self._last_sequence

    @last_sequence_number.setter
    def last_sequence_number(self, sequence: "ChangeSequence") -> None:
        with self._seq_lock:
            self._last_sequence = sequence

    @property
    def tracks_changes(self) -> bool:
        """Whether change tracking is on. Only external changes are notified."""
        subscription = self._subscription
        return subscription is not None and not subscription.stopped

    @tracks_changes.setter
    def tracks_changes(self, enabled: bool) -> None:
        if enabled:
            self.enable_change_tracking()
        else:
            self.disable_change_tracking()

    def enable_change_tracking(self) -> None:
        """
        Start following the change feed.

        Blocks the calling thread to learn `last_sequence_number` if it isn't known,
        so enabling does not replay the whole history.
        """
        if self.tracks_changes:
            return
        since = self.last_sequence_number

        def on_change(record: ChangeRecord) -> None:
            self._receive_change(record, subscription)

        server = self.server
        subscription = ChangeSubscription(
            self.url,
            self.executor,
            since,
            on_change,
            heartbeat=server.feed_heartbeat,
            backoff_factor=server.backoff_factor,
            max_backoff=server.max_backoff,
        )
        with self._changes_lock:
            if self._subscription is not None and not self._subscription.stopped:
                return
            self._subscription = subscription
        subscription.start()

    def disable_change_tracking(self) -> None:
        """Stop following the change feed and drop undelivered changes."""
        with self._changes_lock:
            subscription, self._subscription = self._subscription, None
            self._pending.clear()
        if subscription is not None:
            subscription.stop()

    def _receive_change(self, record: ChangeRecord, subscription: ChangeSubscription) -> None:
        with self._changes_lock:
            if subscription is not self._subscription or subscription.stopped:
                LOGGER.debug("Discarding change %r received after tracking stopped", record)
                return
            self._pending.append(record)
        self._flush_changes()

    def _flush_changes(self) -> None:
        # Changes wait while a batch is being dispatched or any document write is
        # in flight, so a write's own change is suppressed by its acknowledged rev.
        while True:
            with self._changes_lock:
                if self._dispatching or not self._pending or self._tracker.is_busy():
                    return
                self._dispatching = True
                batch = list(self._pending)
                self._pending.clear()
                subscription = self._subscription
            try:
                for record in batch:
                    self._process_change(record, subscription)
            finally:
                with self._changes_lock:
                    self._dispatching = False

    def _process_change(self, record: ChangeRecord, subscription: Optional[ChangeSubscription]) -> None:
        if subscription is None or subscription is not self._subscription or subscription.stopped:
            return

        with self._seq_lock:
            last = self._last_sequence
        if isinstance(last, int) and isinstance(record.sequence, int) and record.sequence <= last:
            LOGGER.debug("Skipping already processed change %r", record)
            return

        if self._tracker.accept_change(record):
            document = self.document_with_id(record.document_id)
            document._changed_externally(record)
            self._notify(
                DatabaseChange(
                    document,
                    record.document_id,
                    record.revision,
                    record.deleted,
                    record.sequence,
                )
            )
        else:
            LOGGER.debug("Suppressing known change %s@%s", record.document_id, record.revision)

        with self._seq_lock:
            if sequence_advances(self._last_sequence, record.sequence):
                self._last_sequence = record.sequence

    # NOTIFICATIONS

    def subscribe(self, callback: Callable[[DatabaseChange], Any]) -> Callable[[], None]:
        """
        Call `callback` with a `DatabaseChange` for every external change.

        Callbacks run in feed order, on the change-feed thread or on the thread
        that completed the write that was holding changes back.

        Returns:
            A function that unsubscribes the callback
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Callable[[DatabaseChange], Any]) -> None:
        with self._subscribers_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def _notify(self, change: DatabaseChange) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(change)
            except Exception:
                LOGGER.exception("Change subscriber %r failed for %s", callback, change.document_id)
