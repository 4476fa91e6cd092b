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

"""Per-database document revision tracking."""

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Optional

from ._utils import DEFAULT_REVISION_RECORD_LIMIT, revision_generation

if TYPE_CHECKING:
    from .cache import ResourceCache
    from .changes import ChangeRecord

LOGGER = logging.getLogger(__name__)


@dataclass
class DocumentRevision:
    """What this client knows about one document."""

    document_id: str
    revision: Optional[str] = None
    deleted: bool = False
    busy: int = 0


class RevisionTracker:
    """
    Records the current revision and in-flight write count of each known document.

    Every check-and-update runs under one lock, so revisions only ever move forward
    and busy counts stay balanced no matter which threads complete writes. While a
    document is busy its entry in the document cache is pinned.

    Writes whose document ID is not known yet (untitled documents, bulk documents
    without "_id") are counted as busy for the database as a whole.

    Once more than `record_limit` documents are tracked, records of documents that
    are neither busy nor in the cache are dropped.
    """

    def __init__(
        self,
        cache: Optional["ResourceCache"] = None,
        on_idle: Optional[Callable[[], None]] = None,
        record_limit: int = DEFAULT_REVISION_RECORD_LIMIT,
    ):
        """
        Args:
            cache: Document cache whose entries are pinned while busy
            on_idle: Called (outside the lock) whenever the last in-flight write ends
            record_limit: Number of records kept before idle, uncached ones are pruned
        """
        self._cache = cache
        self._on_idle = on_idle
        self._record_limit = record_limit
        self._prune_at = record_limit
        self._lock = threading.RLock()
        self._records: Dict[str, DocumentRevision] = {}
        self._busy_total = 0
        self._unnamed = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _record_for(self, doc_id: str) -> DocumentRevision:
        record = self._records.get(doc_id)
        if record is None:
            record = self._records[doc_id] = DocumentRevision(doc_id)
            if len(self._records) > self._prune_at:
                self._prune(keep=doc_id)
        return record

    def _prune(self, keep: str) -> None:
        cache = self._cache
        stale = [
            doc_id
            for doc_id, record in self._records.items()
            if doc_id != keep
            and record.busy == 0
            and (cache is None or cache.get(doc_id) is None)
        ]
        for doc_id in stale:
            del self._records[doc_id]
        self._prune_at = max(self._record_limit, 2 * len(self._records))
        LOGGER.debug("Pruned %s revision records, %s left", len(stale), len(self._records))

    def record(self, doc_id: str) -> Optional[DocumentRevision]:
        """Return a snapshot of the record for `doc_id`, or None if unknown."""
        with self._lock:
            record = self._records.get(doc_id)
            return dataclasses.replace(record) if record is not None else None

    def current_revision(self, doc_id: str) -> Optional[str]:
        with self._lock:
            record = self._records.get(doc_id)
            return record.revision if record is not None else None

    def is_busy(self, doc_id: Optional[str] = None) -> bool:
        """True if `doc_id` (or, without an argument, any document) has a write in flight."""
        with self._lock:
            if doc_id is None:
                return self._busy_total > 0
            record = self._records.get(doc_id)
            return record is not None and record.busy > 0

    @property
    def busy_count(self) -> int:
        with self._lock:
            return self._busy_total

    def begin_write(self, doc_id: Optional[str]) -> None:
        """Mark a write to `doc_id` as in flight. None stands for a not-yet-named document."""
        with self._lock:
            self._busy_total += 1
            if not doc_id:
                self._unnamed += 1
                return
            record = self._record_for(doc_id)
            record.busy += 1
            if record.busy == 1 and self._cache is not None:
                self._cache.pin(doc_id)

    def end_write(
        self,
        doc_id: Optional[str],
        revision: Optional[str] = None,
        deleted: bool = False,
        error: Optional[Exception] = None,
    ) -> bool:
        """
        Mark a write to `doc_id` as finished.

        Args:
            doc_id: The document written, or None for a write begun without an ID
            revision: The revision the server acknowledged, on success
            deleted: Whether the write deleted the document
            error: The failure, if the write failed (e.g. RevisionConflict)

        Returns:
            bool: True if the stored revision advanced
        """
        advanced = False
        with self._lock:
            if not doc_id:
                if self._unnamed > 0:
                    self._unnamed -= 1
                    self._busy_total -= 1
                else:
                    LOGGER.warning("end_write(None) without a matching begin_write")
            else:
                record = self._record_for(doc_id)
                if record.busy > 0:
                    record.busy -= 1
                    self._busy_total -= 1
                    if record.busy == 0 and self._cache is not None:
                        self._cache.unpin(doc_id)
                else:
                    LOGGER.warning("end_write(%r) without a matching begin_write", doc_id)

                if error is None and revision is not None:
                    advanced = self._advance(record, revision, deleted)
            idle = self._busy_total == 0

        if idle and self._on_idle is not None:
            self._on_idle()
        return advanced

    def note_revision(self, doc_id: str, revision: str, deleted: bool = False) -> bool:
        """Record a revision learned from a read. Returns True if it advanced."""
        with self._lock:
            return self._advance(self._record_for(doc_id), revision, deleted)

    def _advance(self, record: DocumentRevision, revision: str, deleted: bool) -> bool:
        if record.revision == revision:
            return False
        if record.revision is not None and revision_generation(revision) < revision_generation(
            record.revision
        ):
            LOGGER.debug(
                "Not regressing %r from %s to %s", record.document_id, record.revision, revision
            )
            return False
        record.revision = revision
        record.deleted = deleted
        return True

    def should_suppress(self, doc_id: str, revision: Optional[str]) -> bool:
        """
        Decide whether a change to `doc_id` at `revision` is already known.

        A change is suppressed when the tracked revision equals it (typically a
        write this client made and already saw acknowledged) or is newer (a stale
        or redelivered feed row).
        """
        with self._lock:
            record = self._records.get(doc_id)
            if record is None or record.revision is None:
                return False
            if record.revision == revision:
                return True
            return revision_generation(revision) < revision_generation(record.revision)

    def accept_change(self, change: "ChangeRecord") -> bool:
        """
        Atomically suppress `change` or record its revision.

        Returns:
            bool: True if the change is new and should be notified
        """
        with self._lock:
            if self.should_suppress(change.document_id, change.revision):
                return False
            if change.revision is not None:
                self._advance(self._record_for(change.document_id), change.revision, change.deleted)
            return True
