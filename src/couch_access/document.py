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

"""CouchDB documents."""

import logging
import threading
from typing import TYPE_CHECKING, Any, Dict, Optional

from ._codec import JsonType, encode_json, expect_object
from ._utils import DESIGN_PREFIX, build_url, escape_document_id
from .operation import Operation
from .resource import Resource

if TYPE_CHECKING:
    from .changes import ChangeRecord
    from .database import Database

LOGGER = logging.getLogger(__name__)


def _revision_of(body: JsonType) -> str:
    return expect_object(body, "write reply")["rev"]


class Document(Resource):
    """
    A document in a database, identified by its ID.

    Writes to one document are serialized: a write issued while another is still
    in flight is sent once the earlier one completes, carrying the revision that
    write produced. Each write returns immediately with its `Operation`.
    """

    def __init__(self, database: "Database", doc_id: Optional[str]):
        super().__init__(database, escape_document_id(doc_id) if doc_id else "")
        self._database = database
        self._document_id = doc_id
        self._lock = threading.Lock()
        self._last_write: Optional[Operation] = None
        self._properties: Optional[Dict[str, Any]] = None

    @property
    def database(self) -> "Database":
        return self._database

    @property
    def document_id(self) -> Optional[str]:
        """The document's ID, or None for an untitled document not yet saved."""
        return self._document_id

    @property
    def current_revision(self) -> Optional[str]:
        """The latest revision this client knows of, or None."""
        if self._document_id is None:
            return None
        return self._database.tracker.current_revision(self._document_id)

    @property
    def is_deleted(self) -> bool:
        if self._document_id is None:
            return False
        record = self._database.tracker.record(self._document_id)
        return record is not None and record.deleted

    @property
    def properties(self) -> Optional[Dict[str, Any]]:
        """The last known body, or None if never fetched or changed externally since."""
        return self._properties

    def get(self) -> Operation:
        """Fetch the current body. The operation's result is the body dictionary."""
        if self._document_id is None:
            raise ValueError("An untitled document has nothing to fetch")
        op = Operation(self, "GET", result=lambda body: expect_object(body, "document"))
        op.on_complete(self._fetched)
        return op.start()

    def _fetched(self, op: Operation) -> None:
        if op.error is not None or not isinstance(op.response_body, dict):
            return
        body = op.response_body
        self._properties = body
        revision = body.get("_rev")
        if revision:
            self._database.tracker.note_revision(
                self._document_id, revision, bool(body.get("_deleted", False))
            )

    def put_properties(self, properties: Dict[str, Any]) -> Operation:
        """
        Save a new body.

        If `properties` has no "_rev" the current known revision is used. The
        operation's result is the new revision ID; a stale revision fails with
        `RevisionConflict`.

        Raises:
            TypeError: If `properties` is not JSON-serialisable
        """
        encode_json(properties)
        return self._submit_write("PUT", dict(properties))

    def delete(self) -> Operation:
        """Delete the document at its current known revision."""
        if self._document_id is None:
            raise ValueError("An untitled document cannot be deleted")
        return self._submit_write("DELETE", None)

    def _submit_write(self, method: str, properties: Optional[Dict[str, Any]]) -> Operation:
        op = Operation(self, method, result=_revision_of)
        op.on_complete(lambda done: self._write_completed(done, properties))
        with self._lock:
            previous, self._last_write = self._last_write, op

        if previous is None:
            self._start_write(op, properties)
        else:
            previous.on_complete(lambda _previous: self._start_write(op, properties))
        return op

    def _start_write(self, op: Operation, properties: Optional[Dict[str, Any]]) -> None:
        doc_id = self._document_id
        if properties is not None and properties.get("_rev"):
            revision = properties["_rev"]
        else:
            revision = self.current_revision

        if op.method == "DELETE":
            op.params = {"rev": revision}
        else:
            body = dict(properties or {})
            if revision:
                body["_rev"] = revision
            if doc_id is None:
                op.target = self._database
                op.method = "POST"
            op.body = body

        self._database.tracker.begin_write(doc_id)
        op.start()

    def _write_completed(self, op: Operation, properties: Optional[Dict[str, Any]]) -> None:
        body = op.response_body if isinstance(op.response_body, dict) else {}
        revision = body.get("rev") if op.error is None else None

        if op.method == "POST":
            new_id = body.get("id")
            try:
                if op.error is None and new_id:
                    if revision:
                        self._database.tracker.note_revision(new_id, revision)
                    self._properties = {**(properties or {}), "_id": new_id, "_rev": revision}
                    self._assign_id(new_id)
            finally:
                self._database.tracker.end_write(None)
            return

        deleted = op.method == "DELETE"
        self._database.tracker.end_write(self._document_id, revision, deleted=deleted, error=op.error)
        if op.error is None:
            if deleted:
                self._properties = {"_id": self._document_id, "_rev": revision, "_deleted": True}
            else:
                self._properties = {**(properties or {}), "_id": self._document_id, "_rev": revision}

    def _assign_id(self, doc_id: str) -> None:
        with self._lock:
            self._document_id = doc_id
            self._relative_path = escape_document_id(doc_id)
            self._url = build_url(self._database.url, self._relative_path)
        LOGGER.debug("Untitled document saved as %r", doc_id)
        self._database._document_assigned_id(self)

    def _changed_externally(self, change: "ChangeRecord") -> None:
        if self._properties is not None and self._properties.get("_rev") != change.revision:
            self._properties = None


class DesignDocument(Document):
    """A design document ("_design/<name>"). Views are not interpreted here."""

    def __init__(self, database: "Database", name: str):
        super().__init__(database, DESIGN_PREFIX + name)
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def language(self) -> str:
        """The view language declared by the last known body (default "javascript")."""
        return (self._properties or {}).get("language", "javascript")
