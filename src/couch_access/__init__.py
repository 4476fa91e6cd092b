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

"""
couch-access: identity-preserving client objects for CouchDB.

This package gives every remote server, database and document exactly one live
Python object, tracks document revisions for optimistic concurrency, and turns a
database's change feed into ordered local notifications that skip the client's
own writes.

Classes:
    Server: Root resource; factory for databases
    Database: Factory for documents; bulk writes; change tracking
    Document: Fetch, save and delete one document
    Operation: One request; blocking, callback and asyncio access
    ResourceCache: Identity map with bounded retention
    RevisionTracker: Per-database revision and busy state
    ChangeSubscription: Background change-feed reader
    HTTPRequestExecutor: Default requests-based executor

Exceptions:
    CouchAccessError: Base exception
    ConfigurationError: Invalid configuration
    TransportError: Connection-level failure
    StatusError: Non-2xx HTTP response
    RevisionConflict: Stale revision on a document write (HTTP 409)
    DecodeError: Unexpected or invalid JSON
    CacheConsistencyViolation: Identity map invariant failure
"""

from .cache import ResourceCache
from .changes import ChangeRecord, ChangeSubscription, ChangeTrackerState
from .database import BulkResult, Database, DatabaseChange, ReplicationOptions
from .document import DesignDocument, Document
from .exceptions import (
    CacheConsistencyViolation,
    ConfigurationError,
    CouchAccessError,
    DecodeError,
    RevisionConflict,
    StatusError,
    TransportError,
)
from .executor import Feed, HTTPRequestExecutor, RequestExecutor, Response
from .operation import Operation, OperationState
from .server import Server
from .tracker import DocumentRevision, RevisionTracker

__version__ = "0.1.0"

__all__ = [
    "Server",
    "Database",
    "Document",
    "DesignDocument",
    "DatabaseChange",
    "BulkResult",
    "ReplicationOptions",
    "Operation",
    "OperationState",
    "ResourceCache",
    "RevisionTracker",
    "DocumentRevision",
    "ChangeRecord",
    "ChangeSubscription",
    "ChangeTrackerState",
    "RequestExecutor",
    "HTTPRequestExecutor",
    "Response",
    "Feed",
    "CouchAccessError",
    "ConfigurationError",
    "TransportError",
    "StatusError",
    "RevisionConflict",
    "DecodeError",
    "CacheConsistencyViolation",
]
