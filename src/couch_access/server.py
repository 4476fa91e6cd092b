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

"""The CouchDB server: root of the resource tree."""

import logging
from typing import Any, Dict, List, Optional

from ._codec import expect_object
from ._utils import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_DOC_RETAIN_LIMIT,
    DEFAULT_FEED_HEARTBEAT,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_WORKERS,
    DEFAULT_SERVER_URL,
    DEFAULT_STRICT_CACHE,
    DEFAULT_TIMEOUT,
    validate_config,
)
from .cache import ResourceCache
from .database import Database, ReplicationOptions
from .executor import HTTPRequestExecutor, RequestExecutor
from .operation import Operation
from .resource import Resource

LOGGER = logging.getLogger(__name__)


class Server(Resource):
    """
    A CouchDB server and the factory for its databases.

    Databases are identity-cached: asking twice for the same name returns the same
    `Database` object for as long as the server lives.

    Example:
        >>> with Server("http://127.0.0.1:5984/") as server:
        ...     db = server.database_named("notes")
        ...     assert db is server.database_named("notes")
        ...     print(server.get_version())
    """

    def __init__(
        self,
        url: str = DEFAULT_SERVER_URL,
        executor: Optional[RequestExecutor] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_workers: int = DEFAULT_MAX_WORKERS,
        doc_retain_limit: int = DEFAULT_DOC_RETAIN_LIMIT,
        feed_heartbeat: int = DEFAULT_FEED_HEARTBEAT,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        strict_cache: bool = DEFAULT_STRICT_CACHE,
    ):
        """
        Initialise the server handle. No request is made.

        Args:
            url: Base URL of the server (default: http://127.0.0.1:5984/)
            executor: Request executor to use; by default an `HTTPRequestExecutor`
                owned (and closed) by this server
            timeout: Request timeout in seconds for the default executor (default: 30)
            max_workers: Concurrent requests for the default executor (default: 8)
            doc_retain_limit: Idle documents each database keeps cached (default: 50)
            feed_heartbeat: Change-feed heartbeat in milliseconds (default: 30000)
            backoff_factor: Base of the change-feed reconnect backoff (default: 1.5)
            max_backoff: Longest change-feed reconnect delay in seconds (default: 60)
            strict_cache: Raise on cache consistency violations instead of logging

        Raises:
            ConfigurationError: If configuration is invalid
        """
        validate_config(
            url,
            timeout,
            max_workers,
            doc_retain_limit,
            feed_heartbeat,
            backoff_factor,
            max_backoff,
        )
        super().__init__(None, "", url=url.rstrip("/"))

        self._owns_executor = executor is None
        self._executor = executor if executor is not None else HTTPRequestExecutor(timeout, max_workers)
        self.doc_retain_limit = doc_retain_limit
        self.feed_heartbeat = feed_heartbeat
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.strict_cache = strict_cache

        # Databases are few and long-lived: retain all of them
        self._db_cache = ResourceCache(retain_limit=0, strict=strict_cache)

    @property
    def executor(self) -> RequestExecutor:
        return self._executor

    def database_named(self, name: str) -> Database:
        """Return the one `Database` object for `name`. Makes no server calls."""
        if not name:
            raise ValueError("Database name cannot be empty")
        return self._db_cache.get_or_create(name, lambda: Database(self, name))

    def get_version(self) -> str:
        """
        Return the server's version string. Blocks.

        Raises:
            CouchAccessError: If the request fails
        """
        op = self.send_http("GET", result=lambda body: str(expect_object(body)["version"]))
        return op.raise_for_error().result

    def generate_uuids(self, count: int) -> List[str]:
        """
        Ask the server for `count` fresh UUIDs. Blocks.

        Args:
            count: Number of UUIDs; 0 returns an empty list without a request

        Raises:
            CouchAccessError: If the request fails
        """
        if count < 0:
            raise ValueError("count cannot be negative")
        if count == 0:
            return []
        op = self.child("_uuids").send_http(
            "GET",
            {"count": count},
            result=lambda body: list(expect_object(body)["uuids"]),
        )
        return op.raise_for_error().result

    def get_databases(self) -> List[Database]:
        """Return a cached `Database` for every database on the server. Blocks."""
        op = self.child("_all_dbs").send_http("GET")
        names = op.raise_for_error().result
        if not isinstance(names, list):
            return []
        return [self.database_named(name) for name in names if isinstance(name, str)]

    def replicate(
        self,
        source: str,
        target: str,
        options: ReplicationOptions = ReplicationOptions.NONE,
    ) -> Operation:
        """
        Trigger a replication from `source` to `target` (names or URLs).

        The operation completes when the replication finishes (or, when continuous,
        when it has been set up); its body describes what happened.
        """
        body: Dict[str, Any] = {"source": source, "target": target}
        if options & ReplicationOptions.CREATE_TARGET:
            body["create_target"] = True
        if options & ReplicationOptions.CONTINUOUS:
            body["continuous"] = True
        if options & ReplicationOptions.CANCEL:
            body["cancel"] = True
        LOGGER.info("Replicating %s -> %s (%s)", source, target, options)
        return self.child("_replicate").send_http("POST", body=body)

    def close(self) -> None:
        """Release the executor if this server created it."""
        if getattr(self, "_owns_executor", False):
            self._executor.close()

    def __enter__(self) -> "Server":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
