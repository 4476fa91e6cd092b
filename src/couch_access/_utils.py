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

"""Shared utility functions for couch-access."""

import os
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote, urlencode, urlsplit

from .exceptions import ConfigurationError

DEFAULT_SERVER_URL = os.environ.get("COUCH_ACCESS_URL", "http://127.0.0.1:5984/")
DEFAULT_TIMEOUT = float(os.environ.get("COUCH_ACCESS_TIMEOUT", "30"))
DEFAULT_MAX_WORKERS = int(os.environ.get("COUCH_ACCESS_MAX_WORKERS", "8"))
DEFAULT_DOC_RETAIN_LIMIT = int(os.environ.get("COUCH_ACCESS_DOC_RETAIN_LIMIT", "50"))
DEFAULT_FEED_HEARTBEAT = int(os.environ.get("COUCH_ACCESS_FEED_HEARTBEAT", "30000"))
DEFAULT_BACKOFF_FACTOR = float(os.environ.get("COUCH_ACCESS_BACKOFF_FACTOR", "1.5"))
DEFAULT_MAX_BACKOFF = float(os.environ.get("COUCH_ACCESS_MAX_BACKOFF", "60"))
DEFAULT_STRICT_CACHE = os.environ.get("COUCH_ACCESS_STRICT_CACHE", "").lower() in ("1", "true", "yes")
DEFAULT_REVISION_RECORD_LIMIT = int(os.environ.get("COUCH_ACCESS_REVISION_RECORD_LIMIT", "10000"))

DESIGN_PREFIX = "_design/"


def build_url(base: str, relative_path: str) -> str:
    """
    Join a relative resource path onto a parent URL.

    Args:
        base: URL of the parent resource
        relative_path: Already-escaped path of the child relative to the parent

    Returns:
        str: The child's absolute URL (no trailing slash)
    """
    if not relative_path:
        return base
    return f"{base.rstrip('/')}/{relative_path}"


def escape_database_name(name: str) -> str:
    """Escape a database name for use as a path segment ("/" is legal in names)."""
    return quote(name, safe="")


def escape_document_id(doc_id: str) -> str:
    """
    Escape a document ID for use as a path segment.

    Design documents keep the slash after "_design" since CouchDB routes them
    by that literal prefix.
    """
    if doc_id.startswith(DESIGN_PREFIX):
        return DESIGN_PREFIX + quote(doc_id[len(DESIGN_PREFIX):], safe="")
    return quote(doc_id, safe="")


def encode_query(params: Optional[Mapping[str, Any]]) -> str:
    """
    Encode query parameters the way CouchDB expects them.

    Booleans are written as JSON literals and None values are dropped.

    Returns:
        str: The query string including the leading "?", or "" if there are none
    """
    if not params:
        return ""
    pairs: Dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        pairs[key] = str(value)
    if not pairs:
        return ""
    return "?" + urlencode(pairs)


def revision_generation(revision: Optional[str]) -> int:
    """
    Return the numeric generation of a revision ID such as "3-a1b2c3".

    Unparseable or missing revisions count as generation 0.
    """
    if not revision:
        return 0
    head, _, _ = str(revision).partition("-")
    try:
        return int(head)
    except ValueError:
        return 0


def validate_config(
    server_url: str,
    timeout: float,
    max_workers: int,
    doc_retain_limit: int,
    feed_heartbeat: int,
    backoff_factor: float,
    max_backoff: float,
) -> None:
    """
    Validate configuration parameters.

    Args:
        server_url: Base URL of the CouchDB server
        timeout: Request timeout in seconds
        max_workers: Number of concurrent request threads
        doc_retain_limit: Number of idle documents each database keeps strongly cached
        feed_heartbeat: Change-feed heartbeat interval in milliseconds
        backoff_factor: Base of the exponential reconnect backoff
        max_backoff: Upper bound for a single reconnect delay in seconds

    Raises:
        ConfigurationError: If any parameter is invalid
    """
    if not server_url:
        raise ConfigurationError("server_url cannot be empty")
    parts = urlsplit(server_url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigurationError("server_url must be an absolute http(s) URL")
    if timeout <= 0:
        raise ConfigurationError("timeout must be positive")
    if max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1")
    if doc_retain_limit < 0:
        raise ConfigurationError("doc_retain_limit cannot be negative")
    if feed_heartbeat < 1:
        raise ConfigurationError("feed_heartbeat must be at least 1")
    if backoff_factor < 1:
        raise ConfigurationError("backoff_factor must be at least 1")
    if max_backoff <= 0:
        raise ConfigurationError("max_backoff must be positive")
