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

"""Exception classes for couch-access."""

from typing import Any, Optional

WRITE_METHODS = frozenset({"PUT", "POST", "DELETE", "COPY"})


class CouchAccessError(Exception):
    """Base exception for all couch-access errors."""

    pass


class ConfigurationError(CouchAccessError):
    """Raised when configuration is invalid."""

    pass


class TransportError(CouchAccessError):
    """Raised when a request fails at the connection level."""

    pass


class StatusError(CouchAccessError):
    """
    Raised when the server answers with a non-2xx HTTP status.

    Attributes:
        status: The numeric HTTP status code
        body: The decoded error body, if the server sent one
    """

    def __init__(self, status: int, body: Any = None, message: Optional[str] = None):
        self.status = status
        self.body = body
        if message is None:
            message = f"HTTP {status}"
            if self.error:
                message = f"{message} {self.error}"
            if self.reason:
                message = f"{message}: {self.reason}"
        super().__init__(message)

    @property
    def error(self) -> Optional[str]:
        """The short error name reported by the server (e.g. "not_found")."""
        if isinstance(self.body, dict):
            return self.body.get("error")
        return None

    @property
    def reason(self) -> Optional[str]:
        """The human readable reason reported by the server."""
        if isinstance(self.body, dict):
            return self.body.get("reason")
        return None


class RevisionConflict(StatusError):
    """Raised when a document write names a stale revision (HTTP 409)."""

    pass


class DecodeError(CouchAccessError):
    """Raised when a response body is not valid or expected JSON."""

    pass


class CacheConsistencyViolation(CouchAccessError):
    """Raised when two distinct objects are registered for one cache path."""

    pass


def error_for_status(status: int, body: Any = None, method: str = "GET") -> StatusError:
    """
    Build the exception matching a non-2xx response.

    Args:
        status: The HTTP status code
        body: The decoded response body, or None
        method: The HTTP method of the request

    Returns:
        StatusError: A RevisionConflict for a 409 answer to a write, else a StatusError
    """
    if status == 409 and method.upper() in WRITE_METHODS:
        return RevisionConflict(status, body)
    return StatusError(status, body)
