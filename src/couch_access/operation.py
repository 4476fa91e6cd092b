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

"""Asynchronous operations.

An `Operation` wraps exactly one request. It is started without blocking, completes
exactly once, and afterwards can be read any number of times. Callers choose how
to consume it:

- ``op.wait()`` blocks the calling thread and returns ``(error, body)``;
- ``op.on_complete(callback)`` runs a callback once the result is settled;
- ``await op`` suspends an asyncio task until completion.

All three read the same write-once completion cell, so the request is never
issued twice.
"""

import asyncio
import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple

from ._codec import JsonType, decode_json, encode_json
from ._utils import encode_query
from .exceptions import CouchAccessError, DecodeError, TransportError, error_for_status

if TYPE_CHECKING:
    from .executor import Response
    from .resource import Resource

LOGGER = logging.getLogger(__name__)

_NOT_COMPUTED = object()


class OperationState(Enum):
    """Completion state of an operation."""

    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


class Operation:
    """
    One outstanding or completed request against a resource.

    Example:
        >>> op = database.document_with_id("a").get()
        >>> error, body = op.wait()
        >>> if error is None:
        ...     print(body["_rev"])
    """

    def __init__(
        self,
        target: "Resource",
        method: str,
        params: Optional[Mapping[str, Any]] = None,
        body: JsonType = None,
        result: Optional[Callable[[JsonType], Any]] = None,
        validate: Optional[Callable[[JsonType], None]] = None,
    ):
        """
        Prepare an operation. Nothing is sent until `start()` is called.

        Args:
            target: The resource the request is addressed to
            method: HTTP method
            params: Query parameters
            body: JSON body to send, or None
            result: Extractor turning the decoded response body into `result`
            validate: Called with the decoded body of a 2xx response before the
                operation completes; a DecodeError it raises becomes the
                operation's error
        """
        self.target = target
        self.method = method.upper()
        self.params: Dict[str, Any] = dict(params) if params else {}
        self.body = body
        self._extractor = result
        self._validator = validate

        self._lock = threading.Lock()
        self._result_lock = threading.RLock()
        self._done = threading.Event()
        self._started = False
        self._state = OperationState.PENDING
        self._callbacks: List[Callable[["Operation"], Any]] = []

        self._error: Optional[CouchAccessError] = None
        self._status: Optional[int] = None
        self._headers: Mapping[str, str] = {}
        self._raw_body: Optional[bytes] = None
        self._decoded: JsonType = None
        self._result: Any = _NOT_COMPUTED

    def __repr__(self) -> str:
        return f"<Operation {self.method} {self.url} {self._state.value}>"

    @property
    def url(self) -> str:
        """Absolute URL of the request, including the query string."""
        return self.target.url + encode_query(self.params)

    @property
    def state(self) -> OperationState:
        return self._state

    @property
    def is_complete(self) -> bool:
        """True once the operation has settled (successfully or not)."""
        return self._state is not OperationState.PENDING

    @property
    def started(self) -> bool:
        return self._started

    @property
    def error(self) -> Optional[CouchAccessError]:
        return self._error

    @property
    def status(self) -> Optional[int]:
        return self._status

    @property
    def headers(self) -> Mapping[str, str]:
        return self._headers

    @property
    def raw_body(self) -> Optional[bytes]:
        return self._raw_body

    @property
    def response_body(self) -> JsonType:
        """The decoded response body (None until complete, or if it could not be decoded)."""
        return self._decoded

    def start(self) -> "Operation":
        """
        Hand the request to the executor and return immediately.

        Starting an operation twice has no effect.

        Raises:
            TypeError: If the body is not JSON-serialisable
        """
        with self._lock:
            if self._started:
                return self
            self._started = True

        payload = encode_json(self.body) if self.body is not None else None
        url = self.url
        LOGGER.debug("%s %s", self.method, url)
        try:
            future = self.target.executor.execute(url, self.method, None, payload)
        except TransportError as e:
            self._settle(e)
            return self

        future.add_done_callback(self._response_received)
        return self

    def _response_received(self, future: Any) -> None:
        try:
            response: "Response" = future.result()
        except TransportError as e:
            self._settle(e)
            return
        except Exception as e:
            error = TransportError(f"{self.method} {self.url} failed: {e}")
            error.__cause__ = e
            self._settle(error)
            return

        decode_error: Optional[DecodeError] = None
        try:
            decoded = decode_json(response.body)
        except DecodeError as e:
            decoded = None
            decode_error = e

        error: Optional[CouchAccessError] = None
        if not 200 <= response.status < 300:
            error = error_for_status(response.status, decoded, self.method)
        elif decode_error is not None:
            error = decode_error
        elif self._validator is not None:
            try:
                self._validator(decoded)
            except DecodeError as e:
                error = e

        self._settle(error, response.status, response.headers, response.body, decoded)

    def _settle(
        self,
        error: Optional[CouchAccessError],
        status: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        raw_body: Optional[bytes] = None,
        decoded: JsonType = None,
    ) -> None:
        with self._lock:
            if self._state is not OperationState.PENDING:
                LOGGER.warning("Ignoring second completion of %r", self)
                return
            self._error = error
            self._status = status
            self._headers = headers or {}
            self._raw_body = raw_body
            self._decoded = decoded
            self._state = OperationState.FAILED if error is not None else OperationState.COMPLETE
            callbacks, self._callbacks = self._callbacks, []

        if error is not None:
            LOGGER.warning("%s %s failed: %s", self.method, self.target.url, error)
        else:
            LOGGER.debug("%s %s -> %s", self.method, self.target.url, status)

        for callback in callbacks:
            self._invoke(callback)
        self._done.set()

    def _invoke(self, callback: Callable[["Operation"], Any]) -> None:
        try:
            callback(self)
        except Exception:
            LOGGER.exception("Completion callback %r for %r failed", callback, self)

    def on_complete(self, callback: Callable[["Operation"], Any]) -> "Operation":
        """
        Register a callback to run once with this operation when it completes.

        If the operation is already complete the callback runs immediately, on the
        calling thread. Callbacks receive the same error as `wait()` would return.
        """
        with self._lock:
            if self._state is OperationState.PENDING:
                self._callbacks.append(callback)
                return self
        self._invoke(callback)
        return self

    def wait(self) -> Tuple[Optional[CouchAccessError], JsonType]:
        """
        Block until the operation completes.

        Returns:
            tuple: ``(error, body)``; error is None on success. Calling this again
            returns the same pair without re-issuing the request.
        """
        self._done.wait()
        return self._error, self._decoded

    async def wait_async(self) -> Tuple[Optional[CouchAccessError], JsonType]:
        """Asyncio counterpart of `wait()`."""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()

        def _wake(_op: "Operation") -> None:
            loop.call_soon_threadsafe(_resolve, waiter)

        self.on_complete(_wake)
        await waiter
        return self._error, self._decoded

    def __await__(self):
        return self.wait_async().__await__()

    def raise_for_error(self) -> "Operation":
        """Wait for completion and raise the operation's error, if any."""
        error, _ = self.wait()
        if error is not None:
            raise error
        return self

    @property
    def result(self) -> Any:
        """
        The typed result extracted from the response body.

        Blocks until completion. Returns None if the operation failed. The value is
        computed on first access and cached.

        Raises:
            DecodeError: If the body does not have the shape the extractor expects
        """
        error, body = self.wait()
        if error is not None:
            return None
        with self._result_lock:
            if self._result is _NOT_COMPUTED:
                if self._extractor is None:
                    self._result = body
                else:
                    try:
                        self._result = self._extractor(body)
                    except (KeyError, IndexError, TypeError, ValueError) as e:
                        raise DecodeError(f"Unexpected response from {self.target.url}: {e}") from e
            return self._result


def _resolve(waiter: "asyncio.Future[None]") -> None:
    if not waiter.done():
        waiter.set_result(None)
