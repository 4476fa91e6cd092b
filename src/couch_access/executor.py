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

"""Request executors.

The core never talks to the network directly. It hands each request to a
`RequestExecutor`, which runs it concurrently and resolves a future with a
`Response`, and asks the executor to open long-lived feeds for change tracking.
`HTTPRequestExecutor` is the default implementation on top of `requests`.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Iterator, Mapping, NamedTuple, Optional

import requests

from ._codec import decode_json
from ._utils import DEFAULT_MAX_WORKERS, DEFAULT_TIMEOUT
from .exceptions import ConfigurationError, DecodeError, TransportError, error_for_status

LOGGER = logging.getLogger(__name__)

JSON_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}


class Response(NamedTuple):
    """A completed HTTP exchange."""

    status: int
    headers: Mapping[str, str]
    body: bytes


class Feed:
    """A long-lived streaming response, read line by line."""

    def lines(self) -> Iterator[bytes]:
        """Yield raw lines as they arrive. Raises TransportError if the stream drops."""
        raise NotImplementedError

    def close(self) -> None:
        """Tear down the stream. May be called from another thread."""
        raise NotImplementedError


class RequestExecutor:
    """Runs HTTP requests on behalf of resources and operations."""

    def execute(
        self,
        url: str,
        method: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> "Future[Response]":
        """
        Start one request and return immediately.

        The returned future resolves to a `Response` for any HTTP status, or fails
        with `TransportError` if no response was received.
        """
        raise NotImplementedError

    def open_feed(self, url: str, headers: Optional[Mapping[str, str]] = None) -> Feed:
        """
        Open a streaming GET. Blocks until the response headers arrive.

        Raises:
            TransportError: If the connection cannot be established
            StatusError: If the server answers with a non-2xx status
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release any resources held by the executor."""


class _StreamingFeed(Feed):
    def __init__(self, response: requests.Response):
        self._response = response

    def lines(self) -> Iterator[bytes]:
        try:
            for line in self._response.iter_lines():
                yield line
        except (requests.exceptions.RequestException, OSError, ValueError) as e:
            raise TransportError(f"Feed interrupted: {e}") from e

    def close(self) -> None:
        self._response.close()


class HTTPRequestExecutor(RequestExecutor):
    """
    Request executor backed by a `requests.Session` and a thread pool.

    Example:
        >>> executor = HTTPRequestExecutor(timeout=10, max_workers=4)
        >>> response = executor.execute("http://127.0.0.1:5984/", "GET").result()
        >>> response.status
        200
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        max_workers: int = DEFAULT_MAX_WORKERS,
        feed_timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialise the executor.

        Args:
            timeout: Connect/read timeout for ordinary requests in seconds (default: 30)
            max_workers: Number of requests that may run at once (default: 8)
            feed_timeout: Read timeout for feeds; should exceed the heartbeat
                interval (default: twice `timeout`)
            session: Optional pre-configured session (auth, TLS, proxies)

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")

        self._timeout = timeout
        self._feed_timeout = feed_timeout if feed_timeout is not None else timeout * 2
        self._session = session if session is not None else requests.Session()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="couch-access")
        self._closed = False

    def execute(
        self,
        url: str,
        method: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> "Future[Response]":
        return self._pool.submit(self._send, url, method, headers, body)

    def _send(
        self,
        url: str,
        method: str,
        headers: Optional[Mapping[str, str]],
        body: Optional[bytes],
    ) -> Response:
        try:
            response = self._session.request(
                method,
                url,
                headers={**JSON_HEADERS, **(headers or {})},
                data=body,
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

        return Response(response.status_code, dict(response.headers), response.content)

    def open_feed(self, url: str, headers: Optional[Mapping[str, str]] = None) -> Feed:
        try:
            response = self._session.get(
                url,
                headers={**JSON_HEADERS, **(headers or {})},
                stream=True,
                timeout=(self._timeout, self._feed_timeout),
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Could not open feed {url}: {e}") from e

        if not 200 <= response.status_code < 300:
            try:
                body: Any = decode_json(response.content)
            except DecodeError:
                body = None
            finally:
                response.close()
            raise error_for_status(response.status_code, body)

        return _StreamingFeed(response)

    def close(self) -> None:
        """Shut down the thread pool and the HTTP session."""
        if self._closed:
            return
        self._closed = True
        self._pool.shutdown(wait=False)
        self._session.close()
