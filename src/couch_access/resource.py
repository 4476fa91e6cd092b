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

"""Base class for addressable remote resources."""

from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

from ._codec import JsonType
from ._utils import build_url
from .operation import Operation

if TYPE_CHECKING:
    from .executor import RequestExecutor


class Resource:
    """
    A remote entity addressed by a path relative to its parent.

    The root of every tree is a `Server`, which owns the request executor; all
    descendants borrow it.
    """

    def __init__(self, parent: Optional["Resource"], relative_path: str, url: Optional[str] = None):
        if url is None:
            if parent is None:
                raise ValueError("A resource without a parent needs an explicit url")
            url = build_url(parent.url, relative_path)
        self._parent = parent
        self._relative_path = relative_path
        self._url = url

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._url}>"

    @property
    def parent(self) -> Optional["Resource"]:
        return self._parent

    @property
    def relative_path(self) -> str:
        return self._relative_path

    @property
    def url(self) -> str:
        return self._url

    @property
    def executor(self) -> "RequestExecutor":
        if self._parent is None:
            raise NotImplementedError("Root resources must provide an executor")
        return self._parent.executor

    def child(self, relative_path: str) -> "Resource":
        """Return a transient, uncached resource below this one (e.g. "_uuids")."""
        return Resource(self, relative_path)

    def send_http(
        self,
        method: str,
        params: Optional[Mapping[str, Any]] = None,
        body: JsonType = None,
        result: Optional[Callable[[JsonType], Any]] = None,
    ) -> Operation:
        """
        Issue a request to this resource and return its running operation.

        Never blocks; use the operation's `wait()`, `on_complete()` or ``await``.
        """
        return Operation(self, method, params, body, result).start()
