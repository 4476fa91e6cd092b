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

"""Identity-preserving resource cache.

The cache maps a relative path to the one live object representing that path. It
deduplicates construction; it is never the only owner an object depends on. Three
layers of references make this work:

- an identity map of weak references, so an entry lives as long as anyone uses it;
- an LRU of strong references to the most recently registered entries, so idle
  objects survive for a while even when nobody holds them;
- counted pins for busy entries, which stay strongly held regardless of LRU
  pressure until every pin is released.
"""

import logging
import threading
import weakref
from typing import Any, Callable, Dict, Optional

from lru import LRU

from ._utils import DEFAULT_STRICT_CACHE
from .exceptions import CacheConsistencyViolation, ConfigurationError

LOGGER = logging.getLogger(__name__)


class ResourceCache:
    """
    Identity map from relative path to resource object.

    Example:
        >>> cache = ResourceCache(retain_limit=50)
        >>> doc = cache.get_or_create("a", lambda: Document(db, "a"))
        >>> assert cache.get("a") is doc
    """

    def __init__(self, retain_limit: int = 0, strict: bool = DEFAULT_STRICT_CACHE):
        """
        Initialise the cache.

        Args:
            retain_limit: How many idle entries to keep strongly referenced.
                0 keeps every registered entry (default: 0)
            strict: Raise CacheConsistencyViolation instead of logging it

        Raises:
            ConfigurationError: If retain_limit is negative
        """
        if retain_limit < 0:
            raise ConfigurationError("retain_limit cannot be negative")

        self._retain_limit = retain_limit
        self._strict = strict
        self._lock = threading.RLock()
        self._identity: "weakref.WeakValueDictionary[str, Any]" = weakref.WeakValueDictionary()
        self._retained = LRU(retain_limit) if retain_limit else {}
        self._pinned: Dict[str, Any] = {}
        self._pin_counts: Dict[str, int] = {}

    @property
    def retain_limit(self) -> int:
        return self._retain_limit

    def __len__(self) -> int:
        with self._lock:
            return len(self._identity)

    def __contains__(self, path: str) -> bool:
        return self.get(path) is not None

    def get(self, path: str) -> Optional[Any]:
        """Return the live object registered for `path`, or None."""
        with self._lock:
            return self._identity.get(path)

    def register(self, path: str, resource: Any) -> None:
        """
        Register `resource` as the object for `path`.

        Registering the same object twice is a no-op. Registering a different
        object while the first is still alive violates the identity invariant:
        the existing entry is kept and the violation is raised (strict) or logged.

        Raises:
            CacheConsistencyViolation: In strict mode, on a conflicting registration
        """
        with self._lock:
            existing = self._identity.get(path)
            if existing is not None and existing is not resource:
                message = f"Two distinct objects registered for {path!r}: {existing!r} and {resource!r}"
                if self._strict:
                    raise CacheConsistencyViolation(message)
                LOGGER.error(message)
                return
            self._identity[path] = resource
            self._retain(path, resource)

    def get_or_create(self, path: str, factory: Callable[[], Any]) -> Any:
        """
        Atomically return the object for `path`, constructing it on a miss.

        Concurrent callers asking for the same path always observe one object.
        """
        with self._lock:
            resource = self._identity.get(path)
            if resource is None:
                resource = factory()
                self.register(path, resource)
            return resource

    def _retain(self, path: str, resource: Any) -> None:
        if path in self._pin_counts:
            self._pinned[path] = resource
            return
        self._retained[path] = resource

    def pin(self, path: str) -> None:
        """
        Keep the entry for `path` strongly held until a matching `unpin()`.

        A path pinned before it is registered is held as soon as it is registered.
        """
        with self._lock:
            count = self._pin_counts.get(path, 0) + 1
            self._pin_counts[path] = count
            if count == 1:
                resource = self._identity.get(path)
                if resource is not None:
                    self._pinned[path] = resource
                if path in self._retained:
                    del self._retained[path]

    def unpin(self, path: str) -> None:
        """Release one pin; the last release returns the entry to the LRU."""
        with self._lock:
            count = self._pin_counts.get(path, 0)
            if count <= 0:
                LOGGER.debug("Ignoring unpin of %r with no pins (cache cleared?)", path)
                return
            if count > 1:
                self._pin_counts[path] = count - 1
                return
            del self._pin_counts[path]
            resource = self._pinned.pop(path, None)
            if resource is not None:
                self._retained[path] = resource

    def is_pinned(self, path: str) -> bool:
        with self._lock:
            return path in self._pin_counts

    def clear(self) -> None:
        """Forget every entry, busy or not. Later lookups construct new objects."""
        with self._lock:
            self._identity = weakref.WeakValueDictionary()
            self._retained.clear()
            self._pinned.clear()
            self._pin_counts.clear()
