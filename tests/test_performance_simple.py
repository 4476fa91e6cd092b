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
Performance tests for couch-access.

These tests use pytest-benchmark and need no server: they measure the in-memory
paths every request and change row goes through.

Run with: pytest tests/test_performance_simple.py -m benchmark --benchmark-only
"""

import pytest

from couch_access import ChangeRecord, ResourceCache, RevisionTracker
from couch_access._codec import decode_json, encode_json


class Thing:
    pass


@pytest.fixture
def warm_cache():
    """Provide a cache holding 1000 retained entries."""
    cache = ResourceCache(retain_limit=1000)
    for index in range(1000):
        cache.get_or_create(f"doc-{index}", Thing)
    return cache


@pytest.mark.benchmark
class TestPerformance:
    """Core performance benchmarks."""

    def test_cache_hit(self, benchmark, warm_cache):
        """Identity lookup of a cached document."""
        result = benchmark(warm_cache.get_or_create, "doc-500", Thing)
        assert result is warm_cache.get("doc-500")

    def test_cache_miss_with_eviction(self, benchmark):
        """Creating documents beyond the retain limit."""
        cache = ResourceCache(retain_limit=100)
        counter = iter(range(10**9))
        benchmark(lambda: cache.get_or_create(f"doc-{next(counter)}", Thing))
        assert len(cache) <= 100

    def test_accept_change(self, benchmark):
        """Suppression check for a change row."""
        tracker = RevisionTracker()
        tracker.note_revision("a", "5-abc")
        record = ChangeRecord(10, "a", "5-abc")
        assert benchmark(tracker.accept_change, record) is False

    def test_decode_change_row(self, benchmark):
        """Decoding one feed row."""
        line = b'{"seq":1234,"id":"doc-1","changes":[{"rev":"3-917fa2381192822767f010b95b45325b"}]}'
        record = benchmark(lambda: ChangeRecord.from_json(decode_json(line)))
        assert record.sequence == 1234

    def test_encode_document(self, benchmark):
        """Encoding a medium document body."""
        body = {"_id": "doc-1", "tags": [f"t{i}" for i in range(50)], "nested": {"a": {"b": list(range(100))}}}
        assert benchmark(encode_json, body).startswith(b'{"_id"')
