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

"""Tests for per-database revision tracking."""

from unittest.mock import MagicMock

from couch_access import ChangeRecord, ResourceCache, RevisionConflict, RevisionTracker


class TestBusyCount:
    """Test in-flight write accounting."""

    def test_begin_and_end_write(self):
        """Test that busy counts rise and fall with writes."""
        tracker = RevisionTracker()
        tracker.begin_write("a")
        tracker.begin_write("a")
        assert tracker.is_busy("a")
        assert tracker.is_busy()
        assert tracker.busy_count == 2

        tracker.end_write("a", "1-x")
        assert tracker.is_busy("a")
        tracker.end_write("a", "2-y")
        assert not tracker.is_busy("a")
        assert not tracker.is_busy()
        assert tracker.record("a").busy == 0

    def test_busy_document_is_pinned(self):
        """Test that the cache entry is pinned once per busy period."""
        cache = MagicMock()
        tracker = RevisionTracker(cache=cache)
        tracker.begin_write("a")
        tracker.begin_write("a")
        cache.pin.assert_called_once_with("a")

        tracker.end_write("a")
        cache.unpin.assert_not_called()
        tracker.end_write("a")
        cache.unpin.assert_called_once_with("a")

    def test_on_idle_fires_when_last_write_ends(self):
        """Test that the idle hook fires only when no write is in flight."""
        on_idle = MagicMock()
        tracker = RevisionTracker(on_idle=on_idle)
        tracker.begin_write("a")
        tracker.begin_write("b")
        tracker.end_write("a", "1-a")
        on_idle.assert_not_called()
        tracker.end_write("b", "1-b")
        on_idle.assert_called_once_with()

    def test_unbalanced_end_write(self, caplog):
        """Test that end_write without begin_write is logged and keeps counts at zero."""
        tracker = RevisionTracker()
        tracker.end_write("a", "1-a")
        assert "without a matching begin_write" in caplog.text
        assert tracker.busy_count == 0
        assert tracker.current_revision("a") == "1-a"


class TestRevisions:
    """Test revision compare-and-set."""

    def test_successful_write_advances(self):
        """Test that an acknowledged write records the new revision."""
        tracker = RevisionTracker()
        tracker.begin_write("a")
        assert tracker.end_write("a", "1-x") is True
        assert tracker.current_revision("a") == "1-x"

    def test_conflict_leaves_revision(self):
        """Test that a failed write does not change the revision."""
        tracker = RevisionTracker()
        tracker.note_revision("a", "1-x")
        tracker.begin_write("a")
        advanced = tracker.end_write("a", error=RevisionConflict(409, {"error": "conflict"}))
        assert advanced is False
        assert tracker.current_revision("a") == "1-x"

    def test_never_regresses(self):
        """Test that an older revision never replaces a newer one."""
        tracker = RevisionTracker()
        tracker.note_revision("a", "2-new")
        assert tracker.note_revision("a", "1-old") is False
        assert tracker.current_revision("a") == "2-new"

    def test_deleted_flag(self):
        """Test that a deleting write marks the record deleted."""
        tracker = RevisionTracker()
        tracker.begin_write("a")
        tracker.end_write("a", "2-gone", deleted=True)
        assert tracker.record("a").deleted is True

    def test_unknown_document(self):
        """Test that unknown documents have no revision or record."""
        tracker = RevisionTracker()
        assert tracker.current_revision("nope") is None
        assert tracker.record("nope") is None
        assert not tracker.is_busy("nope")

    def test_record_is_a_snapshot(self):
        """Test that mutating a returned record does not affect the tracker."""
        tracker = RevisionTracker()
        tracker.note_revision("a", "1-x")
        snapshot = tracker.record("a")
        snapshot.revision = "9-z"
        assert tracker.current_revision("a") == "1-x"


class TestSuppression:
    """Test the decision whether a change is already known."""

    def test_unknown_document_not_suppressed(self):
        """Test that a change to an unknown document is new."""
        tracker = RevisionTracker()
        assert tracker.should_suppress("a", "1-x") is False

    def test_same_revision_suppressed(self):
        """Test that a change at the known revision is suppressed."""
        tracker = RevisionTracker()
        tracker.note_revision("a", "2-x")
        assert tracker.should_suppress("a", "2-x") is True

    def test_older_revision_suppressed(self):
        """Test that a stale change is suppressed."""
        tracker = RevisionTracker()
        tracker.note_revision("a", "2-x")
        assert tracker.should_suppress("a", "1-w") is True

    def test_newer_revision_not_suppressed(self):
        """Test that a newer change is new."""
        tracker = RevisionTracker()
        tracker.note_revision("a", "2-x")
        assert tracker.should_suppress("a", "3-y") is False

    def test_accept_change_records_revision(self):
        """Test that accepting a change makes its redelivery suppressed."""
        tracker = RevisionTracker()
        change = ChangeRecord(7, "a", "1-x")
        assert tracker.accept_change(change) is True
        assert tracker.current_revision("a") == "1-x"
        assert tracker.accept_change(change) is False

    def test_accept_deleted_change(self):
        """Test that a deletion from the feed marks the record deleted."""
        tracker = RevisionTracker()
        tracker.note_revision("a", "1-x")
        assert tracker.accept_change(ChangeRecord(8, "a", "2-y", deleted=True)) is True
        assert tracker.record("a").deleted is True


class TestUnnamedWrites:
    """Test writes whose document ID is assigned by the server."""

    def test_unnamed_write_counts_as_busy(self):
        """Test that a write without an ID holds the tracker busy until it ends."""
        on_idle = MagicMock()
        tracker = RevisionTracker(on_idle=on_idle)
        tracker.begin_write(None)
        assert tracker.is_busy()
        assert tracker.busy_count == 1
        assert len(tracker) == 0

        tracker.note_revision("srv-1", "1-s")
        on_idle.assert_not_called()
        tracker.end_write(None)
        assert not tracker.is_busy()
        on_idle.assert_called_once_with()

    def test_unbalanced_unnamed_end_write(self, caplog):
        """Test that ending an unnamed write that never began is logged."""
        tracker = RevisionTracker()
        tracker.end_write(None)
        assert "without a matching begin_write" in caplog.text
        assert tracker.busy_count == 0


class TestPruning:
    """Test that idle records of uncached documents are dropped."""

    def test_prune_keeps_busy_and_cached(self):
        """Test that only idle, uncached records are dropped past the limit."""

        class Thing:
            pass

        cache = ResourceCache()
        held = cache.get_or_create("b", Thing)
        tracker = RevisionTracker(cache, record_limit=3)
        tracker.begin_write("a")
        tracker.note_revision("b", "1-b")
        tracker.note_revision("c", "1-c")
        assert len(tracker) == 3

        tracker.note_revision("d", "1-d")
        assert tracker.record("c") is None
        assert tracker.is_busy("a")
        assert tracker.current_revision("b") == "1-b"
        assert tracker.current_revision("d") == "1-d"
        assert cache.get("b") is held

    def test_no_pruning_under_limit(self):
        """Test that records are kept while the limit is not exceeded."""
        tracker = RevisionTracker(record_limit=3)
        for doc_id in "xyz":
            tracker.note_revision(doc_id, "1-a")
        assert len(tracker) == 3
        assert tracker.current_revision("x") == "1-a"
