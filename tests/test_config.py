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

"""Tests for configuration validation."""

import pytest

from couch_access import Server
from couch_access.exceptions import ConfigurationError
from tests.fixtures.fake_executor import FakeExecutor


@pytest.fixture
def make_server():
    """Build servers on a fake executor so no connection pool is created."""
    created = []

    def factory(url="http://couch.test:5984/", **options):
        server = Server(url, executor=FakeExecutor(), **options)
        created.append(server)
        return server

    yield factory
    for server in created:
        server.close()


class TestServerConfigValidation:
    """Test configuration validation for the server."""

    def test_empty_url(self, make_server):
        """Test that an empty URL raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="server_url cannot be empty"):
            make_server("")

    @pytest.mark.parametrize("url", ["couch.test:5984", "ftp://couch.test/", "http://"])
    def test_non_http_url(self, make_server, url):
        """Test that URLs which are not absolute http(s) URLs are rejected."""
        with pytest.raises(ConfigurationError, match="server_url must be an absolute http"):
            make_server(url)

    def test_invalid_timeout(self, make_server):
        """Test that a zero timeout raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="timeout must be positive"):
            make_server(timeout=0)

    def test_invalid_max_workers(self, make_server):
        """Test that fewer than one worker raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="max_workers must be at least 1"):
            make_server(max_workers=0)

    def test_negative_retain_limit(self, make_server):
        """Test that a negative retain limit raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="doc_retain_limit cannot be negative"):
            make_server(doc_retain_limit=-1)

    def test_zero_retain_limit_is_valid(self, make_server):
        """Test that a zero retain limit is accepted (documents are never evicted)."""
        server = make_server(doc_retain_limit=0)
        assert server.database_named("notes").document_cache.retain_limit == 0

    def test_invalid_heartbeat(self, make_server):
        """Test that a zero heartbeat raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="feed_heartbeat must be at least 1"):
            make_server(feed_heartbeat=0)

    def test_invalid_backoff_factor(self, make_server):
        """Test that a backoff factor below 1 raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="backoff_factor must be at least 1"):
            make_server(backoff_factor=0.5)

    def test_invalid_max_backoff(self, make_server):
        """Test that a non-positive max backoff raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="max_backoff must be positive"):
            make_server(max_backoff=0)

    def test_options_reach_databases(self, make_server):
        """Test that server settings are inherited by its databases."""
        server = make_server("https://couch.test/prefix/", doc_retain_limit=7)
        db = server.database_named("notes")
        assert server.url == "https://couch.test/prefix"
        assert db.url == "https://couch.test/prefix/notes"
        assert db.document_cache.retain_limit == 7
