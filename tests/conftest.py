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

"""Shared fixtures."""

import pytest

from couch_access import Server
from tests.fixtures.fake_executor import FakeExecutor


@pytest.fixture
def executor():
    """Provide a fake executor that records requests."""
    fake = FakeExecutor()
    yield fake
    fake.close()


@pytest.fixture
def server(executor):
    """Provide a server backed by the fake executor, with near-instant reconnects."""
    return Server(
        "http://couch.test:5984/",
        executor=executor,
        doc_retain_limit=3,
        backoff_factor=1.0,
        max_backoff=0.01,
        strict_cache=True,
    )


@pytest.fixture
def db(server):
    """Provide the "notes" database; change tracking is switched off afterwards."""
    database = server.database_named("notes")
    yield database
    database.disable_change_tracking()
