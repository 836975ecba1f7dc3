#
# Copyright 2025 Flant JSC
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

from datetime import timedelta

import pytest

from fakes import NOW, FakeReloader, FakeSource, MemoryStore, make_material
from tlsrenew.lock import LocalLock
from tlsrenew.models import RenewalTarget
from tlsrenew.reconciler import RenewalReconciler


@pytest.fixture
def target() -> RenewalTarget:
    return RenewalTarget.create(domain="todo.example.com",
                                namespace="letsencrypt-demo",
                                secret_name="todo-letsencrypt-secret",
                                deployment_name="todo-angular",
                                renewal_window_days=30)


@pytest.fixture
def fresh_material():
    """A certificate the authority hands out today: valid for 90 days."""
    return make_material(NOW + timedelta(days=90), domain="todo.example.com")


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def reloader() -> FakeReloader:
    return FakeReloader()


@pytest.fixture
def source(fresh_material) -> FakeSource:
    return FakeSource(fresh_material)


@pytest.fixture
def log_lines() -> list:
    return []


@pytest.fixture
def reconciler(source, store, reloader, log_lines) -> RenewalReconciler:
    return RenewalReconciler(source=source,
                             store=store,
                             reloader=reloader,
                             lock=LocalLock(),
                             now=lambda: NOW,
                             log=log_lines.append)
