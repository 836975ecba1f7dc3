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

import threading
from contextlib import contextmanager
from typing import Optional

from tlsrenew.errors import Timeout


class RunLock:
    """
    Mutual exclusion for runs against the same (namespace, secret).
    hold() is a context manager; it raises Timeout when the lock is not free within timeout seconds.
    """

    @contextmanager
    def hold(self, key: tuple, timeout: Optional[float] = None):
        yield


class NoLock(RunLock):
    pass


class LocalLock(RunLock):
    """Serializes runs between threads of one process."""

    def __init__(self):
        self.guard = threading.Lock()
        self.locks = {}

    def lock_for(self, key: tuple) -> threading.Lock:
        with self.guard:
            if key not in self.locks:
                self.locks[key] = threading.Lock()
            return self.locks[key]

    @contextmanager
    def hold(self, key: tuple, timeout: Optional[float] = None):
        lock = self.lock_for(key)
        if not lock.acquire(timeout=-1 if timeout is None else max(timeout, 0)):
            raise Timeout(f"another renewal of {'/'.join(key)} is still running")
        try:
            yield
        finally:
            lock.release()
