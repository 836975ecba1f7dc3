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
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from fakes import FakeClock
from tlsrenew.certificate.certificate import utcnow
from tlsrenew.errors import PermissionDenied, Timeout
from tlsrenew.kubernetes.lease import LeaseLock
from tlsrenew.lock import LocalLock

KEY = ("letsencrypt-demo", "todo-letsencrypt-secret")
LEASE_NAME = "tlsrenew-todo-letsencrypt-secret"


def lease(holder, renewed_ago=timedelta(0), duration=900, transitions=0):
    renewed = utcnow() - renewed_ago
    return client.V1Lease(metadata=client.V1ObjectMeta(name=LEASE_NAME, namespace=KEY[0], resource_version="5"),
                          spec=client.V1LeaseSpec(holder_identity=holder,
                                                  acquire_time=renewed,
                                                  renew_time=renewed,
                                                  lease_duration_seconds=duration,
                                                  lease_transitions=transitions))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def lease_lock(api, clock):
    return LeaseLock(api, identity="me", lease_duration=900, poll_interval=5, clock=clock, sleep=clock.sleep)


def test_local_lock_excludes_same_key():
    lock = LocalLock()

    with lock.hold(KEY):
        with pytest.raises(Timeout):
            with lock.hold(KEY, timeout=0):
                pass
        with lock.hold(("letsencrypt-demo", "other-secret"), timeout=0):
            pass

    with lock.hold(KEY, timeout=0):
        pass


def test_lease_created_when_absent_and_released(lease_lock, api):
    api.read_namespaced_lease.side_effect = [ApiException(status=404, reason="Not Found"), lease("me")]

    with lease_lock.hold(KEY, timeout=30):
        body = api.create_namespaced_lease.call_args.kwargs["body"]
        assert body.metadata.name == LEASE_NAME
        assert body.spec.holder_identity == "me"
        api.delete_namespaced_lease.assert_not_called()

    delete = api.delete_namespaced_lease.call_args.kwargs
    assert (delete["name"], delete["namespace"]) == (LEASE_NAME, KEY[0])
    assert delete["body"].preconditions.resource_version == "5"


def test_lease_held_by_another_run_times_out(lease_lock, api, clock):
    api.read_namespaced_lease.return_value = lease("other")

    with pytest.raises(Timeout):
        with lease_lock.hold(KEY, timeout=12):
            pass

    api.replace_namespaced_lease.assert_not_called()
    api.delete_namespaced_lease.assert_not_called()
    assert clock.sleeps == [5, 5]


def test_expired_lease_is_taken_over(lease_lock, api):
    api.read_namespaced_lease.return_value = lease("crashed-pod", renewed_ago=timedelta(hours=1), duration=60,
                                                   transitions=2)

    with lease_lock.hold(KEY, timeout=30):
        body = api.replace_namespaced_lease.call_args.kwargs["body"]
        assert body.spec.holder_identity == "me"
        assert body.spec.lease_transitions == 3

    api.delete_namespaced_lease.assert_called_once()


def test_lease_not_released_when_taken_over(lease_lock, api):
    api.read_namespaced_lease.side_effect = [ApiException(status=404, reason="Not Found"), lease("someone-else")]

    with lease_lock.hold(KEY, timeout=30):
        pass

    api.delete_namespaced_lease.assert_not_called()


def test_lease_forbidden(lease_lock, api):
    api.read_namespaced_lease.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(PermissionDenied):
        with lease_lock.hold(KEY, timeout=30):
            pass
