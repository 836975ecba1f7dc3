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

import os
import socket
import time
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Optional

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from tlsrenew.certificate.certificate import utcnow
from tlsrenew.errors import Timeout
from tlsrenew.kubernetes.secret_store import translate_api_error
from tlsrenew.lock import LocalLock, RunLock

LEASE_PREFIX = "tlsrenew-"


def default_identity() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class LeaseLock(RunLock):
    """
    Cluster wide lock on a coordination.k8s.io/v1 Lease named tlsrenew-<secret> in the
    secret's namespace, so overlapping CronJob pods do not renew the same secret twice.
    A lease whose holder stopped renewing it for lease_duration seconds is taken over.
    """

    def __init__(self,
                 coordination_api: client.CoordinationV1Api,
                 identity: Optional[str] = None,
                 lease_duration: int = 900,
                 poll_interval: float = 5.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.coordination_api = coordination_api
        self.identity = identity or default_identity()
        self.lease_duration = lease_duration
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep
        self.local = LocalLock()

    @contextmanager
    def hold(self, key: tuple, timeout: Optional[float] = None):
        namespace, secret_name = key
        name = f"{LEASE_PREFIX}{secret_name}"[:253]
        deadline = None if timeout is None else self.clock() + timeout
        with self.local.hold(key, timeout):
            while not self.try_acquire(namespace, name):
                if deadline is not None and self.clock() + self.poll_interval > deadline:
                    raise Timeout(f"lease {namespace}/{name} is held by another renewal")
                print(f"lease: {namespace}/{name} is held by another renewal, waiting")
                self.sleep(self.poll_interval)
            try:
                yield
            finally:
                self.release(namespace, name)

    def new_spec(self, transitions: int = 0) -> client.V1LeaseSpec:
        now = utcnow()
        return client.V1LeaseSpec(holder_identity=self.identity,
                                  lease_duration_seconds=self.lease_duration,
                                  acquire_time=now,
                                  renew_time=now,
                                  lease_transitions=transitions)

    def try_acquire(self, namespace: str, name: str) -> bool:
        try:
            try:
                lease = self.coordination_api.read_namespaced_lease(name=name, namespace=namespace)
            except ApiException as e:
                if e.status != 404:
                    raise
                body = client.V1Lease(metadata=client.V1ObjectMeta(name=name, namespace=namespace),
                                      spec=self.new_spec())
                self.coordination_api.create_namespaced_lease(namespace=namespace, body=body)
                print(f"lease: acquired {namespace}/{name} as {self.identity}")
                return True

            spec = lease.spec or client.V1LeaseSpec()
            if spec.holder_identity not in (None, "", self.identity) and not self.expired(spec):
                return False
            lease.spec = self.new_spec((spec.lease_transitions or 0) + 1)
            self.coordination_api.replace_namespaced_lease(name=name, namespace=namespace, body=lease)
            print(f"lease: acquired {namespace}/{name} as {self.identity}")
            return True
        except ApiException as e:
            if e.status == 409:
                return False
            raise translate_api_error(e, f"lease {namespace}/{name}")
        except urllib3.exceptions.HTTPError as e:
            raise translate_api_error(e, f"lease {namespace}/{name}")

    def expired(self, spec: client.V1LeaseSpec) -> bool:
        renewed = spec.renew_time or spec.acquire_time
        if renewed is None:
            return True
        duration = spec.lease_duration_seconds or self.lease_duration
        return renewed + timedelta(seconds=duration) < utcnow()

    def release(self, namespace: str, name: str) -> None:
        try:
            lease = self.coordination_api.read_namespaced_lease(name=name, namespace=namespace)
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            self.coordination_api.delete_namespaced_lease(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(preconditions=client.V1Preconditions(
                    resource_version=lease.metadata.resource_version)))
            print(f"lease: released {namespace}/{name}")
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            # An unreleased lease expires after lease_duration seconds.
            print(f"lease: failed to release {namespace}/{name}: {e}")
