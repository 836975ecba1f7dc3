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

import time
from typing import Callable, Optional

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

import tlsrenew.utils as utils
from tlsrenew.errors import Conflict, NotFound, PermissionDenied, RenewalError, Unreachable
from tlsrenew.models import CertificateMaterial, SecretRecord

TLS_SECRET_TYPE = "kubernetes.io/tls"
TLS_CRT_KEY = "tls.crt"
TLS_KEY_KEY = "tls.key"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "tlsrenew"


def translate_api_error(e: Exception, what: str) -> RenewalError:
    """Map a Kubernetes client failure onto the renewal error taxonomy."""
    if isinstance(e, ApiException):
        if e.status in (401, 403):
            return PermissionDenied(f"{what}: forbidden ({e.status} {e.reason})")
        if e.status == 404:
            return NotFound(f"{what}: not found")
        if e.status == 409:
            return Conflict(f"{what}: conflict ({e.reason})")
        return Unreachable(f"{what}: API error {e.status} {e.reason}")
    return Unreachable(f"{what}: {e}")


def request_kwargs(timeout: Optional[float]) -> dict:
    return {} if timeout is None else {"_request_timeout": timeout}


class SecretStore:
    """
    Named TLS secrets keyed by (namespace, name).
    put() creates or fully replaces; a reader never sees a partially written secret.
    """

    def get(self, namespace: str, name: str, timeout: Optional[float] = None) -> Optional[SecretRecord]:
        raise NotImplementedError

    def put(self, namespace: str, name: str, material: CertificateMaterial,
            current: Optional[SecretRecord] = None, timeout: Optional[float] = None) -> SecretRecord:
        """
        :raises Conflict: the secret changed or appeared since it was read.
        :raises PermissionDenied: the credentials may not write secrets.
        :raises Unreachable: the API server could not be reached.
        """
        raise NotImplementedError


class KubernetesSecretStore(SecretStore):
    """
    TLS secrets in the Kubernetes API.

    Replacement is a single PUT guarded by the observed resourceVersion. Immutable secrets
    have no update primitive, so they are deleted and created again; the create is retried
    and a failure leaves the secret absent, which the next run treats as a bootstrap.
    """

    def __init__(self,
                 core_api: client.CoreV1Api,
                 create_attempts: int = 3,
                 retry_delay: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.core_api = core_api
        self.create_attempts = max(1, create_attempts)
        self.retry_delay = retry_delay
        self.sleep = sleep

    def get(self, namespace: str, name: str, timeout: Optional[float] = None) -> Optional[SecretRecord]:
        try:
            secret = self.core_api.read_namespaced_secret(name=name, namespace=namespace,
                                                          **request_kwargs(timeout))
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_error(e, f"read secret {namespace}/{name}")
        except urllib3.exceptions.HTTPError as e:
            raise translate_api_error(e, f"read secret {namespace}/{name}")
        data = secret.data or {}
        metadata = secret.metadata
        return SecretRecord(namespace=namespace,
                            name=name,
                            chain=bytes(utils.base64_decode(data.get(TLS_CRT_KEY, ""))),
                            private_key=utils.base64_decode(data.get(TLS_KEY_KEY, "")),
                            resource_version=metadata.resource_version if metadata else None,
                            immutable=bool(secret.immutable),
                            labels=metadata.labels if metadata else None,
                            annotations=metadata.annotations if metadata else None)

    def build_secret(self, namespace: str, name: str, material: CertificateMaterial,
                     current: Optional[SecretRecord] = None, with_version: bool = True) -> client.V1Secret:
        labels = dict(current.labels) if current else {}
        labels[MANAGED_BY_LABEL] = MANAGED_BY
        metadata = client.V1ObjectMeta(name=name,
                                       namespace=namespace,
                                       labels=labels,
                                       annotations=dict(current.annotations) if current and current.annotations else None)
        if current is not None and with_version:
            metadata.resource_version = current.resource_version
        return client.V1Secret(api_version="v1",
                               kind="Secret",
                               type=TLS_SECRET_TYPE,
                               metadata=metadata,
                               immutable=True if current is not None and current.immutable else None,
                               data={TLS_CRT_KEY: utils.base64_encode(material.chain),
                                     TLS_KEY_KEY: utils.base64_encode(material.private_key)})

    def put(self, namespace: str, name: str, material: CertificateMaterial,
            current: Optional[SecretRecord] = None, timeout: Optional[float] = None) -> SecretRecord:
        what = f"secret {namespace}/{name}"
        try:
            if current is None:
                created = self.core_api.create_namespaced_secret(
                    namespace=namespace,
                    body=self.build_secret(namespace, name, material),
                    **request_kwargs(timeout))
                print(f"secret_store: created {what}")
                return self.to_record(namespace, name, material, created)
            if current.immutable:
                return self.recreate(namespace, name, material, current, timeout)
            replaced = self.core_api.replace_namespaced_secret(
                name=name,
                namespace=namespace,
                body=self.build_secret(namespace, name, material, current),
                **request_kwargs(timeout))
            print(f"secret_store: replaced {what}")
            return self.to_record(namespace, name, material, replaced)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise translate_api_error(e, f"write {what}")

    def recreate(self, namespace: str, name: str, material: CertificateMaterial,
                 current: SecretRecord, timeout: Optional[float]) -> SecretRecord:
        what = f"secret {namespace}/{name}"
        self.core_api.delete_namespaced_secret(
            name=name,
            namespace=namespace,
            body=client.V1DeleteOptions(preconditions=client.V1Preconditions(
                resource_version=current.resource_version)),
            **request_kwargs(timeout))
        print(f"secret_store: deleted immutable {what}, creating it again")
        body = self.build_secret(namespace, name, material, current, with_version=False)
        last_error = None
        for attempt in range(self.create_attempts):
            try:
                created = self.core_api.create_namespaced_secret(namespace=namespace, body=body,
                                                                 **request_kwargs(timeout))
                print(f"secret_store: created {what}")
                return self.to_record(namespace, name, material, created)
            except (ApiException, urllib3.exceptions.HTTPError) as e:
                last_error = translate_api_error(e, f"create {what}")
                print(f"secret_store: attempt {attempt + 1} to create {what} failed: {last_error}")
                if isinstance(last_error, Conflict) and attempt > 0:
                    # An earlier attempt may have been committed although its response was lost.
                    committed = self.committed(namespace, name, material, timeout)
                    if committed is not None:
                        return committed
                if isinstance(last_error, (Conflict, PermissionDenied)):
                    break
                if attempt < self.create_attempts - 1:
                    self.sleep(self.retry_delay)
        last_error.secret_removed = not isinstance(last_error, Conflict)
        raise last_error

    def committed(self, namespace: str, name: str, material: CertificateMaterial,
                  timeout: Optional[float]) -> Optional[SecretRecord]:
        """The secret as stored when it holds exactly material, None otherwise."""
        existing = self.get(namespace, name, timeout)
        if existing is None:
            return None
        try:
            if existing.chain != bytes(material.chain):
                return None
            print(f"secret_store: secret {namespace}/{name} already holds the new certificate")
            return SecretRecord(namespace=namespace,
                                name=name,
                                chain=material.chain,
                                private_key=b"",
                                resource_version=existing.resource_version,
                                immutable=existing.immutable)
        finally:
            existing.wipe()

    def to_record(self, namespace: str, name: str, material: CertificateMaterial, secret) -> SecretRecord:
        metadata = getattr(secret, "metadata", None)
        return SecretRecord(namespace=namespace,
                            name=name,
                            chain=material.chain,
                            private_key=b"",
                            resource_version=getattr(metadata, "resource_version", None),
                            immutable=bool(getattr(secret, "immutable", False)))
