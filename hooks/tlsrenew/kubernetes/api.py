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

from typing import Optional

from kubernetes import client, config

from tlsrenew.certificate.served import ServedCertificateProbe
from tlsrenew.certificate.source import CertificateSource
from tlsrenew.errors import InvalidTarget
from tlsrenew.kubernetes.access import ClusterAccessCheck
from tlsrenew.kubernetes.lease import LeaseLock
from tlsrenew.kubernetes.secret_store import KubernetesSecretStore
from tlsrenew.kubernetes.workload import KubernetesWorkloadReloader
from tlsrenew.lock import LocalLock, NoLock
from tlsrenew.reconciler import RenewalReconciler

LOCK_MODES = ("local", "lease", "none")


def load_api_client(kubeconfig: Optional[str] = None, context: Optional[str] = None) -> client.ApiClient:
    """
    Credentials for the cluster as an explicit client object.
    In-cluster service account first, kubeconfig otherwise; a given kubeconfig always wins.
    """
    if kubeconfig is None and context is None:
        configuration = client.Configuration()
        try:
            config.load_incluster_config(client_configuration=configuration)
            return client.ApiClient(configuration)
        except config.ConfigException:
            pass
    return config.new_client_from_config(config_file=kubeconfig, context=context)


def make_lock(api_client: client.ApiClient, mode: str = "local"):
    if mode == "local":
        return LocalLock()
    if mode == "lease":
        return LeaseLock(client.CoordinationV1Api(api_client))
    if mode == "none":
        return NoLock()
    raise InvalidTarget(f"unknown lock mode {mode!r}, expected one of: {', '.join(LOCK_MODES)}")


def kubernetes_reconciler(api_client: client.ApiClient,
                          source: CertificateSource,
                          lock: str = "local",
                          poll_interval: float = 5.0,
                          verify_served: bool = True) -> RenewalReconciler:
    core_api = client.CoreV1Api(api_client)
    return RenewalReconciler(source=source,
                             store=KubernetesSecretStore(core_api),
                             reloader=KubernetesWorkloadReloader(client.AppsV1Api(api_client),
                                                                 core_api,
                                                                 poll_interval=poll_interval),
                             lock=make_lock(api_client, lock),
                             access_check=ClusterAccessCheck(client.AuthorizationV1Api(api_client),
                                                             client.AuthenticationV1Api(api_client)),
                             served_probe=ServedCertificateProbe() if verify_served else None)
