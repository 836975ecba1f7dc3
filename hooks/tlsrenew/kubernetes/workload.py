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
from dataclasses import dataclass
from typing import Callable, Optional

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from tlsrenew.certificate.certificate import utcnow
from tlsrenew.errors import RolloutFailed, Timeout
from tlsrenew.kubernetes.secret_store import request_kwargs, translate_api_error

RESTARTED_AT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"
PROGRESS_DEADLINE_EXCEEDED = "ProgressDeadlineExceeded"

# Container waiting reasons after which a rollout will not converge by itself.
FATAL_WAITING_REASONS = {
    "CrashLoopBackOff",
    "ImagePullBackOff",
    "ErrImagePull",
    "CreateContainerConfigError",
    "InvalidImageName",
}


@dataclass(frozen=True)
class ReloadHandle:
    namespace: str
    deployment_name: str
    generation: int
    restarted_at: str


@dataclass(frozen=True)
class Ready:
    replicas_ready: int
    replicas_expected: int


class WorkloadReloader:
    """Restarts the workload that mounts the secret and waits for it to become ready."""

    def reload(self, namespace: str, deployment_name: str, timeout: Optional[float] = None) -> ReloadHandle:
        """
        :raises NotFound: no such deployment.
        :raises PermissionDenied: the credentials may not patch deployments.
        """
        raise NotImplementedError

    def await_ready(self, handle: ReloadHandle, timeout: float) -> Ready:
        """
        :raises Timeout: the rollout is still progressing after timeout seconds.
        :raises RolloutFailed: the rollout reported it will not converge.
        """
        raise NotImplementedError


class KubernetesWorkloadReloader(WorkloadReloader):
    """
    Rolling restart of a Deployment, the same way `kubectl rollout restart` does it:
    the pod template gets a fresh restartedAt annotation.
    """

    def __init__(self,
                 apps_api: client.AppsV1Api,
                 core_api: Optional[client.CoreV1Api] = None,
                 poll_interval: float = 5.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.apps_api = apps_api
        self.core_api = core_api
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep

    def reload(self, namespace: str, deployment_name: str, timeout: Optional[float] = None) -> ReloadHandle:
        restarted_at = utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")
        body = {"spec": {"template": {"metadata": {"annotations": {RESTARTED_AT_ANNOTATION: restarted_at}}}}}
        try:
            deployment = self.apps_api.patch_namespaced_deployment(name=deployment_name,
                                                                   namespace=namespace,
                                                                   body=body,
                                                                   **request_kwargs(timeout))
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise translate_api_error(e, f"restart deployment {namespace}/{deployment_name}")
        print(f"workload: rolling restart triggered for deployment {namespace}/{deployment_name}")
        return ReloadHandle(namespace=namespace,
                            deployment_name=deployment_name,
                            generation=deployment.metadata.generation or 0,
                            restarted_at=restarted_at)

    def await_ready(self, handle: ReloadHandle, timeout: float) -> Ready:
        what = f"deployment {handle.namespace}/{handle.deployment_name}"
        deadline = self.clock() + timeout
        while True:
            remaining = deadline - self.clock()
            try:
                deployment = self.apps_api.read_namespaced_deployment_status(
                    name=handle.deployment_name,
                    namespace=handle.namespace,
                    **request_kwargs(max(remaining, 1)))
            except (ApiException, urllib3.exceptions.HTTPError) as e:
                raise translate_api_error(e, f"read {what}")

            ready = rollout_ready(deployment, handle.generation)
            if ready is not None:
                print(f"workload: rollout complete: {ready.replicas_ready}/{ready.replicas_expected} replicas ready")
                return ready

            failure = rollout_failure(deployment) or self.pod_failure(deployment, handle)
            if failure:
                raise RolloutFailed(f"{what}: {failure}")

            status = deployment.status
            print(f"workload: rollout in progress: updated={status.updated_replicas or 0} "
                  f"ready={status.ready_replicas or 0} expected={deployment.spec.replicas}")
            if self.clock() + self.poll_interval > deadline:
                raise Timeout(f"{what} rollout did not complete within {timeout:.0f}s")
            self.sleep(self.poll_interval)

    def pod_failure(self, deployment, handle: ReloadHandle) -> Optional[str]:
        if self.core_api is None:
            return None
        selector = deployment.spec.selector.match_labels if deployment.spec.selector else None
        if not selector:
            return None
        label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
        try:
            pods = self.core_api.list_namespaced_pod(namespace=handle.namespace, label_selector=label_selector)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise translate_api_error(e, f"list pods of deployment {handle.namespace}/{handle.deployment_name}")
        for pod in pods.items:
            annotations = (pod.metadata.annotations or {}) if pod.metadata else {}
            # Only pods of the new template count; old ones are being replaced anyway.
            if annotations.get(RESTARTED_AT_ANNOTATION) != handle.restarted_at:
                continue
            statuses = (pod.status.container_statuses or []) if pod.status else []
            for cs in statuses:
                waiting = cs.state.waiting if cs.state else None
                if waiting is not None and waiting.reason in FATAL_WAITING_REASONS:
                    return f"pod {pod.metadata.name} container {cs.name} is in {waiting.reason}"
        return None


def rollout_ready(deployment, generation: int) -> Optional[Ready]:
    """Return Ready once every replica runs the new template, None while the rollout is in progress."""
    expected = deployment.spec.replicas if deployment.spec.replicas is not None else 1
    status = deployment.status
    if status is None or (status.observed_generation or 0) < generation:
        return None
    updated = status.updated_replicas or 0
    ready = status.ready_replicas or 0
    available = status.available_replicas or 0
    total = status.replicas or 0
    if updated >= expected and ready >= expected and available >= expected and total <= updated:
        return Ready(replicas_ready=ready, replicas_expected=expected)
    return None


def rollout_failure(deployment) -> Optional[str]:
    conditions = deployment.status.conditions if deployment.status else None
    for cond in conditions or []:
        if cond.type == "Progressing" and cond.status == "False" and cond.reason == PROGRESS_DEADLINE_EXCEEDED:
            return f"{cond.reason}: {cond.message}"
    return None
