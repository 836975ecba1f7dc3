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

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from fakes import FakeClock
from tlsrenew.errors import NotFound, PermissionDenied, RolloutFailed, Timeout
from tlsrenew.kubernetes.workload import (KubernetesWorkloadReloader, RESTARTED_AT_ANNOTATION, ReloadHandle, Ready,
                                          rollout_ready)

NAMESPACE = "letsencrypt-demo"
NAME = "todo-angular"
RESTARTED_AT = "2026-10-19T12:00:00Z"
HANDLE = ReloadHandle(NAMESPACE, NAME, generation=3, restarted_at=RESTARTED_AT)


def deployment(replicas=2, observed=3, updated=2, ready=2, available=2, total=2, conditions=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(generation=3),
        spec=SimpleNamespace(replicas=replicas,
                             selector=SimpleNamespace(match_labels={"app": "todo", "tier": "web"})),
        status=SimpleNamespace(observed_generation=observed,
                               updated_replicas=updated,
                               ready_replicas=ready,
                               available_replicas=available,
                               replicas=total,
                               conditions=conditions))


def pod(name, reason, restarted_at=RESTARTED_AT):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, annotations={RESTARTED_AT_ANNOTATION: restarted_at}),
        status=SimpleNamespace(container_statuses=[
            SimpleNamespace(name="web", state=SimpleNamespace(waiting=SimpleNamespace(reason=reason)))]))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def apps_api():
    return MagicMock()


@pytest.fixture
def core_api():
    api = MagicMock()
    api.list_namespaced_pod.return_value = SimpleNamespace(items=[])
    return api


@pytest.fixture
def reloader(apps_api, core_api, clock):
    return KubernetesWorkloadReloader(apps_api, core_api, poll_interval=5, clock=clock, sleep=clock.sleep)


def test_reload_patches_restarted_at(reloader, apps_api):
    apps_api.patch_namespaced_deployment.return_value = SimpleNamespace(metadata=SimpleNamespace(generation=7))

    handle = reloader.reload(NAMESPACE, NAME)

    call = apps_api.patch_namespaced_deployment.call_args.kwargs
    annotations = call["body"]["spec"]["template"]["metadata"]["annotations"]
    assert annotations[RESTARTED_AT_ANNOTATION] == handle.restarted_at
    assert (call["name"], call["namespace"]) == (NAME, NAMESPACE)
    assert handle.generation == 7


@pytest.mark.parametrize("status, error", [(404, NotFound), (403, PermissionDenied)])
def test_reload_errors(reloader, apps_api, status, error):
    apps_api.patch_namespaced_deployment.side_effect = ApiException(status=status, reason="x")

    with pytest.raises(error):
        reloader.reload(NAMESPACE, NAME)


def test_await_ready_polls_until_converged(reloader, apps_api, clock):
    apps_api.read_namespaced_deployment_status.side_effect = [
        deployment(observed=2),
        deployment(updated=1, ready=1, total=3),
        deployment(),
    ]

    ready = reloader.await_ready(HANDLE, timeout=60)

    assert ready == Ready(replicas_ready=2, replicas_expected=2)
    assert clock.sleeps == [5, 5]


def test_await_ready_times_out_while_progressing(reloader, apps_api, clock):
    apps_api.read_namespaced_deployment_status.return_value = deployment(updated=1, ready=1, total=3)

    with pytest.raises(Timeout):
        reloader.await_ready(HANDLE, timeout=20)

    assert sum(clock.sleeps) <= 20


def test_await_ready_fails_fast_on_progress_deadline(reloader, apps_api, clock):
    condition = SimpleNamespace(type="Progressing", status="False", reason="ProgressDeadlineExceeded",
                                message="ReplicaSet has timed out progressing.")
    apps_api.read_namespaced_deployment_status.return_value = deployment(updated=1, ready=0, conditions=[condition])

    with pytest.raises(RolloutFailed, match="ProgressDeadlineExceeded"):
        reloader.await_ready(HANDLE, timeout=600)

    assert clock.sleeps == []


def test_await_ready_fails_fast_on_crash_loop(reloader, apps_api, core_api, clock):
    apps_api.read_namespaced_deployment_status.return_value = deployment(updated=1, ready=1, total=3)
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=[pod("todo-angular-abc", "CrashLoopBackOff")])

    with pytest.raises(RolloutFailed, match="CrashLoopBackOff"):
        reloader.await_ready(HANDLE, timeout=600)

    assert core_api.list_namespaced_pod.call_args.kwargs["label_selector"] == "app=todo,tier=web"
    assert clock.sleeps == []


def test_await_ready_ignores_crashing_pods_of_old_template(reloader, apps_api, core_api):
    apps_api.read_namespaced_deployment_status.side_effect = [deployment(updated=1, ready=1, total=3), deployment()]
    core_api.list_namespaced_pod.return_value = SimpleNamespace(
        items=[pod("todo-angular-old", "CrashLoopBackOff", restarted_at="2026-01-01T00:00:00Z"),
               pod("todo-angular-new", "ContainerCreating")])

    assert reloader.await_ready(HANDLE, timeout=60).replicas_ready == 2


def test_rollout_ready_with_zero_replicas():
    assert rollout_ready(deployment(replicas=0, updated=0, ready=0, available=0, total=0), 3) == Ready(0, 0)
