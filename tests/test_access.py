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
import urllib3
from kubernetes.client.rest import ApiException

from tlsrenew.errors import PermissionDenied, Unreachable
from tlsrenew.kubernetes.access import REQUIRED_ACCESS, ClusterAccessCheck
from tlsrenew.models import RenewalTarget

TARGET = RenewalTarget.create("todo.example.com", "letsencrypt-demo", "todo-letsencrypt-secret", "todo-angular")


def review(allowed):
    return SimpleNamespace(status=SimpleNamespace(allowed=allowed))


@pytest.fixture
def authorization_api():
    api = MagicMock()
    api.create_self_subject_access_review.return_value = review(True)
    return api


@pytest.fixture
def authentication_api():
    api = MagicMock()
    api.create_self_subject_review.return_value = SimpleNamespace(
        status=SimpleNamespace(user_info=SimpleNamespace(username="system:serviceaccount:letsencrypt-demo:tlsrenew")))
    return api


def test_all_permissions_granted(authorization_api, authentication_api, capsys):
    ClusterAccessCheck(authorization_api, authentication_api).check(TARGET, timeout=10)

    assert authorization_api.create_self_subject_access_review.call_count == len(REQUIRED_ACCESS)
    call = authorization_api.create_self_subject_access_review.call_args_list[1].kwargs
    attrs = call["body"].spec.resource_attributes
    assert (attrs.namespace, attrs.verb, attrs.resource) == ("letsencrypt-demo", "create", "secrets")
    assert call["_request_timeout"] == 10
    assert "connected as system:serviceaccount:letsencrypt-demo:tlsrenew" in capsys.readouterr().out


def test_missing_permission(authorization_api):
    authorization_api.create_self_subject_access_review.side_effect = [review(True), review(True), review(False)]

    with pytest.raises(PermissionDenied, match="not allowed to update secrets in namespace letsencrypt-demo"):
        ClusterAccessCheck(authorization_api).check(TARGET)


def test_rejected_credentials(authorization_api, authentication_api):
    authentication_api.create_self_subject_review.side_effect = ApiException(status=401, reason="Unauthorized")

    with pytest.raises(PermissionDenied):
        ClusterAccessCheck(authorization_api, authentication_api).check(TARGET)

    authorization_api.create_self_subject_access_review.assert_not_called()


def test_identity_lookup_not_served(authorization_api, authentication_api, capsys):
    authentication_api.create_self_subject_review.side_effect = ApiException(status=404, reason="Not Found")

    ClusterAccessCheck(authorization_api, authentication_api).check(TARGET)

    assert "connected as unknown user" in capsys.readouterr().out


def test_api_server_unreachable(authorization_api):
    authorization_api.create_self_subject_access_review.side_effect = urllib3.exceptions.MaxRetryError(
        None, "/apis/authorization.k8s.io/v1/selfsubjectaccessreviews", "connection refused")

    with pytest.raises(Unreachable):
        ClusterAccessCheck(authorization_api).check(TARGET)
