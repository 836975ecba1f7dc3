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

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from tlsrenew.errors import PermissionDenied
from tlsrenew.kubernetes.secret_store import request_kwargs, translate_api_error
from tlsrenew.models import RenewalTarget

# (verb, API group, resource) a renewal needs in the target namespace.
REQUIRED_ACCESS = (
    ("get", "", "secrets"),
    ("create", "", "secrets"),
    ("update", "", "secrets"),
    ("get", "apps", "deployments"),
    ("patch", "apps", "deployments"),
)


class ClusterAccessCheck:
    """
    Confirms the cluster is reachable with working credentials and that they allow every
    call a renewal makes, before a certificate is requested.
    """

    def __init__(self,
                 authorization_api: client.AuthorizationV1Api,
                 authentication_api: Optional[client.AuthenticationV1Api] = None,
                 required=REQUIRED_ACCESS):
        self.authorization_api = authorization_api
        self.authentication_api = authentication_api
        self.required = required

    def check(self, target: RenewalTarget, timeout: Optional[float] = None) -> None:
        """
        :raises PermissionDenied: the credentials are rejected or miss a permission.
        :raises Unreachable: the API server could not be reached.
        """
        print(f"access: connected as {self.whoami(timeout) or 'unknown user'}")
        for verb, group, resource in self.required:
            if not self.allowed(target.namespace, verb, group, resource, timeout):
                raise PermissionDenied(f"not allowed to {verb} {resource} in namespace {target.namespace}")

    def whoami(self, timeout: Optional[float] = None) -> Optional[str]:
        if self.authentication_api is None:
            return None
        try:
            review = self.authentication_api.create_self_subject_review(body=client.V1SelfSubjectReview(),
                                                                        **request_kwargs(timeout))
        except ApiException as e:
            # SelfSubjectReview is served from Kubernetes 1.28 on.
            if e.status == 404:
                return None
            raise translate_api_error(e, "look up the current user")
        except urllib3.exceptions.HTTPError as e:
            raise translate_api_error(e, "look up the current user")
        user_info = review.status.user_info if review.status else None
        return user_info.username if user_info else None

    def allowed(self, namespace: str, verb: str, group: str, resource: str, timeout: Optional[float] = None) -> bool:
        body = client.V1SelfSubjectAccessReview(spec=client.V1SelfSubjectAccessReviewSpec(
            resource_attributes=client.V1ResourceAttributes(namespace=namespace,
                                                            verb=verb,
                                                            group=group,
                                                            resource=resource)))
        try:
            review = self.authorization_api.create_self_subject_access_review(body=body, **request_kwargs(timeout))
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise translate_api_error(e, f"check access to {resource} in namespace {namespace}")
        return bool(review.status and review.status.allowed)
