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

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from tlsrenew.errors import InvalidTarget, RenewalError

PLACEHOLDER_DOMAIN = "yourdomain.com"

# RFC 1123 label: namespaces.
DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
# RFC 1123 subdomain: secret and deployment names.
DNS_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
DOMAIN_LABEL_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
TLD_RE = re.compile(r"^[a-zA-Z]{2,63}$")


class ValidationMethod(Enum):
    DNS = "dns"
    HTTP = "http"

    @classmethod
    def parse(cls, value) -> "ValidationMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidTarget(f"unknown validation method {value!r}, expected one of: dns, http")


class Stage(Enum):
    IDLE = "Idle"
    INSPECTING = "Inspecting"
    SKIP = "Skip"
    RENEWING = "Renewing"
    DEPLOYING = "Deploying"
    VERIFYING = "Verifying"
    DONE = "Done"
    FAILED = "Failed"


class SecretState(Enum):
    UNCHANGED = "Unchanged"
    REPLACED = "Replaced"
    REMOVED = "Removed"


def is_valid_domain(domain: str) -> bool:
    if not domain or len(domain) > 253:
        return False
    labels = domain.rstrip(".").split(".")
    if len(labels) < 2:
        return False
    if not TLD_RE.match(labels[-1]):
        return False
    return all(DOMAIN_LABEL_RE.match(label) for label in labels)


@dataclass(frozen=True)
class RenewalTarget:
    """
    What one reconciliation keeps alive: the domain, the TLS secret holding its certificate
    and the deployment mounting that secret.
    """
    domain: str
    namespace: str
    secret_name: str
    deployment_name: str
    renewal_window_days: int = 30
    validation_method: ValidationMethod = ValidationMethod.HTTP

    @classmethod
    def create(cls,
               domain: str,
               namespace: str,
               secret_name: str,
               deployment_name: str,
               renewal_window_days: int = 30,
               validation_method="http") -> "RenewalTarget":
        """
        Build a target, validating every identifier before any stage runs.
        :raises InvalidTarget: on a malformed domain, namespace, secret or deployment name.
        """
        if domain == PLACEHOLDER_DOMAIN:
            raise InvalidTarget(f"domain is still set to the default placeholder '{PLACEHOLDER_DOMAIN}'")
        if not is_valid_domain(domain):
            raise InvalidTarget(f"invalid domain format: {domain!r}")
        if not namespace or len(namespace) > 63 or not DNS_LABEL_RE.match(namespace):
            raise InvalidTarget(f"invalid namespace format: {namespace!r}")
        for what, name in (("secret name", secret_name), ("deployment name", deployment_name)):
            if not name or len(name) > 253 or not DNS_SUBDOMAIN_RE.match(name):
                raise InvalidTarget(f"invalid {what} format: {name!r}")
        try:
            window = int(renewal_window_days)
        except (TypeError, ValueError):
            raise InvalidTarget(f"renewal window must be an integer, got {renewal_window_days!r}")
        if isinstance(renewal_window_days, bool) or window < 0:
            raise InvalidTarget(f"renewal window must be a non-negative integer, got {renewal_window_days!r}")
        return cls(domain=domain,
                   namespace=namespace,
                   secret_name=secret_name,
                   deployment_name=deployment_name,
                   renewal_window_days=window,
                   validation_method=ValidationMethod.parse(validation_method))

    @property
    def lock_key(self) -> tuple:
        return (self.namespace, self.secret_name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.secret_name}"


class CertificateMaterial:
    """
    PEM certificate chain plus PEM private key.
    The key lives in a mutable buffer so it can be zeroed with wipe() once handed over.
    """

    def __init__(self, chain: bytes, private_key):
        self.chain = bytes(chain)
        self.private_key = bytearray(private_key)

    def wipe(self) -> None:
        for i in range(len(self.private_key)):
            self.private_key[i] = 0
        self.private_key = bytearray()
        self.chain = b""

    @property
    def wiped(self) -> bool:
        return len(self.private_key) == 0

    def __repr__(self) -> str:
        return f"CertificateMaterial(chain={len(self.chain)} bytes, private_key=<redacted>)"


class SecretRecord(CertificateMaterial):
    """Handle to a TLS secret in the store, keyed by (namespace, name)."""

    def __init__(self,
                 namespace: str,
                 name: str,
                 chain: bytes,
                 private_key,
                 resource_version: Optional[str] = None,
                 immutable: bool = False,
                 labels: Optional[dict] = None,
                 annotations: Optional[dict] = None):
        super().__init__(chain, private_key)
        self.namespace = namespace
        self.name = name
        self.resource_version = resource_version
        self.immutable = immutable
        self.labels = dict(labels or {})
        self.annotations = dict(annotations or {})

    def __repr__(self) -> str:
        return f"SecretRecord({self.namespace}/{self.name}, resource_version={self.resource_version})"


@dataclass(frozen=True)
class StageTransition:
    stage: Stage
    at: datetime
    detail: str = ""

    def to_dict(self) -> dict:
        res = {"stage": self.stage.value, "at": self.at.isoformat()}
        if self.detail:
            res["detail"] = self.detail
        return res


@dataclass(frozen=True)
class RenewalOutcome:
    target: RenewalTarget
    transitions: tuple = field(default=(), compare=False)

    @property
    def ok(self) -> bool:
        return True

    def to_dict(self) -> dict:
        return {
            "target": str(self.target),
            "domain": self.target.domain,
            "outcome": type(self).__name__,
            "transitions": [t.to_dict() for t in self.transitions],
        }


@dataclass(frozen=True)
class Skipped(RenewalOutcome):
    days_remaining: int = 0

    def to_dict(self) -> dict:
        res = super().to_dict()
        res["daysRemaining"] = self.days_remaining
        return res


@dataclass(frozen=True)
class Renewed(RenewalOutcome):
    new_expiry: Optional[datetime] = None
    served_expiry: Optional[datetime] = None

    def to_dict(self) -> dict:
        res = super().to_dict()
        res["newExpiry"] = self.new_expiry.isoformat() if self.new_expiry else None
        res["servedExpiry"] = self.served_expiry.isoformat() if self.served_expiry else None
        return res


@dataclass(frozen=True)
class Failed(RenewalOutcome):
    stage: Stage = Stage.IDLE
    cause: Optional[RenewalError] = None
    secret_state: SecretState = SecretState.UNCHANGED

    @property
    def ok(self) -> bool:
        return False

    @property
    def secret_updated(self) -> bool:
        """True when the store no longer holds the pre-run material and manual rollback may be needed."""
        return self.secret_state != SecretState.UNCHANGED

    def to_dict(self) -> dict:
        res = super().to_dict()
        res["stage"] = self.stage.value
        res["cause"] = self.cause.to_dict() if self.cause else None
        res["secretState"] = self.secret_state.value
        return res
