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


class RenewalError(Exception):
    """
    Base class for every failure a renewal run can report.
    Collaborators raise subclasses of it; the reconciler wraps them into Failed(stage, cause).
    """
    kind = "RenewalError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        # Set by a delete-then-create replace whose create never succeeded.
        self.secret_removed = False

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class InvalidTarget(RenewalError):
    kind = "InvalidTarget"


class ParseError(RenewalError):
    kind = "ParseError"


class KeyMismatch(RenewalError):
    kind = "KeyMismatch"


class ValidationFailed(RenewalError):
    kind = "ValidationFailed"


class RateLimited(RenewalError):
    kind = "RateLimited"


class AuthorityUnreachable(RenewalError):
    kind = "AuthorityUnreachable"


class Conflict(RenewalError):
    kind = "Conflict"


class PermissionDenied(RenewalError):
    kind = "PermissionDenied"


class Unreachable(RenewalError):
    kind = "Unreachable"


class NotFound(RenewalError):
    kind = "NotFound"


class Timeout(RenewalError):
    kind = "Timeout"


class RolloutFailed(RenewalError):
    kind = "RolloutFailed"


class StaleCertificate(RenewalError):
    kind = "StaleCertificate"
