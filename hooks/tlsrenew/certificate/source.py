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
import shutil
import subprocess
import tempfile
from typing import List, Optional, Sequence

from tlsrenew.errors import AuthorityUnreachable, InvalidTarget, RateLimited, Timeout, ValidationFailed
from tlsrenew.models import CertificateMaterial, ValidationMethod

RATE_LIMIT_MARKERS = (
    "ratelimited",
    "rate limit",
    "too many certificates",
    "too many failed authorizations",
    "too many new orders",
)

SUDO_READ_TIMEOUT = 30

UNREACHABLE_MARKERS = (
    "failed to establish a new connection",
    "connection refused",
    "max retries exceeded",
    "name or service not known",
    "temporary failure in name resolution",
    "read timed out",
    "serverinternal",
    "service unavailable",
)


class CertificateSource:
    """
    Authority that issues a certificate and key for a domain.
    Each call yields a new certificate, so issuing again before expiry is legal.
    """

    def issue(self, domain: str, validation_method: ValidationMethod,
              timeout: Optional[float] = None) -> CertificateMaterial:
        """
        :raises ValidationFailed: the authority could not confirm domain control.
        :raises RateLimited: the authority refused because of rate limits.
        :raises AuthorityUnreachable: the authority could not be contacted.
        :raises Timeout: the call did not finish within timeout seconds.
        """
        raise NotImplementedError


def classify_failure(output: str, returncode: int):
    text = output.lower()
    tail = output.strip().splitlines()[-1] if output.strip() else f"exit code {returncode}"
    if any(marker in text for marker in RATE_LIMIT_MARKERS):
        return RateLimited(f"certbot: {tail}")
    if any(marker in text for marker in UNREACHABLE_MARKERS):
        return AuthorityUnreachable(f"certbot: {tail}")
    return ValidationFailed(f"certbot exited with code {returncode}: {tail}")


def read_file(path: str, mutable: bool = False):
    with open(path, "rb") as f:
        if not mutable:
            return f.read()
        buf = bytearray(os.path.getsize(path))
        f.readinto(buf)
        return buf


def scrub_keys(path: str) -> None:
    """Overwrite every privkey*.pem under path with zeros."""
    for root, _, files in os.walk(path):
        for name in files:
            if not name.startswith("privkey"):
                continue
            full = os.path.join(root, name)
            if os.path.islink(full):
                continue
            size = os.path.getsize(full)
            with open(full, "r+b") as f:
                f.write(b"\0" * size)


class CertbotSource(CertificateSource):
    """
    Issues certificates with the certbot executable.

    Without config_dir every call runs certbot in a throwaway directory which is
    scrubbed and removed afterwards, success or not. With config_dir the keys stay in
    that certbot store, as they do for a regular certbot installation.

    With sudo certbot runs as root and its files are read back through `sudo cat`.
    It needs config_dir: a throwaway directory full of root-owned keys could not be
    scrubbed or removed by this process.
    """

    def __init__(self,
                 certbot: str = "certbot",
                 config_dir: Optional[str] = None,
                 email: Optional[str] = None,
                 server: Optional[str] = None,
                 authenticator: Optional[str] = None,
                 extra_args: Sequence[str] = (),
                 sudo: bool = False):
        if sudo and not config_dir:
            raise InvalidTarget("certbot with sudo needs a config directory")
        self.certbot = certbot
        self.config_dir = config_dir
        self.email = email
        self.server = server
        self.authenticator = authenticator
        self.extra_args = list(extra_args)
        self.sudo = sudo

    def build_command(self, domain: str, validation_method: ValidationMethod, base_dir: Optional[str]) -> List[str]:
        cmd = ["sudo"] if self.sudo else []
        cmd += [self.certbot, "certonly", "--non-interactive", "--agree-tos", "--force-renewal",
                "--cert-name", domain, "-d", domain,
                "--preferred-challenges", validation_method.value]
        if base_dir is not None:
            cmd += ["--config-dir", os.path.join(base_dir, "config"),
                    "--work-dir", os.path.join(base_dir, "work"),
                    "--logs-dir", os.path.join(base_dir, "logs")]
        else:
            cmd += ["--config-dir", self.config_dir]
        if self.authenticator:
            cmd += ["--authenticator", self.authenticator]
        if self.email:
            cmd += ["--email", self.email]
        else:
            cmd += ["--register-unsafely-without-email"]
        if self.server:
            cmd += ["--server", self.server]
        return cmd + self.extra_args

    def issue(self, domain: str, validation_method: ValidationMethod,
              timeout: Optional[float] = None) -> CertificateMaterial:
        base_dir = tempfile.mkdtemp(prefix="tlsrenew-") if self.config_dir is None else None
        config_dir = os.path.join(base_dir, "config") if base_dir else self.config_dir
        try:
            self.run_certbot(self.build_command(domain, validation_method, base_dir), timeout)
            return self.read_material(os.path.join(config_dir, "live", domain))
        finally:
            if base_dir is not None:
                scrub_keys(base_dir)
                shutil.rmtree(base_dir, ignore_errors=True)

    def run_certbot(self, cmd: List[str], timeout: Optional[float]) -> None:
        print(f"certbot: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise Timeout(f"certbot did not finish within {timeout:.0f}s")
        except FileNotFoundError:
            raise AuthorityUnreachable(f"certbot executable {cmd[0]!r} not found")
        if result.returncode != 0:
            raise classify_failure(f"{result.stdout}\n{result.stderr}", result.returncode)

    def read_material(self, live_dir: str) -> CertificateMaterial:
        chain_path = os.path.join(live_dir, "fullchain.pem")
        key_path = os.path.join(live_dir, "privkey.pem")
        if not self.sudo:
            for path in (chain_path, key_path):
                if not os.path.isfile(path):
                    raise ValidationFailed(f"certificate file not found: {path}")
        key = self.read(key_path, mutable=True)
        try:
            return CertificateMaterial(self.read(chain_path), key)
        finally:
            key[:] = b"\0" * len(key)

    def read(self, path: str, mutable: bool = False):
        if not self.sudo:
            return read_file(path, mutable)
        try:
            result = subprocess.run(["sudo", "cat", path], capture_output=True, timeout=SUDO_READ_TIMEOUT)
        except subprocess.TimeoutExpired:
            raise Timeout(f"reading {path} did not finish within {SUDO_READ_TIMEOUT}s")
        if result.returncode != 0:
            raise ValidationFailed(f"certificate file not found: {path}")
        return bytearray(result.stdout) if mutable else result.stdout
