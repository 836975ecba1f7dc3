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

import socket
import ssl
from datetime import datetime
from typing import Callable, Optional

import tlsrenew.certificate.certificate as certificate
from tlsrenew.errors import ParseError, Unreachable


def fetch_served_chain(host: str, port: int = 443, timeout: Optional[float] = 10.0) -> bytes:
    """PEM of the leaf certificate the server presents for host (SNI), without verifying it."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=host) as tls:
            der = tls.getpeercert(binary_form=True)
    if not der:
        raise ParseError(f"{host}:{port} presented no certificate")
    return ssl.DER_cert_to_PEM_cert(der).encode("ascii")


class ServedCertificateProbe:
    """Reads the expiry of the certificate actually served on a domain, like `openssl s_client`."""

    def __init__(self,
                 port: int = 443,
                 timeout: float = 10.0,
                 fetch: Callable[[str, int, Optional[float]], bytes] = fetch_served_chain):
        self.port = port
        self.timeout = timeout
        self.fetch = fetch

    def served_expiry(self, host: str, timeout: Optional[float] = None) -> datetime:
        """
        :raises Unreachable: no TLS handshake with host.
        :raises ParseError: the server presented no readable certificate.
        """
        timeout = self.timeout if timeout is None else min(timeout, self.timeout)
        try:
            chain = self.fetch(host, self.port, timeout)
        except (OSError, ValueError) as e:
            raise Unreachable(f"TLS handshake with {host}:{self.port} failed: {e}")
        return certificate.inspect(chain).not_after
