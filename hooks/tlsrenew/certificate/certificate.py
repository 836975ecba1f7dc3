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

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography import x509
from cryptography.x509.oid import NameOID
from OpenSSL import crypto

from tlsrenew.errors import KeyMismatch, ParseError

ASN1_TIME_FORMAT = "%Y%m%d%H%M%SZ"
PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"


@dataclass(frozen=True)
class CertificateInfo:
    not_before: datetime
    not_after: datetime
    serial: int
    subject_cn: Optional[str]
    sans: tuple = ()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_asn1_time(value: bytes) -> datetime:
    return datetime.strptime(value.decode("ascii"), ASN1_TIME_FORMAT).replace(tzinfo=timezone.utc)


def load_leaf(chain: bytes) -> crypto.X509:
    """
    Load the first certificate of a PEM chain.
    :raises ParseError: if the input holds no well-formed certificate.
    """
    if not chain or PEM_CERT_MARKER not in bytes(chain):
        raise ParseError("no PEM certificate found")
    try:
        return crypto.load_certificate(crypto.FILETYPE_PEM, bytes(chain))
    except crypto.Error as e:
        raise ParseError(f"malformed certificate: {e}")


def get_subject_cn(cert: x509.Certificate) -> Optional[str]:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else None


def get_sans(cert: x509.Certificate) -> tuple:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    return tuple(ext.value.get_values_for_type(x509.DNSName))


def inspect(chain: bytes) -> CertificateInfo:
    """
    Read the validity window of the leaf certificate.
    :param chain: PEM encoded certificate chain, leaf first.
    :type chain: :py:class:`bytes`
    :rtype: :py:class:`CertificateInfo`
    :raises ParseError: if the chain is not a well-formed certificate.
    """
    crt = load_leaf(chain)
    not_after = crt.get_notAfter()
    if not_after is None:
        raise ParseError("certificate has no notAfter")
    cert = crt.to_cryptography()
    try:
        return CertificateInfo(not_before=parse_asn1_time(crt.get_notBefore()),
                               not_after=parse_asn1_time(not_after),
                               serial=crt.get_serial_number(),
                               subject_cn=get_subject_cn(cert),
                               sans=get_sans(cert))
    except ValueError as e:
        raise ParseError(f"unreadable validity window: {e}")


def days_remaining(not_after: datetime, now: datetime) -> int:
    """
    Whole days between now and not_after, rounded down.
    Negative for an already expired certificate.
    """
    return (not_after - now) // timedelta(days=1)


def check_key_pair(chain: bytes, private_key) -> None:
    """
    Make sure the private key belongs to the leaf certificate.
    :raises ParseError: if either side is unreadable.
    :raises KeyMismatch: if the key does not match the certificate.
    """
    crt = load_leaf(chain)
    try:
        key = crypto.load_privatekey(crypto.FILETYPE_PEM, bytes(private_key))
    except crypto.Error as e:
        raise ParseError(f"malformed private key: {e}")
    if crypto.dump_publickey(crypto.FILETYPE_PEM, key) != crypto.dump_publickey(crypto.FILETYPE_PEM, crt.get_pubkey()):
        raise KeyMismatch("private key does not match the certificate")
