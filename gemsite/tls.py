import datetime
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from OpenSSL import SSL, crypto

from . import config
from .errors import IdentityError

log = logging.getLogger(__name__)


def sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


@dataclass(frozen=True)
class ClientIdentity:
    """Certificate a client chose to present during the handshake."""

    fingerprint: str
    common_name: str = ""


class ServerIdentity:
    """
    Long-lived key pair and self-signed certificate of the server.

    Clients pin the certificate on first use (TOFU), so no CA chain is
    involved. The material is validated once when the identity is built
    and only read afterwards.
    """

    def __init__(self, cert_pem: bytes, key_pem: bytes):
        try:
            self._cert = crypto.load_certificate(crypto.FILETYPE_PEM, cert_pem)
            self._key = crypto.load_privatekey(crypto.FILETYPE_PEM, key_pem)
        except crypto.Error as e:
            raise IdentityError(f"malformed certificate or key: {e}") from e

        ctx = SSL.Context(SSL.TLS_SERVER_METHOD)
        try:
            ctx.use_certificate(self._cert)
            ctx.use_privatekey(self._key)
            ctx.check_privatekey()
        except SSL.Error as e:
            raise IdentityError(f"certificate does not match private key: {e}") from e

        der = crypto.dump_certificate(crypto.FILETYPE_ASN1, self._cert)
        self.fingerprint = sha256_hex(der)
        self.common_name = self._cert.get_subject().CN or ""

    def certificate(self) -> Tuple[crypto.X509, crypto.PKey]:
        return self._cert, self._key

    @classmethod
    def load(cls, cert_file: str, key_file: str) -> "ServerIdentity":
        try:
            with open(cert_file, "rb") as f:
                cert_pem = f.read()
            with open(key_file, "rb") as f:
                key_pem = f.read()
        except OSError as e:
            raise IdentityError(f"cannot read TLS material: {e}") from e
        return cls(cert_pem, key_pem)

    @classmethod
    def load_or_generate(
        cls,
        cert_file: str,
        key_file: str,
        hostname: str = config.HOSTNAME,
        days: int = config.CERT_DAYS,
    ) -> "ServerIdentity":
        """
        Load the certificate/key pair, or create a self-signed one when
        neither file exists yet. A lone cert or lone key is refused rather
        than overwritten.
        """
        have_cert = os.path.exists(cert_file)
        have_key = os.path.exists(key_file)

        if have_cert and have_key:
            return cls.load(cert_file, key_file)
        if have_cert or have_key:
            missing = key_file if have_cert else cert_file
            raise IdentityError(f"incomplete TLS material, {missing} is missing")

        log.warning("[TLS] no server certificate, generating one for %s", hostname)
        cert_pem, key_pem = generate_certificate(hostname, days)
        for path in (cert_file, key_file):
            parent = os.path.dirname(path)
            if parent:
                os.makedirs(parent, exist_ok=True)
        try:
            with open(key_file, "wb") as f:
                f.write(key_pem)
            os.chmod(key_file, 0o600)
            with open(cert_file, "wb") as f:
                f.write(cert_pem)
        except OSError as e:
            raise IdentityError(f"cannot write TLS material: {e}") from e
        return cls(cert_pem, key_pem)


def generate_certificate(hostname: str, days: int = config.CERT_DAYS) -> Tuple[bytes, bytes]:
    """Create a self-signed RSA certificate for ``hostname``. Returns PEM (cert, key)."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    key_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )

    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    not_before = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + datetime.timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .sign(private_key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM), key_pem


def ssl_context(identity: ServerIdentity) -> SSL.Context:
    cert, key = identity.certificate()
    ctx = SSL.Context(SSL.TLS_SERVER_METHOD)
    ctx.set_options(SSL.OP_NO_COMPRESSION)
    ctx.set_min_proto_version(SSL.TLS1_2_VERSION)
    ctx.use_certificate(cert)
    ctx.use_privatekey(key)
    ctx.set_session_id(b"gemsite")

    # Ask for a client certificate but accept anything, self-signed included.
    def verify_cb(conn, cert, errnum, depth, ok):
        return True

    ctx.set_verify(SSL.VERIFY_PEER, verify_cb)  # no VERIFY_FAIL_IF_NO_PEER_CERT
    return ctx


def client_identity(ssl_conn: SSL.Connection) -> Optional[ClientIdentity]:
    peer_cert = ssl_conn.get_peer_certificate()
    if peer_cert is None:
        return None
    der = crypto.dump_certificate(crypto.FILETYPE_ASN1, peer_cert)
    return ClientIdentity(
        fingerprint=sha256_hex(der),
        common_name=peer_cert.get_subject().CN or "",
    )
