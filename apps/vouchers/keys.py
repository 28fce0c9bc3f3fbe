"""
Signing key provider for voucher tokens.

Key material is normally provisioned at deployment time and injected through
``VOUCHER_SIGNING_PRIVATE_KEY`` / ``VOUCHER_SIGNING_PUBLIC_KEY`` (PEM). Without
it a P-256 pair is generated in memory on first use; tokens signed with such a
key stop verifying after a restart and on other instances.
"""

import logging
import threading
from typing import Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from django.conf import settings

from .exceptions import ServiceUnavailable

logger = logging.getLogger(__name__)

ALGORITHM = 'ES256'


class SigningKeyProvider:
    """Owns the asymmetric key pair used to sign and verify tokens"""
    algorithm = ALGORITHM

    def __init__(self, key_id: Optional[str] = None):
        self.key_id = key_id or settings.VOUCHER_SIGNING_KEY_ID

    def private_key(self) -> ec.EllipticCurvePrivateKey:
        raise NotImplementedError

    def public_key(self) -> ec.EllipticCurvePublicKey:
        raise NotImplementedError

    def sign(self, data: bytes) -> bytes:
        """DER encoded ECDSA/SHA-256 signature"""
        return self.private_key().sign(data, ec.ECDSA(hashes.SHA256()))

    def public_key_pem(self) -> str:
        return self.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode('ascii')


def _pem_bytes(value: str) -> bytes:
    # env vars usually carry the PEM with literal "\n"
    return value.replace('\\n', '\n').strip().encode('ascii')


def _require_p256(key, what: str):
    if not isinstance(key.curve, ec.SECP256R1):
        raise ServiceUnavailable('Signing key unavailable', detail=f"{what} is not a P-256 key")
    return key


class PemKeyProvider(SigningKeyProvider):
    """Key pair loaded from PEM strings"""

    def __init__(self, private_pem: str, public_pem: str = '', key_id: Optional[str] = None):
        super().__init__(key_id)
        try:
            private = serialization.load_pem_private_key(_pem_bytes(private_pem), password=None)
            public = (serialization.load_pem_public_key(_pem_bytes(public_pem))
                      if public_pem else private.public_key())
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.error(f"Cannot load voucher signing keys: {exc}")
            raise ServiceUnavailable('Signing key unavailable', detail='invalid PEM key material') from exc

        if not isinstance(private, ec.EllipticCurvePrivateKey) or not isinstance(public, ec.EllipticCurvePublicKey):
            raise ServiceUnavailable('Signing key unavailable', detail='signing keys must be elliptic curve keys')

        self._private = _require_p256(private, 'private key')
        self._public = _require_p256(public, 'public key')

        if self._public.public_numbers() != self._private.public_key().public_numbers():
            raise ServiceUnavailable('Signing key unavailable', detail='public key does not match private key')

    def private_key(self):
        return self._private

    def public_key(self):
        return self._public


class EphemeralKeyProvider(SigningKeyProvider):
    """P-256 pair generated lazily, held in memory only"""

    def __init__(self, key_id: Optional[str] = None):
        super().__init__(key_id)
        self._lock = threading.Lock()
        self._private = None

    def private_key(self):
        if self._private is None:
            with self._lock:
                if self._private is None:
                    logger.warning("No voucher signing key configured, generating an in-memory P-256 key pair")
                    self._private = ec.generate_private_key(ec.SECP256R1())
        return self._private

    def public_key(self):
        return self.private_key().public_key()


_provider: Optional[SigningKeyProvider] = None
_provider_lock = threading.Lock()


def build_key_provider() -> SigningKeyProvider:
    private_pem = getattr(settings, 'VOUCHER_SIGNING_PRIVATE_KEY', '')
    if private_pem:
        return PemKeyProvider(private_pem, getattr(settings, 'VOUCHER_SIGNING_PUBLIC_KEY', ''))
    return EphemeralKeyProvider()


def get_key_provider() -> SigningKeyProvider:
    """Process wide provider, created at most once"""
    global _provider
    if _provider is None:
        with _provider_lock:
            if _provider is None:
                _provider = build_key_provider()
    return _provider


def reset_key_provider():
    """Forget the process wide provider (tests, key rotation)"""
    global _provider
    with _provider_lock:
        _provider = None
