"""
Signed voucher tokens (QR payloads).

A token is a compact ES256 JWT carrying ``vid`` (voucher id), ``btc`` (batch id),
``iat`` and ``exp``. Verification only needs the public key.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

import jwt
from django.conf import settings
from django.utils import timezone

from .codes import generate_batch_code, generate_short_code, validate_voucher_code
from .exceptions import ValidationError
from .keys import SigningKeyProvider, get_key_provider
from .models import VoucherCodeType

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ['vid', 'iat', 'exp']


@dataclass
class TokenRequest:
    voucher_id: str
    ttl_seconds: Optional[int] = None


@dataclass
class TokenResult:
    voucher_id: str
    qr_payload: str
    short_code: str
    batch_id: str


@dataclass
class TokenVerification:
    valid: bool
    voucher_id: Optional[str] = None
    batch_id: Optional[str] = None
    error: str = ''


@dataclass
class GeneratedCode:
    type: str
    code: str
    metadata: dict = field(default_factory=dict)


def _voucher_id(value) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError('Invalid voucher id', detail=repr(value))


class TokenService:
    """Builds and verifies voucher tokens"""

    def __init__(self, key_provider: Optional[SigningKeyProvider] = None, clock=time.time):
        self._key_provider = key_provider
        self.clock = clock

    @property
    def key_provider(self) -> SigningKeyProvider:
        return self._key_provider or get_key_provider()

    def generate_tokens(self, voucher_id, batch_id: Optional[str] = None,
                        ttl_seconds: Optional[int] = None) -> TokenResult:
        """
        Signs a QR payload for a voucher and pairs it with a fresh short code.

        The short code is not bound to the signature; it is resolved through
        the stored VoucherCode rows.
        """
        vid = _voucher_id(voucher_id)
        ttl = settings.VOUCHER_TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        if ttl < 0:
            raise ValidationError('Token TTL must not be negative', detail=str(ttl))

        now = int(self.clock())
        batch_id = batch_id or f"batch-{int(self.clock() * 1000)}"
        claims = {'vid': vid, 'btc': batch_id, 'iat': now, 'exp': now + ttl}

        provider = self.key_provider
        token = jwt.encode(claims, provider.private_key(), algorithm=provider.algorithm,
                           headers={'kid': provider.key_id})

        return TokenResult(
            voucher_id=vid,
            qr_payload=token,
            short_code=generate_short_code(settings.VOUCHER_SHORT_CODE_LENGTH),
            batch_id=batch_id,
        )

    def generate_batch_tokens(self, requests: Iterable, batch_id: Optional[str] = None) -> Dict[str, TokenResult]:
        """
        Signs tokens for many vouchers under one batch id.

        Failures are logged and left out of the result, callers detect them by
        comparing the requested ids with the returned keys.
        """
        items = [r if isinstance(r, TokenRequest) else TokenRequest(voucher_id=r) for r in requests]
        batch_id = batch_id or generate_batch_code(sequence_length=8)
        # resolve once so worker threads share the same key
        provider = self.key_provider
        service = TokenService(key_provider=provider, clock=self.clock)

        def _one(item: TokenRequest):
            try:
                return service.generate_tokens(item.voucher_id, batch_id, item.ttl_seconds)
            except Exception as exc:
                logger.warning(f"Token generation failed for voucher {item.voucher_id!r}: {exc}")
                return None

        results: Dict[str, TokenResult] = {}
        if not items:
            return results

        workers = max(1, min(settings.VOUCHER_TOKEN_WORKERS, len(items)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            for result in pool.map(_one, items):
                if result is not None:
                    results[result.voucher_id] = result

        logger.info(f"Batch {batch_id}: signed {len(results)}/{len(items)} voucher tokens")
        return results

    def verify_token(self, token) -> TokenVerification:
        """Never raises for bad input; key problems still propagate"""
        if not token or not isinstance(token, str):
            return TokenVerification(valid=False, error='Malformed token')

        public_key = self.key_provider.public_key()
        try:
            claims = jwt.decode(
                token,
                public_key,
                algorithms=[self.key_provider.algorithm],
                options={'verify_exp': False, 'require': REQUIRED_CLAIMS},
            )
        except jwt.InvalidTokenError as exc:
            logger.debug(f"Rejected voucher token: {exc}")
            return TokenVerification(valid=False, error=str(exc))

        if claims['exp'] <= self.clock():
            return TokenVerification(valid=False, error='Token has expired')

        return TokenVerification(valid=True, voucher_id=claims['vid'], batch_id=claims.get('btc'))

    def decode_unverified(self, token) -> Optional[dict]:
        """Claim set without signature checks, for diagnostics only"""
        try:
            return jwt.decode(token, options={'verify_signature': False})
        except jwt.InvalidTokenError:
            return None

    def generate_voucher_codes(self, voucher_id, include_qr: bool = True, include_short: bool = True,
                               static_code: Optional[str] = None,
                               batch_id: Optional[str] = None) -> List[GeneratedCode]:
        """Codes to store as VoucherCode rows for a new voucher"""
        generated = []
        stamp = timezone.now().isoformat()

        if include_qr or include_short:
            tokens = self.generate_tokens(voucher_id, batch_id)
            if include_qr:
                generated.append(GeneratedCode(VoucherCodeType.QR, tokens.qr_payload, {
                    'algorithm': self.key_provider.algorithm,
                    'kid': self.key_provider.key_id,
                    'batch_id': tokens.batch_id,
                    'generated_at': stamp,
                }))
            if include_short:
                generated.append(GeneratedCode(VoucherCodeType.SHORT, tokens.short_code, {
                    'length': len(tokens.short_code),
                    'generated_at': stamp,
                }))

        if static_code:
            if not validate_voucher_code(static_code, VoucherCodeType.STATIC):
                raise ValidationError(
                    'Static code must be 4-20 characters, uppercase letters and numbers only',
                    detail=static_code,
                )
            generated.append(GeneratedCode(VoucherCodeType.STATIC, static_code, {
                'user_provided': True,
                'generated_at': stamp,
            }))

        return generated


_default_service = TokenService()


def get_token_service() -> TokenService:
    return _default_service
