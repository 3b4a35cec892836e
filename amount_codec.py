"""At-rest encoding of finance amounts.

Two schemes are supported and every stored value carries the scheme that
wrote it (``obf$...`` or ``gcm$...``). Values written before the envelope
existed are still readable: ``iv:tag:ciphertext`` strings are treated as
AES-GCM and bare numbers as legacy obfuscated (or plain) decimals.
"""

from __future__ import annotations

import hashlib
import logging
import os
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Optional, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import Settings, get_settings

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
IV_LENGTH = 16
TAG_LENGTH = 16
SCHEME_SEPARATOR = "$"
OBFUSCATION_SCHEME = "obf"
AESGCM_SCHEME = "gcm"


class AmountDecodeError(ValueError):
    pass


class AmountCodec(Protocol):
    def encode(self, amount: Decimal) -> str: ...

    def decode(self, stored: str) -> Decimal: ...


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _parse_decimal(raw: str) -> Decimal:
    try:
        value = Decimal(raw.strip())
    except (InvalidOperation, AttributeError) as exc:
        raise AmountDecodeError(f"Not a numeric amount: {raw!r}") from exc
    if not value.is_finite():
        raise AmountDecodeError(f"Not a finite amount: {raw!r}")
    return value


class ObfuscationCodec:
    """Multiplies by a constant factor. A deterrent, not encryption."""

    def __init__(self, factor: Decimal) -> None:
        if factor <= 0:
            raise ValueError("Obfuscation factor must be positive")
        self.factor = factor

    def encode(self, amount: Decimal) -> str:
        return format(_quantize(amount) * self.factor, "f")

    def decode(self, stored: str) -> Decimal:
        return _quantize(_parse_decimal(stored) / self.factor)


class AesGcmCodec:
    """AES-256-GCM over the decimal string, stored as hex ``iv:tag:ciphertext``."""

    def __init__(self, secret: str) -> None:
        key = hashlib.scrypt(
            secret.encode("utf-8"), salt=b"salt", n=16384, r=8, p=1, dklen=32
        )
        self._aead = AESGCM(key)

    def encode(self, amount: Decimal) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, format(_quantize(amount), "f").encode(), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decode(self, stored: str) -> Decimal:
        parts = stored.split(":")
        if len(parts) != 3:
            # Rows written before encryption was enabled hold plain numbers.
            return _quantize(_parse_decimal(stored))
        iv_hex, tag_hex, ciphertext_hex = parts
        try:
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
            plain = self._aead.decrypt(iv, ciphertext + tag, None)
        except (ValueError, InvalidTag) as exc:
            raise AmountDecodeError("Failed to decrypt amount") from exc
        return _quantize(_parse_decimal(plain.decode("utf-8")))


class AmountStore:
    def __init__(
        self,
        scheme: str,
        obfuscation: ObfuscationCodec,
        aesgcm: Optional[AesGcmCodec] = None,
        *,
        legacy_numeric: str = "obfuscated",
    ) -> None:
        if scheme not in (OBFUSCATION_SCHEME, AESGCM_SCHEME):
            raise ValueError(f"Unsupported amount scheme: {scheme}")
        if scheme == AESGCM_SCHEME and aesgcm is None:
            raise ValueError("AES-GCM scheme requires an encryption key")
        if legacy_numeric not in ("obfuscated", "plain"):
            raise ValueError(f"Unsupported legacy amount format: {legacy_numeric}")
        self.scheme = scheme
        self.legacy_numeric = legacy_numeric
        self._codecs: dict[str, AmountCodec] = {OBFUSCATION_SCHEME: obfuscation}
        if aesgcm is not None:
            self._codecs[AESGCM_SCHEME] = aesgcm

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AmountStore":
        settings = settings or get_settings()
        scheme = {
            "obfuscate": OBFUSCATION_SCHEME,
            "aesgcm": AESGCM_SCHEME,
        }.get(settings.amount_codec)
        if scheme is None:
            raise ValueError(f"Unsupported amount codec: {settings.amount_codec}")
        aesgcm = None
        if settings.encryption_key:
            aesgcm = AesGcmCodec(settings.encryption_key)
        return cls(
            scheme,
            ObfuscationCodec(settings.amount_factor),
            aesgcm,
            legacy_numeric=settings.legacy_numeric_amounts,
        )

    def encode(self, amount: Decimal) -> str:
        if amount <= 0:
            raise ValueError("Amount must be positive")
        payload = self._codecs[self.scheme].encode(amount)
        return f"{self.scheme}{SCHEME_SEPARATOR}{payload}"

    def scheme_of(self, stored: str) -> str:
        prefix, sep, _payload = stored.partition(SCHEME_SEPARATOR)
        if sep and prefix in (OBFUSCATION_SCHEME, AESGCM_SCHEME):
            return prefix
        if stored.count(":") == 2:
            return AESGCM_SCHEME
        return f"legacy_{self.legacy_numeric}"

    def is_current(self, stored: str) -> bool:
        return stored.startswith(f"{self.scheme}{SCHEME_SEPARATOR}")

    def decode(self, stored: Optional[str]) -> Decimal:
        if stored is None or not str(stored).strip():
            raise AmountDecodeError("Empty stored amount")
        stored = str(stored).strip()
        prefix, sep, payload = stored.partition(SCHEME_SEPARATOR)
        if sep and prefix in (OBFUSCATION_SCHEME, AESGCM_SCHEME):
            return self._codec(prefix).decode(payload)
        if stored.count(":") == 2:
            return self._codec(AESGCM_SCHEME).decode(stored)
        if self.legacy_numeric == "plain":
            return _quantize(_parse_decimal(stored))
        return self._codecs[OBFUSCATION_SCHEME].decode(stored)

    def decode_safe(
        self, stored: Optional[str], *, record_id: Optional[int] = None
    ) -> Decimal:
        try:
            return self.decode(stored)
        except (ValueError, ArithmeticError) as exc:
            logger.warning(f"amount_decode_failed: finance_id={record_id} error={exc}")
            return Decimal("0")

    def _codec(self, scheme: str) -> AmountCodec:
        codec = self._codecs.get(scheme)
        if codec is None:
            raise AmountDecodeError(f"No codec configured for scheme '{scheme}'")
        return codec


@lru_cache(maxsize=1)
def get_amount_store() -> AmountStore:
    return AmountStore.from_settings()
