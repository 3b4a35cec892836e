import logging
from decimal import Decimal

import pytest

from amount_codec import (
    AesGcmCodec,
    AmountDecodeError,
    AmountStore,
    ObfuscationCodec,
)

VALUES = [Decimal("0.01"), Decimal("19.99"), Decimal("1000000.00")]


@pytest.fixture(scope="module")
def aesgcm() -> AesGcmCodec:
    return AesGcmCodec("test-secret")


@pytest.mark.parametrize("value", VALUES)
def test_obfuscation_round_trip(value: Decimal) -> None:
    codec = ObfuscationCodec(Decimal("7.31"))
    stored = codec.encode(value)
    assert Decimal(stored) != value
    assert codec.decode(stored) == value
    assert codec.encode(value) == stored


@pytest.mark.parametrize("value", VALUES)
def test_aesgcm_round_trip(aesgcm: AesGcmCodec, value: Decimal) -> None:
    stored = aesgcm.encode(value)
    iv_hex, tag_hex, ciphertext_hex = stored.split(":")
    assert len(iv_hex) == 32
    assert len(tag_hex) == 32
    assert ciphertext_hex
    assert aesgcm.decode(stored) == value


def test_aesgcm_reads_plain_numbers(aesgcm: AesGcmCodec) -> None:
    assert aesgcm.decode("42.5") == Decimal("42.50")


def test_aesgcm_rejects_tampered_values(aesgcm: AesGcmCodec) -> None:
    iv_hex, tag_hex, ciphertext_hex = aesgcm.encode(Decimal("10.00")).split(":")
    flipped = "0" if tag_hex[0] != "0" else "1"
    with pytest.raises(AmountDecodeError):
        aesgcm.decode(f"{iv_hex}:{flipped}{tag_hex[1:]}:{ciphertext_hex}")


def test_store_writes_scheme_prefix(aesgcm: AesGcmCodec) -> None:
    obfuscation = ObfuscationCodec(Decimal("7.31"))
    store = AmountStore("obf", obfuscation, aesgcm)
    stored = store.encode(Decimal("19.99"))
    assert stored.startswith("obf$")
    assert store.is_current(stored)
    assert store.decode(stored) == Decimal("19.99")

    encrypted = AmountStore("gcm", obfuscation, aesgcm)
    sealed = encrypted.encode(Decimal("19.99"))
    assert sealed.startswith("gcm$")
    assert not store.is_current(sealed)
    assert store.decode(sealed) == Decimal("19.99")
    assert encrypted.decode(stored) == Decimal("19.99")


def test_store_reads_legacy_values(aesgcm: AesGcmCodec) -> None:
    obfuscation = ObfuscationCodec(Decimal("7.31"))
    store = AmountStore("obf", obfuscation, aesgcm)
    assert store.decode("73.1") == Decimal("10.00")
    assert store.scheme_of("73.1") == "legacy_obfuscated"

    bare = aesgcm.encode(Decimal("55.25"))
    assert store.scheme_of(bare) == "gcm"
    assert store.decode(bare) == Decimal("55.25")

    plain = AmountStore("obf", obfuscation, legacy_numeric="plain")
    assert plain.decode("73.1") == Decimal("73.10")


def test_store_rejects_non_positive_amounts() -> None:
    store = AmountStore("obf", ObfuscationCodec(Decimal("2")))
    with pytest.raises(ValueError):
        store.encode(Decimal("0"))


def test_store_requires_key_for_encryption() -> None:
    with pytest.raises(ValueError):
        AmountStore("gcm", ObfuscationCodec(Decimal("2")))


def test_decode_safe_substitutes_zero(caplog) -> None:
    store = AmountStore("obf", ObfuscationCodec(Decimal("2")))
    with caplog.at_level(logging.WARNING):
        assert store.decode_safe("obf$not-a-number", record_id=12) == Decimal("0")
        assert store.decode_safe("aa:bb:cc", record_id=13) == Decimal("0")
        assert store.decode_safe(None, record_id=14) == Decimal("0")
    assert "finance_id=12" in caplog.text
