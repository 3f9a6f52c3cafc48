import os
import random
import stat

import pytest
from cryptography.fernet import Fernet

from branchchat.core.exceptions import DecryptionError
from branchchat.core.security import CryptoVault


def test_encrypt_decrypt(vault):
    ciphertext = vault.encrypt("sk-test-123")

    assert ciphertext != "sk-test-123"
    assert vault.decrypt(ciphertext) == "sk-test-123"


def test_encrypt_is_randomized(vault):
    assert vault.encrypt("same") != vault.encrypt("same")


def test_empty_string_passes_through(vault):
    assert vault.encrypt("") == ""
    assert vault.decrypt("") == ""


def test_unicode_secret(vault):
    assert vault.decrypt(vault.encrypt("clé-ñ-日本")) == "clé-ñ-日本"


def _random_unicode(length: int, seed: int) -> str:
    rng = random.Random(seed)
    # Skip the surrogate block, which UTF-8 cannot encode
    points = [rng.randrange(0x20, 0x10FFFF - 0x800) for _ in range(length)]
    return "".join(chr(p + 0x800 if p >= 0xD800 else p) for p in points)


@pytest.mark.parametrize(
    "plaintext",
    ["", "a", "x" * 10000, _random_unicode(64, seed=7), _random_unicode(10000, seed=11)],
    ids=["empty", "one-char", "long-ascii", "short-unicode", "long-unicode"],
)
def test_round_trip_preserves_plaintext(vault, plaintext):
    assert vault.decrypt(vault.encrypt(plaintext)) == plaintext


def test_decrypt_with_other_key_fails(vault):
    other = CryptoVault(Fernet.generate_key())

    with pytest.raises(DecryptionError):
        other.decrypt(vault.encrypt("sk-test"))


@pytest.mark.parametrize("garbage", ["not-a-token", "gAAAAA", "ключ"])
def test_decrypt_malformed_input(vault, garbage):
    with pytest.raises(DecryptionError):
        vault.decrypt(garbage)


def test_decrypt_tampered_token(vault):
    token = vault.encrypt("sk-test")
    tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

    with pytest.raises(DecryptionError):
        vault.decrypt(tampered)


def test_from_secret_is_deterministic():
    first = CryptoVault.from_secret("correct horse")
    second = CryptoVault.from_secret("correct horse")

    assert second.decrypt(first.encrypt("payload")) == "payload"


def test_key_file_created_once(tmp_path):
    key_file = tmp_path / "keys" / "vault.key"

    first = CryptoVault.from_key_file(key_file)
    ciphertext = first.encrypt("sk-test")
    second = CryptoVault.from_key_file(key_file)

    assert key_file.exists()
    assert second.decrypt(ciphertext) == "sk-test"
    if os.name == "posix":
        assert stat.S_IMODE(key_file.stat().st_mode) == 0o600


def test_module_helpers_use_process_vault(monkeypatch, vault):
    from branchchat.core import security

    monkeypatch.setattr(security, "_vault", vault)

    assert security.get_vault() is vault
    assert security.decrypt_value(security.encrypt_value("sk-test")) == "sk-test"
