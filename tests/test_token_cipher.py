import pytest

from barforge_gateway.token_cipher import TokenCipher, TokenCipherError, token_key_from_secret


@pytest.fixture()
def cipher() -> TokenCipher:
    return TokenCipher(token_key_from_secret("token-secret"))


def test_seal_and_open(cipher: TokenCipher) -> None:
    sealed = cipher.seal("gho_abc123")

    assert "gho_abc123" not in sealed
    assert cipher.open(sealed) == "gho_abc123"


def test_sealing_is_randomized(cipher: TokenCipher) -> None:
    assert cipher.seal("gho_abc123") != cipher.seal("gho_abc123")


def test_other_key_cannot_open(cipher: TokenCipher) -> None:
    other = TokenCipher(token_key_from_secret("different"))

    with pytest.raises(TokenCipherError):
        other.open(cipher.seal("gho_abc123"))


@pytest.mark.parametrize("garbage", ["", "AAAA", "not base64 !!", "x" * 64])
def test_garbage_fails_to_open(cipher: TokenCipher, garbage: str) -> None:
    with pytest.raises(TokenCipherError):
        cipher.open(garbage)


def test_key_length_is_checked() -> None:
    with pytest.raises(ValueError):
        TokenCipher(b"short")
