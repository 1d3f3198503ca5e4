"""
Tests for the SM4 envelope codec.
"""
import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from sm4_codec import (
    encrypt_hex, decrypt_hex, SM4_IV, BLOCK_SIZE,
    CodecError, InvalidKeyError, InvalidCiphertextError, InvalidPaddingError
)

KEY = "0123456789abcdef0123456789abcdef"

# GB/T 32907 reference key; E(0123456789abcdeffedcba9876543210) = 681edf34...
REFERENCE_KEY = "0123456789abcdeffedcba9876543210"


def encrypt_unpadded(block: bytes) -> str:
    encryptor = Cipher(algorithms.SM4(bytes.fromhex(KEY)), modes.CBC(SM4_IV)).encryptor()
    return (encryptor.update(block) + encryptor.finalize()).hex()


class TestEncrypt:
    def test_first_block_matches_reference_vector_through_fixed_iv(self):
        """Plaintext chosen so P xor IV equals the reference block"""
        reference_block = bytes.fromhex("0123456789abcdeffedcba9876543210")
        plaintext = bytes(a ^ b for a, b in zip(reference_block, SM4_IV))
        assert plaintext.hex() == "0226436e8fa2c8e6fdd9bc91705d3719"

        cipher_hex = encrypt_hex(REFERENCE_KEY, plaintext)

        assert cipher_hex[:32] == "681edf34d206965e86b3e94f536e4246"

    def test_full_block_gets_extra_padding_block(self):
        cipher_hex = encrypt_hex(KEY, b"x" * BLOCK_SIZE)
        assert len(bytes.fromhex(cipher_hex)) == 2 * BLOCK_SIZE

    def test_output_is_lowercase_hex(self):
        cipher_hex = encrypt_hex(KEY, b'{"data":{},"timestamp":1,"sign":""}')
        assert cipher_hex == cipher_hex.lower()
        assert len(cipher_hex) % (BLOCK_SIZE * 2) == 0

    def test_fixed_iv_makes_output_deterministic(self):
        assert encrypt_hex(KEY, b"hello") == encrypt_hex(KEY, b"hello")

    def test_different_keys_give_different_ciphertext(self):
        other_key = "ffeeddccbbaa99887766554433221100"
        assert encrypt_hex(KEY, b"hello") != encrypt_hex(other_key, b"hello")


class TestRoundTrip:
    @pytest.mark.parametrize("plaintext", [
        b"",
        b"a",
        "短信内容 with unicode".encode("utf-8"),
        b"\x00" * 31,
        b'{"code":200,"msg":"success","data":[],"timestamp":1700000000000}',
    ])
    def test_decrypt_inverts_encrypt(self, plaintext):
        assert decrypt_hex(KEY, encrypt_hex(KEY, plaintext)) == plaintext

    def test_decrypt_accepts_uppercase_and_surrounding_whitespace(self):
        cipher_hex = encrypt_hex(KEY, b"hi")
        assert decrypt_hex(KEY, f"  {cipher_hex.upper()}\n") == b"hi"


class TestKeyValidation:
    @pytest.mark.parametrize("bad_key", [
        "0123456789abcdef",                      # 8 bytes
        "0123456789abcdef0123456789abcdef00",    # 17 bytes
        "",
        "zz23456789abcdef0123456789abcdef",      # not hex
    ])
    def test_encrypt_rejects_bad_key(self, bad_key):
        with pytest.raises(InvalidKeyError):
            encrypt_hex(bad_key, b"payload")

    def test_decrypt_rejects_short_key_before_touching_ciphertext(self):
        with pytest.raises(InvalidKeyError):
            decrypt_hex("0123456789abcdef", "not even hex")


class TestMalformedCiphertext:
    def test_non_hex_input(self):
        with pytest.raises(InvalidCiphertextError):
            decrypt_hex(KEY, "this is not hex!")

    def test_length_not_multiple_of_block(self):
        with pytest.raises(InvalidCiphertextError):
            decrypt_hex(KEY, "00" * 11)

    def test_empty_input(self):
        with pytest.raises(InvalidCiphertextError):
            decrypt_hex(KEY, "")

    @pytest.mark.parametrize("last_byte", [0x00, 0x11])
    def test_out_of_range_pad_byte(self, last_byte):
        block = b"A" * (BLOCK_SIZE - 1) + bytes([last_byte])
        cipher_hex = encrypt_unpadded(block)

        with pytest.raises(InvalidPaddingError):
            decrypt_hex(KEY, cipher_hex)

    def test_pad_byte_at_block_size_is_accepted(self):
        block = bytes([BLOCK_SIZE]) * BLOCK_SIZE
        cipher_hex = encrypt_unpadded(block)

        assert decrypt_hex(KEY, cipher_hex) == b""

    def test_wrong_key_fails_padding_or_yields_garbage(self):
        cipher_hex = encrypt_hex(KEY, b"secret message")
        other_key = "ffeeddccbbaa99887766554433221100"
        try:
            assert decrypt_hex(other_key, cipher_hex) != b"secret message"
        except InvalidPaddingError:
            pass

    def test_codec_errors_are_value_errors(self):
        assert issubclass(CodecError, ValueError)
        assert issubclass(InvalidPaddingError, CodecError)
