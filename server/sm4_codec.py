"""
SM4 envelope codec shared with the SmsForwarder agent running on each phone.

The agent encrypts with SM4-CBC, PKCS#7 padding and a fixed IV, and exchanges
hex text over HTTP. Both sides must agree byte for byte, so the IV below is
part of the wire contract and must not be randomized.
"""
import binascii

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

BLOCK_SIZE = 16
KEY_SIZE = 16

# Fixed IV used by SmsForwarder
SM4_IV = bytes([3, 5, 6, 9, 6, 9, 5, 9, 3, 5, 6, 9, 6, 9, 5, 9])


class CodecError(ValueError):
    """Base class for envelope encoding failures"""


class InvalidKeyError(CodecError):
    pass


class InvalidPaddingError(CodecError):
    pass


class InvalidCiphertextError(CodecError):
    pass


def _decode_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex.strip())
    except (ValueError, AttributeError) as e:
        raise InvalidKeyError(f"sm4 key is not valid hex: {e}") from e

    if len(key) != KEY_SIZE:
        raise InvalidKeyError("sm4 key must be 16 bytes")
    return key


def _cipher(key: bytes) -> Cipher:
    return Cipher(algorithms.SM4(key), modes.CBC(SM4_IV))


def encrypt_hex(key_hex: str, plaintext: bytes) -> str:
    """
    Encrypt plaintext with the device key and return lowercase hex ciphertext.

    Args:
        key_hex: 32 hex characters (16-byte SM4 key)
        plaintext: Raw bytes, usually a compact JSON envelope

    Returns:
        Hex-encoded ciphertext

    Raises:
        InvalidKeyError: If the key is not hex or not 16 bytes long
    """
    key = _decode_key(key_hex)

    padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = _cipher(key).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return ciphertext.hex()


def decrypt_hex(key_hex: str, cipher_hex: str) -> bytes:
    """
    Decrypt hex ciphertext produced by the agent (or by encrypt_hex).

    Only the trailing pad byte is checked, the same way the agent checks it.

    Raises:
        InvalidKeyError: If the key is not hex or not 16 bytes long
        InvalidCiphertextError: If the input is not hex or not whole blocks
        InvalidPaddingError: If the trailing pad byte is out of range
    """
    key = _decode_key(key_hex)

    try:
        ciphertext = binascii.unhexlify(cipher_hex.strip())
    except (binascii.Error, ValueError, AttributeError) as e:
        raise InvalidCiphertextError(f"ciphertext is not valid hex: {e}") from e

    if not ciphertext or len(ciphertext) % BLOCK_SIZE != 0:
        raise InvalidCiphertextError("ciphertext is not a multiple of block size")

    decryptor = _cipher(key).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    return _unpad(padded)


def _unpad(data: bytes) -> bytes:
    if not data or len(data) % BLOCK_SIZE != 0:
        raise InvalidPaddingError("invalid padding size")

    pad = data[-1]
    if pad == 0 or pad > BLOCK_SIZE or pad > len(data):
        raise InvalidPaddingError("invalid padding")

    return data[:-pad]
