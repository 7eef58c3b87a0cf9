# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Public key encryption of small payloads (ECIES on secp256k1).

The sender generates an ephemeral key pair, computes the ECDH secret with
the recipient key and derives a ChaCha20-Poly1305 key from it using
HKDF-SHA256 bound to both public keys. The sealed box holds the ephemeral
public key and the nonce followed by the authenticated ciphertext.
"""

from secrets import token_bytes as secure_random_bytes

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from precore.wire.datamodel import Opaque32Adapter
from precore.wire.elements import AnnotatedStructure, Element
from precore.wire.exceptions import DecryptionError

from .keys import PublicKey, SecretKey

__all__ = 'SealedBox', 'seal', 'unseal'


NONCE_SIZE = 12
TAG_SIZE = 16

_KDF_INFO = b'precore/sealed-box'


class SealedBox(AnnotatedStructure):
    ephemeral_key: Element[PublicKey] = Element(PublicKey)
    ciphertext: Element[bytes] = Element(bytes, adapter=Opaque32Adapter)


def _derive_key(shared_secret: bytes, ephemeral_key: PublicKey, recipient_key: PublicKey) -> bytes:
    kdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_KDF_INFO + ephemeral_key + recipient_key)
    return kdf.derive(shared_secret)


def seal(recipient_key: PublicKey, plaintext: bytes, associated_data: bytes = b'') -> SealedBox:
    """Encrypt plaintext so that only the owner of recipient_key can read it"""
    ephemeral_secret = SecretKey.random()
    ephemeral_key = ephemeral_secret.public_key()
    key = _derive_key(ephemeral_secret.exchange(recipient_key), ephemeral_key, recipient_key)
    nonce = secure_random_bytes(NONCE_SIZE)
    return SealedBox(ephemeral_key=ephemeral_key, ciphertext=nonce + ChaCha20Poly1305(key).encrypt(nonce, plaintext, associated_data))


def unseal(secret_key: SecretKey, box: SealedBox, associated_data: bytes = b'') -> bytes:
    """Decrypt a sealed box. Raise DecryptionError if it cannot be authenticated"""
    if len(box.ciphertext) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError('The sealed box ciphertext is too short')
    key = _derive_key(secret_key.exchange(box.ephemeral_key), box.ephemeral_key, secret_key.public_key())
    nonce, ciphertext = box.ciphertext[:NONCE_SIZE], box.ciphertext[NONCE_SIZE:]
    try:
        return ChaCha20Poly1305(key).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as exc:
        raise DecryptionError('Failed to authenticate the sealed box (wrong key, associated data or tampered ciphertext)') from exc
