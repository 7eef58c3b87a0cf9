# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Elliptic curve keys and signatures on the secp256k1 curve.

Public keys are 33 bytes compressed points. Signatures are ECDSA over the
SHA-256 digest of the message, represented as the 64 bytes concatenation of
r and s (both big-endian), with s normalized to the lower half of the group
order. Signatures with a high s value are rejected.
"""

from collections.abc import Buffer
from os import PathLike
from pathlib import Path
from tempfile import NamedTemporaryFile
from types import TracebackType
from typing import Protocol, Self, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, Encoding, NoEncryption, PrivateFormat, PublicFormat, load_pem_private_key

from precore.wire.datamodel import FixedSize

__all__ = (  # noqa: RUF022
    'CURVE',
    'CURVE_ORDER',

    'PublicKey',
    'Signature',
    'SecretKey',
    'Signer',
    'SigningCapability',

    'sign',
    'verify',

    'load_secret_key',
    'save_secret_key',
)


CURVE = ec.SECP256K1()
CURVE_ORDER = 0xFFFFFFFF_FFFFFFFF_FFFFFFFF_FFFFFFFE_BAAEDCE6_AF48A03B_BFD25E8C_D0364141

_SIGNATURE_ALGORITHM = ec.ECDSA(hashes.SHA256())


class PublicKey(FixedSize, size=33):
    """A compressed secp256k1 public key"""

    def __new__(cls, data: Buffer = b'', /) -> Self:
        instance = super().__new__(cls, data)
        if instance[0] not in (2, 3):
            raise ValueError('A public key must be a compressed curve point')
        ec.EllipticCurvePublicKey.from_encoded_point(CURVE, instance)  # raises ValueError for points not on the curve
        return instance

    @classmethod
    def from_cryptography(cls, key: ec.EllipticCurvePublicKey) -> Self:
        if not isinstance(key.curve, ec.SECP256K1):
            raise ValueError(f'Expected a secp256k1 key, got a {key.curve.name} key')
        return cls(key.public_bytes(Encoding.X962, PublicFormat.CompressedPoint))

    def to_cryptography(self) -> ec.EllipticCurvePublicKey:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, self)

    def to_uncompressed(self) -> bytes:
        return self.to_cryptography().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)

    def verify(self, message: bytes, signature: 'Signature') -> bool:
        """Return True if signature is a valid signature of message by this key"""
        r, s = signature.r, signature.s
        try:
            self.to_cryptography().verify(encode_dss_signature(r, s), message, _SIGNATURE_ALGORITHM)
        except InvalidSignature:
            return False
        return True


class Signature(FixedSize, size=64):
    """An ECDSA signature encoded as r || s, with s in the lower half of the group order"""

    def __new__(cls, data: Buffer = b'', /) -> Self:
        instance = super().__new__(cls, data)
        r, s = instance.r, instance.s
        if not 0 < r < CURVE_ORDER or not 0 < s < CURVE_ORDER:
            raise ValueError('The signature values are out of range')
        if s > CURVE_ORDER // 2:
            raise ValueError('The signature is not normalized (s is in the upper half of the group order)')
        return instance

    @classmethod
    def from_der(cls, data: bytes) -> Self:
        r, s = decode_dss_signature(data)
        if s > CURVE_ORDER // 2:
            s = CURVE_ORDER - s
        return cls(r.to_bytes(32, byteorder='big') + s.to_bytes(32, byteorder='big'))

    @property
    def r(self) -> int:
        return int.from_bytes(self[:32], byteorder='big')

    @property
    def s(self) -> int:
        return int.from_bytes(self[32:], byteorder='big')


class SecretKey:
    """A secp256k1 private key"""

    __slots__ = '_key',

    def __init__(self, key: ec.EllipticCurvePrivateKey, /) -> None:
        if not isinstance(key.curve, ec.SECP256K1):
            raise ValueError(f'Expected a secp256k1 key, got a {key.curve.name} key')
        self._key = key

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(<hidden>)'

    @classmethod
    def random(cls) -> Self:
        return cls(ec.generate_private_key(CURVE))

    @classmethod
    def from_secret_bytes(cls, data: bytes) -> Self:
        if len(data) != 32:
            raise ValueError(f'A secret key must have 32 bytes, got {len(data)}')
        return cls(ec.derive_private_key(int.from_bytes(data, byteorder='big'), CURVE))

    def to_secret_bytes(self) -> bytes:
        return self._key.private_numbers().private_value.to_bytes(32, byteorder='big')

    def public_key(self) -> PublicKey:
        return PublicKey.from_cryptography(self._key.public_key())

    def exchange(self, public_key: PublicKey) -> bytes:
        """Compute the ECDH shared secret with the given public key"""
        return self._key.exchange(ec.ECDH(), public_key.to_cryptography())

    def sign(self, message: bytes) -> Signature:
        return Signature.from_der(self._key.sign(message, _SIGNATURE_ALGORITHM))


@runtime_checkable
class SigningCapability(Protocol):
    """Something that can produce signatures verifiable with its verifying key"""

    @property
    def verifying_key(self) -> PublicKey: ...

    def sign(self, message: bytes) -> Signature: ...


class Signer:
    """
    A signing capability backed by a secret key. When used as a context
    manager the secret key is released on exit, after which the signer can
    no longer be used to sign.
    """

    def __init__(self, secret_key: SecretKey, /) -> None:
        self._secret_key: SecretKey | None = secret_key
        self._verifying_key = secret_key.public_key()

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(verifying_key={self._verifying_key!r}, closed={self.closed!r})'

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: TracebackType | None) -> None:
        self.close()

    @property
    def verifying_key(self) -> PublicKey:
        return self._verifying_key

    @property
    def closed(self) -> bool:
        return self._secret_key is None

    def close(self) -> None:
        self._secret_key = None

    def sign(self, message: bytes) -> Signature:
        if self._secret_key is None:
            raise ValueError('Cannot sign with a closed signer')
        return self._secret_key.sign(message)


def sign(signer: SigningCapability, message: bytes) -> Signature:
    return signer.sign(message)


def verify(verifying_key: PublicKey, message: bytes, signature: Signature) -> bool:
    return verifying_key.verify(message, signature)


def load_secret_key(path: str | PathLike[str], *, password: str | None = None) -> SecretKey:
    key_data = Path(path).expanduser().read_bytes()
    key = load_pem_private_key(key_data, password=password.encode() if password is not None else None)
    match key:
        case ec.EllipticCurvePrivateKey():
            return SecretKey(key)
        case _:
            raise TypeError(f'Unsupported key type: {key.__class__.__qualname__!r} (expected a secp256k1 EllipticCurvePrivateKey)')


def save_secret_key(key: SecretKey, path: str | PathLike[str], *, password: str | None = None) -> None:
    key_encryption = BestAvailableEncryption(password.encode()) if password is not None else NoEncryption()
    key_data = key._key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, key_encryption)  # noqa: SLF001
    path = Path(path).expanduser()
    with NamedTemporaryFile(dir=path.parent, delete=False) as tempfile:
        tempfile.write(key_data)
    Path(tempfile.name).replace(path)
