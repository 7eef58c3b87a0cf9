# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from typing import Self

__all__ = (  # noqa: RUF022
    'DecodeError',
    'TruncatedInput',
    'TrailingBytes',
    'UnknownEnvelope',
    'IncompatibleVersion',
    'UnsupportedMinorVersion',
    'InvalidEncoding',

    'ConstructionError',
    'ThresholdExceedsDestinations',
    'InvalidThreshold',
    'FragmentCountMismatch',
    'SignerKeyMismatch',

    'VerificationError',
    'SignatureMismatch',
    'AddressDerivationError',
    'DecryptionError',
)


class DecodeError(ValueError):
    """Raised when bytes cannot be decoded into a value"""

    def in_field(self, owner: str, name: str) -> Self:
        """Return a copy of this error that names the field where it occurred"""
        error = self.__class__(f'Failed to read the {owner}.{name} element from wire: {self}')
        error.__cause__ = self
        return error


class TruncatedInput(DecodeError):
    """Raised when the buffer ends before a value is complete"""


class TrailingBytes(DecodeError):
    """Raised when bytes remain after a complete top-level message"""


class UnknownEnvelope(DecodeError):
    """Raised when the envelope brand is not the one expected or not known at all"""


class IncompatibleVersion(DecodeError):
    """Raised when the message major version differs from the decoder major version"""


class UnsupportedMinorVersion(DecodeError):
    """Raised when a newer minor version is received for a type that cannot preserve unknown fields"""


class InvalidEncoding(DecodeError):
    """Raised when the bytes are present but are not a valid canonical encoding"""


class ConstructionError(ValueError):
    """Raised when a message is built with values that break its invariants"""


class ThresholdExceedsDestinations(ConstructionError):
    pass


class InvalidThreshold(ConstructionError):
    pass


class FragmentCountMismatch(ConstructionError):
    pass


class SignerKeyMismatch(ConstructionError):
    pass


class VerificationError(ValueError):
    """Raised when a signature, an identity or a ciphertext fails to verify"""


class SignatureMismatch(VerificationError):
    pass


class AddressDerivationError(VerificationError):
    pass


class DecryptionError(VerificationError):
    pass
