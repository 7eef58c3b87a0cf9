# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from .exceptions import (
    AddressDerivationError,
    ConstructionError,
    DecodeError,
    DecryptionError,
    FragmentCountMismatch,
    IncompatibleVersion,
    InvalidEncoding,
    InvalidThreshold,
    SignatureMismatch,
    SignerKeyMismatch,
    ThresholdExceedsDestinations,
    TrailingBytes,
    TruncatedInput,
    UnknownEnvelope,
    UnsupportedMinorVersion,
    VerificationError,
)
from .versioning import Brand, Decoder, Envelope, ProtocolObject, Version, decode, unwrap, wrap

__all__ = (  # noqa: RUF022
    'Brand',
    'Decoder',
    'Envelope',
    'ProtocolObject',
    'Version',
    'decode',
    'unwrap',
    'wrap',

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
