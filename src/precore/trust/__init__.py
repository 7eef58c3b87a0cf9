# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from .identity import Address, IdentityEvidence, address_of, derive_worker_address
from .keys import PublicKey, SecretKey, Signature, Signer, SigningCapability, load_secret_key, save_secret_key, sign, verify
from .pre import Capsule, CapsuleFrag, KeyFrag, PRECapability
from .sealing import SealedBox, seal, unseal

__all__ = (  # noqa: RUF022
    'Address',
    'IdentityEvidence',
    'address_of',
    'derive_worker_address',

    'PublicKey',
    'SecretKey',
    'Signature',
    'Signer',
    'SigningCapability',
    'load_secret_key',
    'save_secret_key',
    'sign',
    'verify',

    'Capsule',
    'CapsuleFrag',
    'KeyFrag',
    'PRECapability',

    'SealedBox',
    'seal',
    'unseal',
)
