# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Interface to the threshold proxy re-encryption scheme.

The scheme itself is provided by an external library. The messages only
carry its artifacts, which are treated as opaque byte strings.
"""

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from precore.wire.datamodel import Opaque16

from .keys import PublicKey, SecretKey

__all__ = 'Capsule', 'CapsuleFrag', 'KeyFrag', 'PRECapability'


class Capsule(Opaque16):
    """The encapsulated symmetric key of a PRE ciphertext"""


class KeyFrag(Opaque16):
    """A re-encryption key fragment held by one node"""


class CapsuleFrag(Opaque16):
    """A capsule re-encrypted by one node using its key fragment"""


@runtime_checkable
class PRECapability(Protocol):
    def encrypt(self, public_key: PublicKey, plaintext: bytes) -> tuple[Capsule, bytes]: ...

    def decrypt_original(self, secret_key: SecretKey, capsule: Capsule, ciphertext: bytes) -> bytes: ...

    def decrypt_reencrypted(self, secret_key: SecretKey, policy_encrypting_key: PublicKey, capsule: Capsule, cfrags: Sequence[CapsuleFrag], ciphertext: bytes) -> bytes: ...
