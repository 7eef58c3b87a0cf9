# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Node identity evidence and staker addresses.

A node is operated by a staker, who is identified by a 20 bytes address
derived from the staker's (operator) public key. The operator vouches for
the node by signing the node's verifying key. The resulting evidence is
the operator public key followed by that signature (33 + 64 bytes), from
which anyone can recover the staker address after checking the signature.
"""

import logging
from typing import Self

from eth_hash.auto import keccak
from precore.wire.datamodel import FixedSize
from precore.wire.exceptions import AddressDerivationError

from .keys import PublicKey, Signature, SigningCapability

__all__ = 'EVIDENCE_PREFIX', 'Address', 'IdentityEvidence', 'address_of', 'derive_worker_address'


log = logging.getLogger(__name__)

EVIDENCE_PREFIX = b'\x19Node identity evidence:\n'


class Address(FixedSize, size=20):
    """A 20 bytes staker address"""

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}.from_hex({str(self)!r})'

    def __str__(self) -> str:
        return f'0x{self.hex()}'

    @classmethod
    def from_hex(cls, value: str) -> Self:
        return cls(bytes.fromhex(value.removeprefix('0x')))


class IdentityEvidence(FixedSize, size=97):
    """The operator public key followed by the operator signature over the node verifying key"""

    @classmethod
    def create(cls, operator: SigningCapability, verifying_key: PublicKey) -> Self:
        """Vouch for the node with the given verifying key on behalf of the operator"""
        return cls(operator.verifying_key + operator.sign(_evidence_message(verifying_key)))

    @property
    def operator_key(self) -> PublicKey:
        return PublicKey(self[:PublicKey._size_])

    @property
    def signature(self) -> Signature:
        return Signature(self[PublicKey._size_:])


def _evidence_message(verifying_key: PublicKey) -> bytes:
    return EVIDENCE_PREFIX + verifying_key


def address_of(public_key: PublicKey) -> Address:
    """Derive the account address of a public key from the Keccak-256 digest of its uncompressed point"""
    return Address(keccak(public_key.to_uncompressed()[1:])[-Address._size_:])


def derive_worker_address(evidence: bytes, verifying_key: PublicKey) -> Address:
    """
    Return the staker address of the operator that produced the evidence
    for the node with the given verifying key. Raise AddressDerivationError
    if the evidence is malformed or it was not produced for this key.
    """
    try:
        evidence = IdentityEvidence(evidence)
        operator_key, signature = evidence.operator_key, evidence.signature
    except ValueError as exc:
        raise AddressDerivationError(f'Malformed identity evidence: {exc}') from exc
    if not operator_key.verify(_evidence_message(verifying_key), signature):
        log.debug('Identity evidence from operator %s does not cover the node key %s', operator_key.hex(), verifying_key.hex())
        raise AddressDerivationError('The identity evidence was not produced for the given verifying key')
    return address_of(operator_key)
