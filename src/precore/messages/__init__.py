# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
The messages exchanged by the nodes of the re-encryption network.

Each top level message is a ProtocolObject with its own brand and version,
serialized with to_bytes() and parsed with from_bytes(). Structures that
only appear nested inside other messages (the signed payloads and the
sealed contents) are plain structures without an envelope.

Signatures always cover the canonical encoding of the signed fields, and
the signing capability is only used for the duration of the call that
produces the signature.
"""

import hashlib
import logging
from collections.abc import Iterable, Mapping, Sequence
from io import BytesIO
from typing import Self

from precore.trust import (
    Address,
    Capsule,
    CapsuleFrag,
    IdentityEvidence,
    KeyFrag,
    PRECapability,
    PublicKey,
    SealedBox,
    SecretKey,
    Signature,
    SigningCapability,
    derive_worker_address,
    seal,
    unseal,
)
from precore.wire.datamodel import FixedSize, Opaque16Adapter, Opaque32Adapter, String16Adapter, String32Adapter, UInt8Adapter, UInt16Adapter, UInt32Adapter, make_variable_length_list_type
from precore.wire.elements import AnnotatedStructure, Element, ListElement, MappingElement, OptionalElement, Structure
from precore.wire.exceptions import (
    AddressDerivationError,
    FragmentCountMismatch,
    InvalidThreshold,
    SignatureMismatch,
    SignerKeyMismatch,
    ThresholdExceedsDestinations,
    TrailingBytes,
    VerificationError,
)
from precore.wire.versioning import ProtocolObject, Version

from .dkg import FerveoVariant, ThresholdDecryptionRequest, ThresholdDecryptionResponse

__all__ = (  # noqa: RUF022
    'HRAC',
    'FleetStateChecksum',

    'MessageKit',
    'AuthorizedKeyFrag',
    'EncryptedKeyFrag',
    'TreasureMap',
    'AuthorizedTreasureMap',
    'EncryptedTreasureMap',
    'ReencryptionRequest',
    'ReencryptionResponse',
    'RetrievalKit',
    'RevocationOrder',
    'NodeMetadataPayload',
    'NodeMetadata',
    'MetadataRequest',
    'MetadataResponsePayload',
    'MetadataResponse',

    'FerveoVariant',
    'ThresholdDecryptionRequest',
    'ThresholdDecryptionResponse',
)


log = logging.getLogger(__name__)


# Helpers

CapsuleList = make_variable_length_list_type(Capsule, maxsize=2**32 - 1)
CapsuleFragList = make_variable_length_list_type(CapsuleFrag, maxsize=2**32 - 1)


def _read_sealed_contents[T: Structure](structure_type: type[T], data: bytes) -> T:
    buffer = BytesIO(data)
    instance = structure_type.from_wire(buffer)
    if buffer.tell() < len(data):
        raise TrailingBytes(f'Found {len(data) - buffer.tell()} trailing bytes after the sealed {structure_type.__qualname__}')
    return instance


# Fixed size identifiers

class HRAC(FixedSize, size=16):
    """Hashed resource access code, identifying a policy by its publisher, recipient and label"""

    @classmethod
    def derive(cls, publisher_verifying_key: PublicKey, recipient_verifying_key: PublicKey, label: bytes) -> Self:
        return cls(hashlib.sha3_256(publisher_verifying_key + recipient_verifying_key + label).digest()[:cls._size_])


class FleetStateChecksum(FixedSize, size=32):
    """A digest of the node metadata known to a node, used to detect changes in the fleet"""

    @classmethod
    def from_nodes(cls, other_nodes: Iterable['NodeMetadata'], this_node: 'NodeMetadata | None' = None) -> Self:
        digest = hashlib.sha3_256()
        if this_node is not None:
            digest.update(this_node.to_bytes())
        for node in sorted(other_nodes, key=lambda item: item.payload.staker_address):
            digest.update(node.to_bytes())
        return cls(digest.digest())


# Encrypted messages

class MessageKit(ProtocolObject, brand=b'MKit', version=Version(1, 0), forward_compatible=True):
    capsule: Element[Capsule] = Element(Capsule)
    ciphertext: Element[bytes] = Element(bytes, adapter=Opaque32Adapter)

    @classmethod
    def seal(cls, pre: PRECapability, policy_encrypting_key: PublicKey, plaintext: bytes) -> Self:
        capsule, ciphertext = pre.encrypt(policy_encrypting_key, plaintext)
        return cls(capsule=capsule, ciphertext=ciphertext)

    def decrypt(self, pre: PRECapability, secret_key: SecretKey) -> bytes:
        return pre.decrypt_original(secret_key, self.capsule, self.ciphertext)

    def decrypt_reencrypted(self, pre: PRECapability, secret_key: SecretKey, policy_encrypting_key: PublicKey, cfrags: Sequence[CapsuleFrag]) -> bytes:
        return pre.decrypt_reencrypted(secret_key, policy_encrypting_key, self.capsule, cfrags, self.ciphertext)


class AuthorizedKeyFrag(AnnotatedStructure):
    signature: Element[Signature] = Element(Signature)
    kfrag: Element[KeyFrag] = Element(KeyFrag)

    @staticmethod
    def signed_message(hrac: HRAC, kfrag: KeyFrag) -> bytes:
        return hrac + kfrag.to_wire()


class EncryptedKeyFrag(ProtocolObject, brand=b'EKFr', version=Version(1, 0)):
    """A key fragment signed by the publisher and sealed for the node that will hold it"""

    sealed: Element[SealedBox] = Element(SealedBox)

    @classmethod
    def new(cls, signer: SigningCapability, recipient_key: PublicKey, hrac: HRAC, kfrag: KeyFrag) -> Self:
        signature = signer.sign(AuthorizedKeyFrag.signed_message(hrac, kfrag))
        authorized = AuthorizedKeyFrag(signature=signature, kfrag=kfrag)
        return cls(sealed=seal(recipient_key, authorized.to_wire(), associated_data=hrac))

    def decrypt(self, secret_key: SecretKey, hrac: HRAC, publisher_verifying_key: PublicKey) -> KeyFrag:
        authorized = _read_sealed_contents(AuthorizedKeyFrag, unseal(secret_key, self.sealed, associated_data=hrac))
        if not publisher_verifying_key.verify(AuthorizedKeyFrag.signed_message(hrac, authorized.kfrag), authorized.signature):
            raise SignatureMismatch('The key fragment was not signed by the publisher')
        return authorized.kfrag


class TreasureMap(ProtocolObject, brand=b'TMap', version=Version(1, 0)):
    """The assignment of the policy key fragments to the nodes that hold them"""

    threshold: Element[int] = Element(int, adapter=UInt8Adapter)
    hrac: Element[HRAC] = Element(HRAC)
    destinations: MappingElement[Address, EncryptedKeyFrag] = MappingElement(Address, EncryptedKeyFrag)
    policy_encrypting_key: Element[PublicKey] = Element(PublicKey)
    publisher_verifying_key: Element[PublicKey] = Element(PublicKey)

    def _validate_(self) -> None:
        if self.threshold < 1:
            raise InvalidThreshold('The threshold must be at least 1')
        if self.threshold > len(self.destinations):
            raise ThresholdExceedsDestinations(f'The threshold ({self.threshold}) exceeds the number of destinations ({len(self.destinations)})')

    @classmethod
    def new(cls, signer: SigningCapability, hrac: HRAC, policy_encrypting_key: PublicKey, assigned_kfrags: Mapping[Address, tuple[PublicKey, KeyFrag]], threshold: int) -> Self:
        """
        Create a treasure map from the key fragments assigned to each node,
        given as a mapping from the node staker address to the node encrypting
        key and the key fragment for that node.
        """
        if threshold < 1:
            raise InvalidThreshold('The threshold must be at least 1')
        if threshold > len(assigned_kfrags):
            raise ThresholdExceedsDestinations(f'The threshold ({threshold}) exceeds the number of destinations ({len(assigned_kfrags)})')
        destinations = {address: EncryptedKeyFrag.new(signer, encrypting_key, hrac, kfrag) for address, (encrypting_key, kfrag) in assigned_kfrags.items()}
        return cls(
            threshold=threshold,
            hrac=hrac,
            destinations=destinations,
            policy_encrypting_key=policy_encrypting_key,
            publisher_verifying_key=signer.verifying_key,
        )

    def encrypt(self, signer: SigningCapability, recipient_key: PublicKey) -> 'EncryptedTreasureMap':
        signature = signer.sign(AuthorizedTreasureMap.signed_message(recipient_key, self))
        authorized = AuthorizedTreasureMap(signature=signature, treasure_map=self)
        return EncryptedTreasureMap(sealed=seal(recipient_key, authorized.to_wire()))


class AuthorizedTreasureMap(AnnotatedStructure):
    signature: Element[Signature] = Element(Signature)
    treasure_map: Element[TreasureMap] = Element(TreasureMap)

    @staticmethod
    def signed_message(recipient_key: PublicKey, treasure_map: TreasureMap) -> bytes:
        return recipient_key + treasure_map.to_bytes()


class EncryptedTreasureMap(ProtocolObject, brand=b'EMap', version=Version(1, 0)):
    sealed: Element[SealedBox] = Element(SealedBox)

    def decrypt(self, secret_key: SecretKey, publisher_verifying_key: PublicKey) -> TreasureMap:
        authorized = _read_sealed_contents(AuthorizedTreasureMap, unseal(secret_key, self.sealed))
        treasure_map = authorized.treasure_map
        if treasure_map.publisher_verifying_key != publisher_verifying_key:
            raise SignatureMismatch('The treasure map was published by a different key')
        if not publisher_verifying_key.verify(AuthorizedTreasureMap.signed_message(secret_key.public_key(), treasure_map), authorized.signature):
            raise SignatureMismatch('The treasure map was not signed by the publisher for this recipient')
        return treasure_map


# Re-encryption

class ReencryptionRequest(ProtocolObject, brand=b'ReRq', version=Version(1, 1), forward_compatible=True):
    capsules: ListElement[Capsule] = ListElement(Capsule)
    hrac: Element[HRAC] = Element(HRAC)
    encrypted_kfrag: Element[EncryptedKeyFrag] = Element(EncryptedKeyFrag)
    publisher_verifying_key: Element[PublicKey] = Element(PublicKey)
    bob_verifying_key: Element[PublicKey] = Element(PublicKey)

    # added in 1.1
    conditions: OptionalElement[str] = OptionalElement(str, adapter=String32Adapter, since=1)
    context: OptionalElement[str] = OptionalElement(str, adapter=String32Adapter, since=1)


class ReencryptionResponse(ProtocolObject, brand=b'ReRs', version=Version(1, 0)):
    """The capsule fragments produced by a node, in the same order as the requested capsules"""

    cfrags: ListElement[CapsuleFrag] = ListElement(CapsuleFrag)
    signature: Element[Signature] = Element(Signature)

    @staticmethod
    def signed_message(capsules: Sequence[Capsule], cfrags: Sequence[CapsuleFrag]) -> bytes:
        return CapsuleList(capsules).to_wire() + CapsuleFragList(cfrags).to_wire()

    @classmethod
    def new(cls, signer: SigningCapability, capsules: Sequence[Capsule], cfrags: Sequence[CapsuleFrag]) -> Self:
        if len(capsules) != len(cfrags):
            raise FragmentCountMismatch(f'The number of capsule fragments ({len(cfrags)}) does not match the number of capsules ({len(capsules)})')
        return cls(cfrags=cfrags, signature=signer.sign(cls.signed_message(capsules, cfrags)))

    @classmethod
    def for_request(cls, signer: SigningCapability, request: ReencryptionRequest, cfrags: Sequence[CapsuleFrag]) -> Self:
        return cls.new(signer, request.capsules, cfrags)

    def verify(self, capsules: Sequence[Capsule], verifying_key: PublicKey) -> list[CapsuleFrag]:
        """Return the capsule fragments if the response was signed by the node for these capsules"""
        if len(capsules) != len(self.cfrags):
            raise VerificationError(f'The number of capsule fragments ({len(self.cfrags)}) does not match the number of capsules ({len(capsules)})')
        if not verifying_key.verify(self.signed_message(capsules, self.cfrags), self.signature):
            log.debug('Re-encryption response signature does not match the node key %s', verifying_key.hex())
            raise SignatureMismatch('The re-encryption response was not signed by the node for these capsules')
        return list(self.cfrags)


class RetrievalKit(ProtocolObject, brand=b'RKit', version=Version(1, 0), forward_compatible=True):
    """A capsule together with the addresses of the nodes that were already queried for it"""

    capsule: Element[Capsule] = Element(Capsule)
    queried_addresses: ListElement[Address] = ListElement(Address, default=())

    def _validate_(self) -> None:
        addresses = self.queried_addresses
        if any(current >= following for current, following in zip(addresses, addresses[1:], strict=False)):
            raise ValueError('The queried addresses must be unique and sorted in increasing order')

    @classmethod
    def new(cls, capsule: Capsule, queried_addresses: Iterable[Address] = ()) -> Self:
        return cls(capsule=capsule, queried_addresses=sorted(set(queried_addresses)))

    @classmethod
    def from_message_kit(cls, message_kit: MessageKit) -> Self:
        return cls(capsule=message_kit.capsule, queried_addresses=())


class RevocationOrder(ProtocolObject, brand=b'Revo', version=Version(1, 0)):
    """An order from the policy publisher for the node with the given address to drop its key fragment"""

    staker_address: Element[Address] = Element(Address)
    signature: Element[Signature] = Element(Signature)

    @classmethod
    def new(cls, signer: SigningCapability, staker_address: Address) -> Self:
        return cls(staker_address=staker_address, signature=signer.sign(staker_address.to_wire()))

    def verify(self, expected_signer: PublicKey) -> bool:
        return expected_signer.verify(self.staker_address.to_wire(), self.signature)


# Node metadata

class NodeMetadataPayload(AnnotatedStructure):
    staker_address: Element[Address] = Element(Address)
    domain: Element[str] = Element(str, adapter=String16Adapter)
    timestamp_epoch: Element[int] = Element(int, adapter=UInt32Adapter)
    verifying_key: Element[PublicKey] = Element(PublicKey)
    encrypting_key: Element[PublicKey] = Element(PublicKey)
    certificate_der: Element[bytes] = Element(bytes, adapter=Opaque16Adapter)
    host: Element[str] = Element(str, adapter=String16Adapter)
    port: Element[int] = Element(int, adapter=UInt16Adapter)
    decentralized_identity_evidence: Element[IdentityEvidence] = Element(IdentityEvidence)

    def derive_worker_address(self) -> Address:
        return derive_worker_address(self.decentralized_identity_evidence, self.verifying_key)


class NodeMetadata(ProtocolObject, brand=b'NdMd', version=Version(1, 0)):
    """The signed metadata a node publishes about itself"""

    payload: Element[NodeMetadataPayload] = Element(NodeMetadataPayload)
    signature: Element[Signature] = Element(Signature)

    @classmethod
    def new(cls, signer: SigningCapability, payload: NodeMetadataPayload) -> Self:
        if signer.verifying_key != payload.verifying_key:
            raise SignerKeyMismatch('The node metadata must be signed with the key in the payload verifying_key')
        return cls(payload=payload, signature=signer.sign(payload.to_wire()))

    def verify(self) -> bool:
        """
        Return True if the payload is signed by its verifying key and the
        identity evidence links that key to the payload staker address.
        """
        payload = self.payload
        if not payload.verifying_key.verify(payload.to_wire(), self.signature):
            log.debug('Node metadata for %s has an invalid signature', payload.staker_address)
            return False
        try:
            address = payload.derive_worker_address()
        except AddressDerivationError as exc:
            log.debug('Node metadata for %s has invalid identity evidence: %s', payload.staker_address, exc)
            return False
        if address != payload.staker_address:
            log.debug('Node metadata for %s has identity evidence for %s', payload.staker_address, address)
            return False
        return True


class MetadataRequest(ProtocolObject, brand=b'MdRq', version=Version(1, 0), forward_compatible=True):
    fleet_state_checksum: Element[FleetStateChecksum] = Element(FleetStateChecksum)
    announce_nodes: ListElement[NodeMetadata] = ListElement(NodeMetadata, default=())


class MetadataResponsePayload(AnnotatedStructure):
    timestamp_epoch: Element[int] = Element(int, adapter=UInt32Adapter)
    announce_nodes: ListElement[NodeMetadata] = ListElement(NodeMetadata, default=())


class MetadataResponse(ProtocolObject, brand=b'MdRs', version=Version(1, 0)):
    signature: Element[Signature] = Element(Signature)
    payload: Element[MetadataResponsePayload] = Element(MetadataResponsePayload)

    @classmethod
    def new(cls, signer: SigningCapability, payload: MetadataResponsePayload) -> Self:
        return cls(signature=signer.sign(payload.to_wire()), payload=payload)

    def verify(self, verifying_key: PublicKey) -> MetadataResponsePayload:
        if not verifying_key.verify(self.payload.to_wire(), self.signature):
            raise SignatureMismatch('The metadata response was not signed by the given key')
        return self.payload

