# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from collections.abc import Callable, Sequence
from secrets import token_bytes

import pytest
from precore.messages import (
    HRAC,
    AuthorizedKeyFrag,
    EncryptedKeyFrag,
    EncryptedTreasureMap,
    FerveoVariant,
    FleetStateChecksum,
    MessageKit,
    MetadataRequest,
    MetadataResponse,
    MetadataResponsePayload,
    NodeMetadata,
    NodeMetadataPayload,
    ReencryptionRequest,
    ReencryptionResponse,
    RetrievalKit,
    RevocationOrder,
    ThresholdDecryptionRequest,
    ThresholdDecryptionResponse,
    TreasureMap,
)
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
    Signer,
    address_of,
    seal,
    unseal,
)
from precore.wire import (
    DecodeError,
    DecryptionError,
    FragmentCountMismatch,
    IncompatibleVersion,
    InvalidEncoding,
    InvalidThreshold,
    ProtocolObject,
    SignatureMismatch,
    SignerKeyMismatch,
    ThresholdExceedsDestinations,
    TrailingBytes,
    TruncatedInput,
    UnsupportedMinorVersion,
    VerificationError,
    Version,
    decode,
    unwrap,
    wrap,
)
from precore.wire.versioning import Decoder


class ToyPRE:
    """
    A stand-in for the PRE scheme: the capsule is the ephemeral key of a box
    sealed for the policy key and each capsule fragment is the policy secret.
    """

    def encrypt(self, public_key: PublicKey, plaintext: bytes) -> tuple[Capsule, bytes]:
        box = seal(public_key, plaintext)
        return Capsule(box.ephemeral_key), box.ciphertext

    def decrypt_original(self, secret_key: SecretKey, capsule: Capsule, ciphertext: bytes) -> bytes:
        return unseal(secret_key, SealedBox(ephemeral_key=PublicKey(capsule), ciphertext=ciphertext))

    def decrypt_reencrypted(self, secret_key: SecretKey, policy_encrypting_key: PublicKey, capsule: Capsule, cfrags: Sequence[CapsuleFrag], ciphertext: bytes) -> bytes:
        policy_secret = SecretKey.from_secret_bytes(cfrags[0])
        if policy_secret.public_key() != policy_encrypting_key:
            raise DecryptionError('The capsule fragments are not for this policy')
        return self.decrypt_original(policy_secret, capsule, ciphertext)


def flip_bit(data: bytes, position: int) -> bytes:
    return data[:position] + bytes([data[position] ^ 0x01]) + data[position + 1:]


def assert_every_bit_is_covered(data: bytes, accept: Callable[[bytes], object]) -> None:
    # flipping any single bit must make the message either undecodable or unverifiable
    for position in range(len(data)):
        with pytest.raises((DecodeError, VerificationError)):
            accept(flip_bit(data, position))


def make_node(domain: str = 'mainnet', operator: Signer | None = None, timestamp: int = 1700000000) -> NodeMetadata:
    operator = operator or Signer(SecretKey.random())
    node_signer = Signer(SecretKey.random())
    payload = NodeMetadataPayload(
        staker_address=address_of(operator.verifying_key),
        domain=domain,
        timestamp_epoch=timestamp,
        verifying_key=node_signer.verifying_key,
        encrypting_key=SecretKey.random().public_key(),
        certificate_der=b'certificate',
        host='node.example.com',
        port=9151,
        decentralized_identity_evidence=IdentityEvidence.create(operator, node_signer.verifying_key),
    )
    return NodeMetadata.new(node_signer, payload)


class Policy:
    def __init__(self, shares: int = 3, threshold: int = 2) -> None:
        self.publisher = Signer(SecretKey.random())
        self.recipient_key = SecretKey.random()
        self.policy_key = SecretKey.random()
        self.hrac = HRAC.derive(self.publisher.verifying_key, self.recipient_key.public_key(), b'label')
        self.node_keys = {Address(token_bytes(20)): SecretKey.random() for _ in range(shares)}
        self.kfrags = {address: KeyFrag(b'kfrag-%d' % index) for index, address in enumerate(self.node_keys)}
        self.assigned_kfrags = {address: (self.node_keys[address].public_key(), self.kfrags[address]) for address in self.node_keys}
        self.treasure_map = TreasureMap.new(self.publisher, self.hrac, self.policy_key.public_key(), self.assigned_kfrags, threshold)


def make_request(policy: Policy, capsules: Sequence[Capsule], **kw: object) -> ReencryptionRequest:
    address, node_key = next(iter(policy.node_keys.items()))
    return ReencryptionRequest(
        capsules=capsules,
        hrac=policy.hrac,
        encrypted_kfrag=policy.treasure_map.destinations[address],
        publisher_verifying_key=policy.publisher.verifying_key,
        bob_verifying_key=policy.recipient_key.public_key(),
        **kw,
    )


def sample_messages() -> list[ProtocolObject]:
    pre = ToyPRE()
    policy = Policy()
    node_signer = Signer(SecretKey.random())
    message_kit = MessageKit.seal(pre, policy.policy_key.public_key(), b'the message')
    capsules = [message_kit.capsule, Capsule(b'another capsule')]
    cfrags = [CapsuleFrag(b'cfrag 1'), CapsuleFrag(b'cfrag 2')]
    nodes = [make_node(), make_node()]
    return [
        message_kit,
        next(iter(policy.treasure_map.destinations.values())),
        policy.treasure_map,
        policy.treasure_map.encrypt(policy.publisher, policy.recipient_key.public_key()),
        make_request(policy, capsules),
        make_request(policy, capsules, conditions='{"chain": 1}', context='{}'),
        ReencryptionResponse.new(node_signer, capsules, cfrags),
        RetrievalKit.new(message_kit.capsule, [Address(token_bytes(20)) for _ in range(3)]),
        RevocationOrder.new(policy.publisher, next(iter(policy.node_keys))),
        nodes[0],
        MetadataRequest(fleet_state_checksum=FleetStateChecksum.from_nodes(nodes), announce_nodes=nodes),
        MetadataResponse.new(node_signer, MetadataResponsePayload(timestamp_epoch=1700000000, announce_nodes=nodes)),
        ThresholdDecryptionRequest(ritual_id=7, ciphertext=b'ciphertext', conditions='{}', variant=FerveoVariant.PRECOMPUTED),
        ThresholdDecryptionResponse(decryption_share=b'share'),
    ]


class TestEncoding:

    def test_round_trip(self) -> None:
        for message in sample_messages():
            data = message.to_bytes()
            assert unwrap(data).brand == message._brand_
            assert len(message.to_wire()) == message.wire_length()
            assert type(message).from_bytes(data) == message
            assert decode(data) == message
            assert decode(data).to_bytes() == data

    def test_truncation(self) -> None:
        for message in sample_messages():
            data = message.to_bytes()
            for size in range(len(data)):
                with pytest.raises(TruncatedInput):
                    type(message).from_bytes(data[:size])

    def test_trailing_bytes(self) -> None:
        for message in sample_messages():
            for extra in (b'\x00', b'\x01\x02\x03'):
                with pytest.raises(TrailingBytes):
                    type(message).from_bytes(message.to_bytes() + extra)

    def test_major_version_is_enforced(self) -> None:
        for message in sample_messages():
            envelope = unwrap(message.to_bytes())
            with pytest.raises(IncompatibleVersion):
                decode(wrap(envelope.brand, envelope.version.major + 1, envelope.version.minor, envelope.payload))


class TestIdentifiers:

    def test_hrac(self) -> None:
        publisher, recipient = SecretKey.random().public_key(), SecretKey.random().public_key()
        hrac = HRAC.derive(publisher, recipient, b'label')
        assert len(hrac) == 16
        assert HRAC.derive(publisher, recipient, b'label') == hrac
        assert HRAC.derive(publisher, recipient, b'other label') != hrac
        assert HRAC.derive(recipient, publisher, b'label') != hrac

    def test_fleet_state_checksum(self) -> None:
        this_node = make_node()
        nodes = [make_node() for _ in range(3)]

        checksum = FleetStateChecksum.from_nodes(nodes, this_node)
        assert FleetStateChecksum.from_nodes(reversed(nodes), this_node) == checksum
        assert FleetStateChecksum.from_nodes(nodes) != checksum
        assert FleetStateChecksum.from_nodes(nodes[:2], this_node) != checksum


class TestMessageKit:

    def test_encrypt_decrypt(self) -> None:
        pre = ToyPRE()
        assert isinstance(pre, PRECapability)

        policy_key = SecretKey.random()
        message_kit = MessageKit.seal(pre, policy_key.public_key(), b'the message')
        assert message_kit.decrypt(pre, policy_key) == b'the message'

        decoded = MessageKit.from_bytes(message_kit.to_bytes())
        assert decoded.decrypt(pre, policy_key) == b'the message'

        recipient_key = SecretKey.random()
        cfrags = [CapsuleFrag(policy_key.to_secret_bytes())]
        assert decoded.decrypt_reencrypted(pre, recipient_key, policy_key.public_key(), cfrags) == b'the message'
        with pytest.raises(DecryptionError):
            decoded.decrypt(pre, recipient_key)

    def test_newer_minor_version(self) -> None:
        message_kit = MessageKit.seal(ToyPRE(), SecretKey.random().public_key(), b'the message')
        data = wrap(b'MKit', 1, 4, message_kit.to_wire() + b'\x01\x00\x00\x00\x05extra')

        decoded = MessageKit.from_bytes(data)
        assert decoded.capsule == message_kit.capsule
        assert decoded.ciphertext == message_kit.ciphertext
        assert decoded.wire_version == Version(1, 4)
        assert decoded.to_bytes() == data


class TestKeyFrags:

    def test_encrypted_key_frag(self) -> None:
        publisher = Signer(SecretKey.random())
        node_key = SecretKey.random()
        hrac = HRAC.derive(publisher.verifying_key, SecretKey.random().public_key(), b'label')
        kfrag = KeyFrag(b'key fragment')

        encrypted_kfrag = EncryptedKeyFrag.new(publisher, node_key.public_key(), hrac, kfrag)
        assert encrypted_kfrag.decrypt(node_key, hrac, publisher.verifying_key) == kfrag
        assert EncryptedKeyFrag.from_bytes(encrypted_kfrag.to_bytes()).decrypt(node_key, hrac, publisher.verifying_key) == kfrag

        with pytest.raises(SignatureMismatch):
            encrypted_kfrag.decrypt(node_key, hrac, SecretKey.random().public_key())
        with pytest.raises(DecryptionError):
            encrypted_kfrag.decrypt(node_key, HRAC(bytes(16)), publisher.verifying_key)
        with pytest.raises(DecryptionError):
            encrypted_kfrag.decrypt(SecretKey.random(), hrac, publisher.verifying_key)


class TestTreasureMap:

    def test_new(self) -> None:
        policy = Policy(shares=3, threshold=2)
        treasure_map = policy.treasure_map

        assert treasure_map.threshold == 2
        assert treasure_map.hrac == policy.hrac
        assert treasure_map.publisher_verifying_key == policy.publisher.verifying_key
        assert treasure_map.policy_encrypting_key == policy.policy_key.public_key()
        assert list(treasure_map.destinations) == sorted(policy.node_keys)

        for address, node_key in policy.node_keys.items():
            assert treasure_map.destinations[address].decrypt(node_key, policy.hrac, policy.publisher.verifying_key) == policy.kfrags[address]

    def test_threshold(self) -> None:
        policy = Policy(shares=3, threshold=3)
        assert policy.treasure_map.threshold == 3

        with pytest.raises(ThresholdExceedsDestinations):
            TreasureMap.new(policy.publisher, policy.hrac, policy.policy_key.public_key(), policy.assigned_kfrags, 4)
        with pytest.raises(InvalidThreshold):
            TreasureMap.new(policy.publisher, policy.hrac, policy.policy_key.public_key(), policy.assigned_kfrags, 0)
        with pytest.raises(ThresholdExceedsDestinations):
            TreasureMap.new(policy.publisher, policy.hrac, policy.policy_key.public_key(), {}, 1)
        with pytest.raises(ThresholdExceedsDestinations):
            TreasureMap(
                threshold=4,
                hrac=policy.hrac,
                destinations=policy.treasure_map.destinations,
                policy_encrypting_key=policy.policy_key.public_key(),
                publisher_verifying_key=policy.publisher.verifying_key,
            )

        # an encoded treasure map with an invalid threshold is rejected when decoded
        data = policy.treasure_map.to_bytes()
        with pytest.raises(InvalidEncoding, match='exceeds the number of destinations'):
            TreasureMap.from_bytes(data[:12] + b'\x04' + data[13:])
        with pytest.raises(InvalidEncoding, match='The threshold must be at least 1'):
            TreasureMap.from_bytes(data[:12] + b'\x00' + data[13:])

    def test_encrypt_decrypt(self) -> None:
        policy = Policy()
        recipient_key = policy.recipient_key

        encrypted_map = policy.treasure_map.encrypt(policy.publisher, recipient_key.public_key())
        decoded = EncryptedTreasureMap.from_bytes(encrypted_map.to_bytes())
        assert decoded.decrypt(recipient_key, policy.publisher.verifying_key) == policy.treasure_map

        with pytest.raises(SignatureMismatch, match='published by a different key'):
            decoded.decrypt(recipient_key, SecretKey.random().public_key())
        with pytest.raises(DecryptionError):
            decoded.decrypt(SecretKey.random(), policy.publisher.verifying_key)

    def test_forged_treasure_map(self) -> None:
        policy = Policy()
        forger = Signer(SecretKey.random())

        # a map that claims to be from the publisher, but is signed by someone else
        encrypted_map = policy.treasure_map.encrypt(forger, policy.recipient_key.public_key())
        with pytest.raises(SignatureMismatch, match='not signed by the publisher'):
            encrypted_map.decrypt(policy.recipient_key, policy.publisher.verifying_key)


class TestReencryption:

    def test_request(self) -> None:
        policy = Policy()
        capsules = [Capsule(b'capsule 1'), Capsule(b'capsule 2')]

        request = make_request(policy, capsules)
        assert request.conditions is None
        assert request.context is None
        assert ReencryptionRequest.from_bytes(request.to_bytes()) == request
        assert unwrap(request.to_bytes()).version == Version(1, 1)

        request = make_request(policy, capsules, conditions='{"chain": 1}', context='{":userAddress": "0x00"}')
        assert ReencryptionRequest.from_bytes(request.to_bytes()) == request

    def test_request_from_older_build(self) -> None:
        policy = Policy()
        request = make_request(policy, [Capsule(b'capsule')])

        # a 1.0 request has no conditions and no context
        payload = request.to_wire()
        assert payload.endswith(b'\x00\x00')
        decoded = ReencryptionRequest.from_bytes(wrap(b'ReRq', 1, 0, payload[:-2]))
        assert decoded == request
        assert decoded.conditions is None

    def test_request_through_older_build(self) -> None:
        policy = Policy()
        request = make_request(policy, [Capsule(b'capsule')], conditions='{"chain": 1}')
        data = request.to_bytes()

        relayed = ReencryptionRequest.from_bytes(data, decoder=Decoder(ReencryptionRequest, Version(1, 0)))
        assert relayed.capsules == request.capsules
        assert relayed.conditions is None
        assert relayed.unknown_fields
        assert relayed.to_bytes() == data
        assert ReencryptionRequest.from_bytes(relayed.to_bytes()).conditions == '{"chain": 1}'

        # the older build cannot replace the conditions it does not know about
        with pytest.raises(AttributeError, match='Cannot set ReencryptionRequest.conditions'):
            relayed.conditions = '{"chain": 137}'
        assert relayed.to_bytes() == data

    def test_response(self) -> None:
        node = Signer(SecretKey.random())
        capsules = [Capsule(b'capsule 1'), Capsule(b'capsule 2')]
        cfrags = [CapsuleFrag(b'cfrag 1'), CapsuleFrag(b'cfrag 2')]

        response = ReencryptionResponse.new(node, capsules, cfrags)
        decoded = ReencryptionResponse.from_bytes(response.to_bytes())
        assert decoded.verify(capsules, node.verifying_key) == cfrags

        with pytest.raises(SignatureMismatch):
            decoded.verify(capsules, SecretKey.random().public_key())
        with pytest.raises(SignatureMismatch):
            decoded.verify(capsules[::-1], node.verifying_key)
        with pytest.raises(VerificationError):
            decoded.verify(capsules[:1], node.verifying_key)

    def test_response_alignment(self) -> None:
        node = Signer(SecretKey.random())
        policy = Policy()
        request = make_request(policy, [Capsule(b'capsule 1'), Capsule(b'capsule 2')])

        with pytest.raises(FragmentCountMismatch):
            ReencryptionResponse.new(node, request.capsules, [CapsuleFrag(b'cfrag 1')])
        with pytest.raises(FragmentCountMismatch):
            ReencryptionResponse.for_request(node, request, [CapsuleFrag(b'cfrag %d' % index) for index in range(3)])

        response = ReencryptionResponse.for_request(node, request, [CapsuleFrag(b'cfrag 1'), CapsuleFrag(b'cfrag 2')])
        assert response.verify(request.capsules, node.verifying_key) == [CapsuleFrag(b'cfrag 1'), CapsuleFrag(b'cfrag 2')]


class TestRetrievalKit:

    def test_new(self) -> None:
        message_kit = MessageKit.seal(ToyPRE(), SecretKey.random().public_key(), b'the message')
        retrieval_kit = RetrievalKit.from_message_kit(message_kit)
        assert retrieval_kit.capsule == message_kit.capsule
        assert retrieval_kit.queried_addresses == []

        addresses = [Address(token_bytes(20)) for _ in range(3)]
        retrieval_kit = RetrievalKit.new(message_kit.capsule, addresses + addresses[:1])
        assert retrieval_kit.queried_addresses == sorted(addresses)
        assert RetrievalKit.from_bytes(retrieval_kit.to_bytes()) == retrieval_kit

    def test_canonical_addresses(self) -> None:
        capsule = Capsule(b'capsule')
        addresses = sorted(Address(token_bytes(20)) for _ in range(2))

        with pytest.raises(ValueError, match='must be unique and sorted'):
            RetrievalKit(capsule=capsule, queried_addresses=addresses[::-1])
        with pytest.raises(ValueError, match='must be unique and sorted'):
            RetrievalKit(capsule=capsule, queried_addresses=addresses[:1] * 2)

        payload = capsule.to_wire() + b'\x00\x00\x00\x28' + b''.join(addresses[::-1])
        with pytest.raises(InvalidEncoding, match='must be unique and sorted'):
            RetrievalKit.from_bytes(wrap(b'RKit', 1, 0, payload))

    def test_newer_minor_version(self) -> None:
        retrieval_kit = RetrievalKit.new(Capsule(b'capsule'), [Address(token_bytes(20))])
        data = wrap(b'RKit', 1, 3, retrieval_kit.to_wire() + b'\x00\x05abcde')

        decoded = RetrievalKit.from_bytes(data)
        assert decoded.capsule == retrieval_kit.capsule
        assert decoded.queried_addresses == retrieval_kit.queried_addresses
        assert decoded.unknown_fields == b'\x00\x05abcde'
        assert decoded.to_bytes() == data

        # cutting into the fields that are not known is detected as well
        for size in range(len(data)):
            with pytest.raises(TruncatedInput):
                RetrievalKit.from_bytes(data[:size])
        with pytest.raises(TrailingBytes):
            RetrievalKit.from_bytes(data + b'\x00')


class TestRevocationOrder:

    def test_verify(self) -> None:
        publisher = Signer(SecretKey.random())
        address = Address(token_bytes(20))

        order = RevocationOrder.new(publisher, address)
        decoded = RevocationOrder.from_bytes(order.to_bytes())
        assert decoded.verify(publisher.verifying_key)
        assert not decoded.verify(SecretKey.random().public_key())

        # the order cannot be replayed against another node
        replayed = RevocationOrder(staker_address=Address(flip_bit(address, 0)), signature=order.signature)
        assert not replayed.verify(publisher.verifying_key)


class TestSignedMessages:

    def test_newer_minor_version_is_rejected(self) -> None:
        signed_types = {EncryptedKeyFrag, TreasureMap, EncryptedTreasureMap, ReencryptionResponse, RevocationOrder, NodeMetadata, MetadataResponse}
        messages = [message for message in sample_messages() if type(message) in signed_types]
        assert {type(message) for message in messages} == signed_types

        for message in messages:
            version = message._version_
            data = wrap(message._brand_, version.major, version.minor + 1, message.to_wire() + b'\x00\x01')
            assert not message._forward_compatible_
            with pytest.raises(UnsupportedMinorVersion):
                type(message).from_bytes(data)
            with pytest.raises(UnsupportedMinorVersion):
                decode(data)

    def test_reencryption_response(self) -> None:
        node = Signer(SecretKey.random())
        capsules = [Capsule(b'capsule 1'), Capsule(b'capsule 2')]
        cfrags = [CapsuleFrag(b'cfrag 1'), CapsuleFrag(b'cfrag 2')]
        response = ReencryptionResponse.new(node, capsules, cfrags)

        canonical = ReencryptionResponse.signed_message(capsules, cfrags)
        for position in range(len(canonical)):
            assert not node.verifying_key.verify(flip_bit(canonical, position), response.signature)

        assert_every_bit_is_covered(response.to_bytes(), lambda data: ReencryptionResponse.from_bytes(data).verify(capsules, node.verifying_key))

    def test_metadata_response(self) -> None:
        signer = Signer(SecretKey.random())
        payload = MetadataResponsePayload(timestamp_epoch=1700000000, announce_nodes=[make_node()])
        response = MetadataResponse.new(signer, payload)

        canonical = payload.to_wire()
        for position in range(len(canonical)):
            assert not signer.verifying_key.verify(flip_bit(canonical, position), response.signature)

        assert_every_bit_is_covered(response.to_bytes(), lambda data: MetadataResponse.from_bytes(data).verify(signer.verifying_key))

    def test_revocation_order(self) -> None:
        publisher = Signer(SecretKey.random())
        order = RevocationOrder.new(publisher, Address(token_bytes(20)))

        def accept(data: bytes) -> None:
            if not RevocationOrder.from_bytes(data).verify(publisher.verifying_key):
                raise SignatureMismatch('The revocation order was not signed by the publisher')

        accept(order.to_bytes())
        assert_every_bit_is_covered(order.to_bytes(), accept)

    def test_encrypted_key_frag(self) -> None:
        publisher = Signer(SecretKey.random())
        node_key = SecretKey.random()
        hrac = HRAC.derive(publisher.verifying_key, SecretKey.random().public_key(), b'label')
        encrypted_kfrag = EncryptedKeyFrag.new(publisher, node_key.public_key(), hrac, KeyFrag(b'key fragment'))

        authorized = AuthorizedKeyFrag.from_wire(unseal(node_key, encrypted_kfrag.sealed, associated_data=hrac))
        canonical = AuthorizedKeyFrag.signed_message(hrac, authorized.kfrag)
        for position in range(len(canonical)):
            assert not publisher.verifying_key.verify(flip_bit(canonical, position), authorized.signature)

        assert_every_bit_is_covered(encrypted_kfrag.to_bytes(), lambda data: EncryptedKeyFrag.from_bytes(data).decrypt(node_key, hrac, publisher.verifying_key))


class TestNodeMetadata:

    def test_verify(self) -> None:
        node = make_node()
        assert node.verify()
        decoded = NodeMetadata.from_bytes(node.to_bytes())
        assert decoded.verify()
        assert decoded.payload.derive_worker_address() == node.payload.staker_address

    def test_mutated_staker_address(self) -> None:
        node = make_node()
        address = node.payload.staker_address
        assert node.verify()

        node.payload.staker_address = Address(address[:-1] + bytes([address[-1] ^ 0xff]))
        assert not node.verify()

        # the same change made on the wire
        node.payload.staker_address = address
        data = node.to_bytes()
        position = data.index(address)
        assert not NodeMetadata.from_bytes(flip_bit(data, position)).verify()

    def test_signature_covers_every_bit(self) -> None:
        node = make_node()
        canonical = node.payload.to_wire()
        for position in range(len(canonical)):
            assert not node.payload.verifying_key.verify(flip_bit(canonical, position), node.signature)

    def test_invalid_metadata(self) -> None:
        node = make_node()
        payload = node.payload

        with pytest.raises(SignerKeyMismatch):
            NodeMetadata.new(Signer(SecretKey.random()), payload)

        # evidence produced for another node key
        operator = Signer(SecretKey.random())
        node_signer = Signer(SecretKey.random())
        payload.staker_address = address_of(operator.verifying_key)
        payload.decentralized_identity_evidence = IdentityEvidence.create(operator, SecretKey.random().public_key())
        payload.verifying_key = node_signer.verifying_key
        assert not NodeMetadata.new(node_signer, payload).verify()

        # evidence from an operator other than the staker
        payload.decentralized_identity_evidence = IdentityEvidence.create(Signer(SecretKey.random()), node_signer.verifying_key)
        assert not NodeMetadata.new(node_signer, payload).verify()

        # malformed evidence
        payload.decentralized_identity_evidence = IdentityEvidence(bytes(97))
        assert not NodeMetadata.new(node_signer, payload).verify()

        # valid evidence
        payload.decentralized_identity_evidence = IdentityEvidence.create(operator, node_signer.verifying_key)
        assert NodeMetadata.new(node_signer, payload).verify()


class TestMetadataExchange:

    def test_request(self) -> None:
        nodes = [make_node() for _ in range(2)]
        request = MetadataRequest(fleet_state_checksum=FleetStateChecksum.from_nodes(nodes))
        assert request.announce_nodes == []
        assert MetadataRequest.from_bytes(request.to_bytes()) == request

        request = MetadataRequest(fleet_state_checksum=FleetStateChecksum.from_nodes(nodes), announce_nodes=nodes)
        decoded = MetadataRequest.from_bytes(request.to_bytes())
        assert decoded.announce_nodes == nodes
        assert all(node.verify() for node in decoded.announce_nodes)

    def test_response(self) -> None:
        signer = Signer(SecretKey.random())
        payload = MetadataResponsePayload(timestamp_epoch=1700000000, announce_nodes=[make_node()])

        response = MetadataResponse.from_bytes(MetadataResponse.new(signer, payload).to_bytes())
        assert response.verify(signer.verifying_key) == payload
        with pytest.raises(SignatureMismatch):
            response.verify(SecretKey.random().public_key())


class TestThresholdDecryption:

    def test_request(self) -> None:
        request = ThresholdDecryptionRequest(ritual_id=7, ciphertext=b'ciphertext')
        assert request.variant is FerveoVariant.SIMPLE
        assert request.conditions is None
        decoded = ThresholdDecryptionRequest.from_bytes(request.to_bytes())
        assert decoded == request
        assert decoded.variant is FerveoVariant.SIMPLE

        data = request.to_bytes()
        assert data.endswith(b'\x00')
        with pytest.raises(InvalidEncoding, match='Unknown FerveoVariant value: 9'):
            ThresholdDecryptionRequest.from_bytes(data[:-1] + b'\x09')

    def test_response(self) -> None:
        response = ThresholdDecryptionResponse(decryption_share=b'share')
        assert ThresholdDecryptionResponse.from_bytes(response.to_bytes()) == response
