# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Versioned envelope for the protocol objects.

Every top level object travels inside an envelope with a 12 bytes header:

    opaque   brand[4]
    uint16   version_major
    uint16   version_minor
    uint32   payload_length
    opaque   payload[payload_length]

The brand identifies the object type. A change of the major version means
the payload layout changed in an incompatible way, while a change of the
minor version means fields were appended to the payload. Decoders accept
older minor versions and fill in the defaults for the fields they lack.
Newer minor versions are accepted only by forward compatible types, which
preserve the unknown trailing bytes and emit them back unchanged. The
payload length lets a decoder that does not know the trailing fields still
tell a complete payload from a truncated one.
"""

import logging
import struct
from collections.abc import Iterable, MutableMapping
from dataclasses import dataclass, field
from io import BytesIO
from typing import ClassVar, Self

from .datamodel import FixedSize, WireData
from .elements import AnnotatedStructure, FieldDescriptor, Structure
from .exceptions import DecodeError, IncompatibleVersion, InvalidEncoding, TrailingBytes, TruncatedInput, UnknownEnvelope, UnsupportedMinorVersion

__all__ = (  # noqa: RUF022
    'Brand',
    'Version',
    'Envelope',
    'ProtocolObject',
    'Decoder',

    'wrap',
    'unwrap',
    'decode',
)


log = logging.getLogger(__name__)


class Brand(FixedSize, size=4):
    def __str__(self) -> str:
        return self.decode(errors='backslashreplace')


@dataclass(frozen=True, slots=True, order=True)
class Version:
    major: int
    minor: int

    def __post_init__(self) -> None:
        for name in ('major', 'minor'):
            value = getattr(self, name)
            if not 0 <= value <= 0xffff:
                raise ValueError(f'The {name} version must be an unsigned 16-bit integer: {value!r}')

    def __str__(self) -> str:
        return f'{self.major}.{self.minor}'


@dataclass(frozen=True, slots=True)
class Envelope:
    brand: Brand
    version: Version
    payload: bytes

    _header_: ClassVar[struct.Struct] = struct.Struct('!4sHHI')

    def __post_init__(self) -> None:
        if len(self.payload) > 0xffffffff:
            raise ValueError(f'The payload is too big for an envelope ({len(self.payload)} bytes)')

    @classmethod
    def from_bytes(cls, data: bytes) -> Self:
        data = bytes(data)
        if len(data) < cls._header_.size:
            raise TruncatedInput(f'Insufficient data to extract the message header (need {cls._header_.size} bytes, got {len(data)})')
        brand, major, minor, length = cls._header_.unpack_from(data)
        payload = data[cls._header_.size:]
        if len(payload) < length:
            raise TruncatedInput(f'Insufficient data to extract the message payload (need {length} bytes, got {len(payload)})')
        if len(payload) > length:
            raise TrailingBytes(f'Found {len(payload) - length} trailing bytes after the message payload')
        return cls(Brand(brand), Version(major, minor), payload)

    def to_bytes(self) -> bytes:
        return self._header_.pack(self.brand, self.version.major, self.version.minor, len(self.payload)) + self.payload


def wrap(brand: bytes, major: int, minor: int, payload: bytes) -> bytes:
    """Put the payload in an envelope with the given brand and version"""
    return Envelope(Brand(brand), Version(major, minor), bytes(payload)).to_bytes()


def unwrap(data: bytes) -> Envelope:
    """Split the data into its envelope header and payload"""
    return Envelope.from_bytes(data)


type ProtocolObjectType = type[ProtocolObject]


class ProtocolObject(AnnotatedStructure):
    """
    A top level object that can be serialized inside a versioned envelope.

    Subclasses define their brand and current version as class arguments:

        class MessageKit(ProtocolObject, brand=b'MKit', version=Version(1, 0), forward_compatible=True):
            ...

    Fields added in later minor versions must be declared with since=minor
    and must have a default value, which is used when decoding an object
    that was encoded with an older minor version.
    """

    _brand_: ClassVar[Brand | None] = None
    _version_: ClassVar[Version] = Version(1, 0)
    _forward_compatible_: ClassVar[bool] = False
    _registry_: ClassVar[MutableMapping[bytes, ProtocolObjectType]] = {}

    # only set on instances decoded from a newer minor version than known
    _known_minor_: int | None = None
    _wire_version_: Version | None = None
    _unknown_fields_: bytes = b''

    def __init_subclass__(cls, *, brand: bytes | None = None, version: Version = Version(1, 0), forward_compatible: bool = False, **kw: object) -> None:  # noqa: B008
        super().__init_subclass__(**kw)
        for name, descriptor in cls._fields_.items():
            if descriptor.since > version.minor:
                raise TypeError(f'The {cls.__qualname__}.{name} field was added in minor version {descriptor.since}, which is newer than the type version {version}')
        cls._version_ = version
        cls._forward_compatible_ = forward_compatible
        if brand is None:
            cls._brand_ = None
        else:
            cls._brand_ = Brand(brand)
            if cls._registry_.setdefault(cls._brand_, cls) is not cls:
                raise TypeError(f'Brand {brand!r} is already used by {cls._registry_[cls._brand_].__qualname__!r}')

    def __class_getitem__(cls, brand: bytes) -> ProtocolObjectType:
        try:
            return cls._registry_[brand]
        except KeyError as exc:
            raise TypeError(f'Unknown protocol object brand {brand!r}') from exc

    def __init__(self, **kw: object) -> None:
        super().__init__(**kw)
        self._validate_()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ProtocolObject):
            return super().__eq__(other) and self._unknown_fields_ == other._unknown_fields_ and self.wire_version == other.wire_version
        return NotImplemented

    def __setattr__(self, name: str, value: object) -> None:
        if self._known_minor_ is not None and (descriptor := self._fields_.get(name)) is not None and descriptor.since > self._known_minor_:
            raise AttributeError(f'Cannot set {self.__class__.__qualname__}.{name}: the object was decoded from version {self.wire_version} as version {self._version_.major}.{self._known_minor_}, which does not know this field')
        super().__setattr__(name, value)

    def _validate_(self) -> None:
        """Check the invariants that involve more than one field"""

    @property
    def unknown_fields(self) -> bytes:
        return self._unknown_fields_

    @property
    def wire_version(self) -> Version:
        return self._wire_version_ or self._version_

    @classmethod
    def _read_fields_(cls, buffer: BytesIO, minor: int) -> Self:
        instance = super(Structure, cls).__new__(cls)
        for name, descriptor in cls._fields_.items():
            if descriptor.since <= minor:
                descriptor.from_wire(instance, buffer)
            else:
                setattr(instance, name, descriptor.default)
        try:
            instance._validate_()
        except DecodeError:
            raise
        except ValueError as exc:
            raise InvalidEncoding(f'Invalid {cls.__qualname__} data: {exc}') from exc
        return instance

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        return cls._read_fields_(buffer, cls._version_.minor)

    def to_wire(self) -> bytes:
        return b''.join(descriptor.to_wire(self) for descriptor in self._emitted_fields()) + self._unknown_fields_

    def wire_length(self) -> int:
        return sum(descriptor.wire_length(self) for descriptor in self._emitted_fields()) + len(self._unknown_fields_)

    def _emitted_fields(self) -> Iterable[FieldDescriptor]:
        if self._known_minor_ is None:
            return self._fields_.values()
        return [descriptor for descriptor in self._fields_.values() if descriptor.since <= self._known_minor_]

    def to_bytes(self) -> bytes:
        if self._brand_ is None:
            raise TypeError(f'Cannot serialize abstract protocol object {self.__class__.__qualname__!r} that does not define its brand')
        return Envelope(self._brand_, self.wire_version, self.to_wire()).to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes, *, decoder: 'Decoder[Self] | None' = None) -> Self:
        if decoder is None:
            decoder = Decoder(cls)
        elif decoder.message_type is not cls:
            raise TypeError(f'The decoder is for {decoder.message_type.__qualname__!r} not for {cls.__qualname__!r}')
        return decoder.decode(data)


@dataclass(frozen=True, slots=True)
class Decoder[T: ProtocolObject]:
    """
    Decode a protocol object as a build that knows the given version of it
    would. The version defaults to the current version of the type.
    """

    message_type: type[T]
    version: Version = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        current = self.message_type._version_
        if self.message_type._brand_ is None:
            raise TypeError(f'Cannot create a decoder for abstract protocol object {self.message_type.__qualname__!r}')
        if self.version is None:
            object.__setattr__(self, 'version', current)
        elif self.version.major != current.major:
            raise ValueError(f'The decoder major version must be {current.major} for {self.message_type.__qualname__!r}')
        elif self.version.minor > current.minor:
            raise ValueError(f'The decoder version cannot be newer than {current} for {self.message_type.__qualname__!r}')

    def decode(self, data: bytes) -> T:
        return self.decode_envelope(Envelope.from_bytes(data))

    def decode_envelope(self, envelope: Envelope) -> T:
        message_type = self.message_type
        if envelope.brand != message_type._brand_:
            log.debug('Rejected %s message: expected brand %s', envelope.brand, message_type._brand_)
            raise UnknownEnvelope(f'Expected a {message_type.__qualname__} ({message_type._brand_}) message, got brand {envelope.brand}')
        if envelope.version.major != self.version.major:
            log.debug('Rejected %s message: incompatible version %s (decoder version %s)', envelope.brand, envelope.version, self.version)
            raise IncompatibleVersion(f'Cannot decode {message_type.__qualname__} version {envelope.version} with a decoder for version {self.version}')
        buffer = BytesIO(envelope.payload)
        if envelope.version.minor > self.version.minor:
            if not message_type._forward_compatible_:
                log.debug('Rejected %s message: unsupported minor version %s (decoder version %s)', envelope.brand, envelope.version, self.version)
                raise UnsupportedMinorVersion(f'Cannot decode {message_type.__qualname__} version {envelope.version} with a decoder for version {self.version}')
            instance = message_type._read_fields_(buffer, self.version.minor)
            instance._known_minor_ = self.version.minor
            instance._wire_version_ = envelope.version
            instance._unknown_fields_ = buffer.read()
            return instance
        instance = message_type._read_fields_(buffer, envelope.version.minor)
        if buffer.tell() < len(envelope.payload):
            raise TrailingBytes(f'Found {len(envelope.payload) - buffer.tell()} trailing bytes after the {message_type.__qualname__} payload')
        return instance


def decode(data: bytes) -> ProtocolObject:
    """Decode any registered protocol object, selecting its type by brand"""
    envelope = Envelope.from_bytes(data)
    try:
        message_type = ProtocolObject._registry_[envelope.brand]
    except KeyError as exc:
        log.debug('Rejected message with unknown brand %s', envelope.brand)
        raise UnknownEnvelope(f'Unknown message brand {envelope.brand}') from exc
    return Decoder(message_type).decode_envelope(envelope)
