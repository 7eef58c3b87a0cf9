# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Canonical wire encoding of the primitive data elements.

All integers are unsigned and represented in network byte order. Variable
length values carry a big-endian length prefix whose width is derived from
the maximum size of the type (2 bytes for up to 64KiB, 4 bytes for up to
4GiB). Ordered sequences are prefixed with the total byte length of their
encoded items. Nothing is padded and no field can be omitted by leaving it
out of the buffer.
"""

import enum
from collections.abc import Buffer, Iterable, MutableMapping
from io import BytesIO
from types import GenericAlias, NotImplementedType, new_class
from typing import ClassVar, Protocol, Self, SupportsIndex, TypeVar, runtime_checkable

from .exceptions import DecodeError, InvalidEncoding, TruncatedInput

__all__ = (  # noqa: RUF022
    # Protocols and types

    'WireData',
    'DataWireProtocol',
    'DataWireAdapter',

    # Adapters and the adapter registry

    'AdapterRegistry',

    'BooleanAdapter',

    'UnsignedIntegerAdapter',
    'UInt8Adapter',
    'UInt16Adapter',
    'UInt32Adapter',

    'OpaqueAdapter',
    'Opaque16Adapter',
    'Opaque32Adapter',

    'StringAdapter',
    'String16Adapter',
    'String32Adapter',

    # Abstract types

    'UnsignedInteger',
    'Enum',
    'FixedSize',
    'Opaque',
    'List',
    'VariableLengthList',
    'make_variable_length_list_type',

    # Concrete types

    'UInt8',
    'UInt16',
    'UInt32',

    'Opaque16',
    'Opaque32',

    # Helpers

    'byte_length',
    'read_exact',
    'read_length_prefixed',
    'length_prefixed',
)


type WireData = bytes | bytearray | memoryview | BytesIO


# Protocols

@runtime_checkable
class DataWireProtocol(Protocol):
    """The wire protocol for message data elements"""

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self: ...

    def to_wire(self) -> bytes: ...

    def wire_length(self) -> int: ...


@runtime_checkable
class DataWireAdapter[T](Protocol):
    """Wire protocol adapter for a message data element of type T"""

    _abstract_: ClassVar[bool] = True

    @staticmethod
    def from_wire(buffer: WireData) -> T: ...

    @staticmethod
    def to_wire(value: T, /) -> bytes: ...

    @staticmethod
    def wire_length(value: T, /) -> int: ...

    @staticmethod
    def validate(value: T, /) -> T: ...


class AdapterRegistry[T]:
    _adapters: ClassVar[MutableMapping[type, type[DataWireAdapter]]] = {}

    @classmethod
    def associate(cls, data_type: type[T], adapter: type[DataWireAdapter[T]]) -> None:
        if issubclass(data_type, DataWireProtocol):
            raise TypeError('Adapters for types that already implement DataWireProtocol must be explicitly provided with the element descriptors.')
        cls._adapters[data_type] = adapter

    @classmethod
    def get_adapter(cls, data_type: type[T]) -> type[DataWireAdapter[T]] | None:
        return cls._adapters.get(data_type, None)


# Helpers

def byte_length(number: int) -> int:
    """Return the number of bytes needed to represent the number"""
    return (number.bit_length() + 7) // 8


def read_exact(buffer: WireData, size: int, what: str) -> bytes:
    """Read exactly size bytes from the buffer or raise TruncatedInput"""
    if isinstance(buffer, BytesIO):
        data = buffer.read(size)
    else:
        data = bytes(buffer[:size])
    if len(data) < size:
        raise TruncatedInput(f'Insufficient data in buffer to extract {what} (need {size} bytes, got {len(data)})')
    return data


def read_length_prefixed(buffer: WireData, sizelen: int, maxsize: int, what: str) -> bytes:
    """Read a byte string preceded by its sizelen bytes length, which cannot exceed maxsize"""
    if not isinstance(buffer, BytesIO):
        buffer = BytesIO(buffer)
    length = int.from_bytes(read_exact(buffer, sizelen, f'the length of {what}'), byteorder='big')
    if length > maxsize:
        raise InvalidEncoding(f'The length of {what} is too big ({length} > {maxsize})')
    return read_exact(buffer, length, what)


def length_prefixed(data: bytes, sizelen: int) -> bytes:
    return len(data).to_bytes(sizelen, byteorder='big') + data


class _Bounded:
    # Class parameter for the types whose wire form is prefixed with their length.
    # The length prefix is just wide enough to represent maxsize.

    __slots__ = ()

    _maxsize_: ClassVar[int] = NotImplemented
    _sizelen_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, maxsize: int = NotImplemented, **kw: object) -> None:
        if maxsize is not NotImplemented:
            cls._maxsize_ = maxsize
            cls._sizelen_ = byte_length(maxsize)
        super().__init_subclass__(**kw)


class _FixedWidth:
    # Class parameter for the unsigned integer types.

    __slots__ = ()

    _bits_: ClassVar[int] = NotImplemented
    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, bits: int = NotImplemented, **kw: object) -> None:
        if bits is not NotImplemented:
            cls._bits_ = bits
            cls._size_ = bits // 8
        super().__init_subclass__(**kw)

    @classmethod
    def _check_range(cls, value: int) -> None:
        if value < 0 or value.bit_length() > cls._bits_:
            raise ValueError(f'Value is out of range for unsigned {cls._bits_}-bits integer: {value!r}')


# Adapters

class BooleanAdapter:
    _abstract_: ClassVar[bool] = False

    @staticmethod
    def from_wire(buffer: WireData) -> bool:
        match read_exact(buffer, 1, 'boolean value')[0]:
            case 0:
                return False
            case 1:
                return True
            case value:
                raise InvalidEncoding(f'Invalid boolean value: {value!r}')

    @staticmethod
    def to_wire(value: bool, /) -> bytes:  # noqa: FBT001
        return b'\x01' if value else b'\x00'

    @staticmethod
    def wire_length(_: bool, /) -> int:  # noqa: FBT001
        return 1

    @staticmethod
    def validate(value: bool) -> bool:  # noqa: FBT001
        if not isinstance(value, bool):
            raise TypeError(f'Expected a bool value, got {value.__class__.__qualname__!r}')
        return value


AdapterRegistry.associate(bool, BooleanAdapter)


class UnsignedIntegerAdapter(_FixedWidth):
    _abstract_: ClassVar[bool] = True

    def __init_subclass__(cls, **kw: object) -> None:
        super().__init_subclass__(**kw)
        cls._abstract_ = cls._bits_ is NotImplemented

    @classmethod
    def from_wire(cls, buffer: WireData) -> int:
        return int.from_bytes(read_exact(buffer, cls._size_, f'an unsigned {cls._bits_}-bit integer'), byteorder='big')

    @classmethod
    def to_wire(cls, value: int, /) -> bytes:
        return value.to_bytes(cls._size_, byteorder='big')

    @classmethod
    def wire_length(cls, _: int, /) -> int:
        return cls._size_

    @classmethod
    def validate(cls, value: int, /) -> int:
        cls._check_range(value)
        return value


class UInt8Adapter(UnsignedIntegerAdapter, bits=8):
    pass


class UInt16Adapter(UnsignedIntegerAdapter, bits=16):
    pass


class UInt32Adapter(UnsignedIntegerAdapter, bits=32):
    pass


class OpaqueAdapter(_Bounded):
    """Adapter for a bytes buffer of up to maxsize bytes, prefixed with its length"""

    _abstract_: ClassVar[bool] = True

    def __init_subclass__(cls, **kw: object) -> None:
        super().__init_subclass__(**kw)
        cls._abstract_ = cls._maxsize_ is NotImplemented

    @classmethod
    def from_wire(cls, buffer: WireData) -> bytes:
        return read_length_prefixed(buffer, cls._sizelen_, cls._maxsize_, 'opaque bytes')

    @classmethod
    def to_wire(cls, value: bytes, /) -> bytes:
        return length_prefixed(value, cls._sizelen_)

    @classmethod
    def wire_length(cls, value: bytes, /) -> int:
        return cls._sizelen_ + len(value)

    @classmethod
    def validate(cls, value: bytes, /) -> bytes:
        if len(value) > cls._maxsize_:
            raise ValueError(f'Value is too long for opaque bytes (max length is {cls._maxsize_}, value has {len(value)} bytes)')
        return bytes(value)


class Opaque16Adapter(OpaqueAdapter, maxsize=2**16 - 1):
    pass


class Opaque32Adapter(OpaqueAdapter, maxsize=2**32 - 1):
    pass


class StringAdapter(_Bounded):
    """Represent strings as UTF-8 encoded length prefixed bytes limited to maxsize"""

    _abstract_: ClassVar[bool] = True

    def __init_subclass__(cls, **kw: object) -> None:
        super().__init_subclass__(**kw)
        cls._abstract_ = cls._maxsize_ is NotImplemented

    @classmethod
    def from_wire(cls, buffer: WireData) -> str:
        data = read_length_prefixed(buffer, cls._sizelen_, cls._maxsize_, 'the string')
        try:
            return data.decode()
        except UnicodeDecodeError as exc:
            raise InvalidEncoding(f'Cannot decode bytes to string: {exc}') from exc

    @classmethod
    def to_wire(cls, value: str, /) -> bytes:
        return length_prefixed(value.encode(), cls._sizelen_)

    @classmethod
    def wire_length(cls, value: str, /) -> int:
        return cls._sizelen_ + len(value.encode())

    @classmethod
    def validate(cls, value: str, /) -> str:
        if not isinstance(value, str):
            raise TypeError(f'Expected a str value, got {value.__class__.__qualname__!r}')
        if (length := len(value.encode())) > cls._maxsize_:
            raise ValueError(f'Value is too long for string (max length is {cls._maxsize_}, value has {length} bytes)')
        return value


class String16Adapter(StringAdapter, maxsize=2**16 - 1):
    pass


class String32Adapter(StringAdapter, maxsize=2**32 - 1):
    pass


# Data types

class UnsignedInteger(_FixedWidth, int):
    def __new__(cls, value: SupportsIndex = 0, /) -> Self:
        if cls._bits_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract unsigned integer type {cls.__qualname__!r} that does not define its bit length')
        instance = super().__new__(cls, value)
        cls._check_range(instance)
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({int(self)})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._size_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract unsigned integer type {cls.__qualname__!r} that does not define its bit length')
        return cls(int.from_bytes(read_exact(buffer, cls._size_, repr(cls.__qualname__)), byteorder='big'))

    def to_wire(self) -> bytes:
        return self.to_bytes(self._size_, byteorder='big')

    def wire_length(self) -> int:
        return self._size_


class UInt8(UnsignedInteger, bits=8):
    pass


class UInt16(UnsignedInteger, bits=16):
    pass


class UInt32(UnsignedInteger, bits=32):
    pass


class Enum(enum.IntEnum):
    """An integer enumeration encoded as an unsigned integer of the given size"""

    _size_: ClassVar[int]

    def __init_subclass__(cls, *, size: int = 1, **kw: object) -> None:
        cls._size_ = size
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        value = int.from_bytes(read_exact(buffer, cls._size_, repr(cls.__qualname__)), byteorder='big')
        try:
            return cls(value)
        except ValueError as exc:
            raise InvalidEncoding(f'Unknown {cls.__qualname__} value: {value}') from exc

    def to_wire(self) -> bytes:
        return self.to_bytes(self._size_, byteorder='big')

    def wire_length(self) -> int:
        return self._size_


class FixedSize(bytes):
    """A fixed size bytes buffer"""

    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, size: int = NotImplemented, **kw: object) -> None:
        if size is not NotImplemented:
            cls._size_ = size
        super().__init_subclass__(**kw)

    def __new__(cls, data: Buffer = b'', /) -> Self:
        if cls._size_ is NotImplemented:
            raise TypeError(f'Cannot instantiate fixed size bytes type {cls.__qualname__!r} that does not define its size')
        instance = super().__new__(cls, data)
        if len(instance) != cls._size_:
            raise ValueError(f'{cls.__qualname__!r} objects must have {cls._size_} bytes')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({bytes(self)!r})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._size_ is NotImplemented:
            raise TypeError(f'Cannot instantiate fixed size bytes type {cls.__qualname__!r} that does not define its size')
        data = read_exact(buffer, cls._size_, repr(cls.__qualname__))
        try:
            return cls(data)
        except DecodeError:
            raise
        except ValueError as exc:
            raise InvalidEncoding(f'Invalid {cls.__qualname__} value: {exc}') from exc

    def to_wire(self) -> bytes:
        return bytes(self)

    def wire_length(self) -> int:
        return self._size_


class Opaque(_Bounded, bytes):
    """A bytes buffer of up to maxsize bytes, prefixed with its length"""

    def __new__(cls, data: Buffer = b'', /) -> Self:
        if cls._maxsize_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract variable length bytes type {cls.__qualname__!r} that does not define its max size')
        instance = super().__new__(cls, data)
        if len(instance) > cls._maxsize_:
            raise ValueError(f'{cls.__qualname__!r} objects can have at most {cls._maxsize_} bytes')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({bytes(self)!r})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._sizelen_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract variable length bytes type {cls.__qualname__!r} that does not define its max size')
        return cls(read_length_prefixed(buffer, cls._sizelen_, cls._maxsize_, repr(cls.__qualname__)))

    def to_wire(self) -> bytes:
        return length_prefixed(self, self._sizelen_)

    def wire_length(self) -> int:
        return self._sizelen_ + len(self)


class Opaque16(Opaque, maxsize=2**16 - 1):
    pass


class Opaque32(Opaque, maxsize=2**32 - 1):
    pass


# List types

class List[T: DataWireProtocol](list[T]):
    """A sequence of items that extends to the end of the buffer it is read from"""

    _type_: type[T] = NotImplementedType

    def __init_subclass__(cls, *, custom_repr: bool = True, **kw: object) -> None:
        if not custom_repr:
            cls.__repr__ = list.__repr__  # type: ignore[method-assign]
        for base in getattr(cls, '__orig_bases__', ()):
            if isinstance(base, GenericAlias) and isinstance(base.__origin__, type) and issubclass(base.__origin__, List):
                match base.__args__[0]:
                    case TypeVar():
                        pass  # new type is still generic
                    case type() as list_type:
                        cls._type_ = list_type
                    case _:
                        raise TypeError(f'The {cls.__qualname__!r} type can only be parameterized with a single base type or a type variable')
        super().__init_subclass__(**kw)

    def __init__(self, iterable: Iterable[T] = (), /) -> None:
        if self._type_ is NotImplementedType:
            raise TypeError(f'Cannot instantiate abstract list {self.__class__.__qualname__!r} that does not define its item type')
        super().__init__(iterable)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({super().__repr__()})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._type_ is NotImplementedType:
            raise TypeError(f'Cannot instantiate abstract list {cls.__qualname__!r} that does not define its item type')
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        end = len(buffer.getvalue())
        items = []
        while buffer.tell() < end:
            try:
                items.append(cls._type_.from_wire(buffer))
            except DecodeError as exc:
                raise exc.in_field(cls.__qualname__, f'[{len(items)}]') from exc
        return cls(items)

    def to_wire(self) -> bytes:
        return b''.join(item.to_wire() for item in self)

    def wire_length(self) -> int:
        return sum(item.wire_length() for item in self)


class VariableLengthList[T: DataWireProtocol](_Bounded, List[T]):
    """A sequence of items prefixed with the byte length of the encoded items"""

    def __init__(self, iterable: Iterable[T] = (), /) -> None:
        if self._sizelen_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract variable length list {self.__class__.__qualname__!r} that does not define its max size')
        super().__init__(iterable)

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._sizelen_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract variable length list {cls.__qualname__!r} that does not define its max size')
        return super().from_wire(read_length_prefixed(buffer, cls._sizelen_, cls._maxsize_, f'the items of {cls.__qualname__!r}'))

    def to_wire(self) -> bytes:
        return length_prefixed(super().to_wire(), self._sizelen_)

    def wire_length(self) -> int:
        return self._sizelen_ + super().wire_length()


def make_variable_length_list_type[T: DataWireProtocol](item_type: type[T], /, *, maxsize: int, custom_repr: bool = True) -> type[VariableLengthList[T]]:
    return new_class(f'{item_type.__name__}List', (VariableLengthList[item_type],), kwds={'maxsize': maxsize, 'custom_repr': custom_repr})  # type: ignore[valid-type]
