# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from enum import Enum
from inspect import Parameter, Signature
from io import BytesIO
from types import NoneType, UnionType, new_class
from typing import TYPE_CHECKING, ClassVar, Self, cast, dataclass_transform, overload

from .datamodel import AdapterRegistry, DataWireAdapter, DataWireProtocol, List, WireData, byte_length, length_prefixed, make_variable_length_list_type, read_exact, read_length_prefixed
from .exceptions import DecodeError, InvalidEncoding

__all__ = (  # noqa: RUF022
    'Structure',
    'AnnotatedStructure',

    'Element',
    'OptionalElement',
    'ListElement',
    'MappingElement',
)


class Structure:  # noqa: PLW1641
    __signature__: ClassVar[Signature] = Signature()

    _fields_: ClassVar[dict[str, 'FieldDescriptor']] = {}

    _all_arguments: ClassVar[frozenset[str]]
    _mandatory_arguments: ClassVar[frozenset[str]]
    _default_arguments: ClassVar[dict[str, object]]

    def __new__(cls, **kw: object) -> Self:
        if not cls._all_arguments.issuperset(kw):
            raise TypeError(f'Got an unexpected keyword argument {next(iter(set(kw) - cls._all_arguments))!r}')
        if not cls._mandatory_arguments.issubset(kw):
            raise TypeError(f'Missing a required keyword argument {next(iter(cls._mandatory_arguments - set(kw)))!r}')
        return super().__new__(cls)

    def __init__(self, **kw: object) -> None:
        kw = self._default_arguments | kw
        for name in self._fields_:
            setattr(self, name, kw[name])

    def __init_subclass__(cls, **kw: object) -> None:
        super().__init_subclass__(**kw)

        # all the fields on this element (both inherited and locally defined)
        fields = cls._fields_ | {name: value for name, value in cls.__dict__.items() if isinstance(value, FieldDescriptor)}

        for name, field in fields.items():
            if field.since > 0 and field.default is NotImplemented:
                raise TypeError(f'The {cls.__qualname__}.{name} field was added in a later minor version and must have a default value')

        cls._fields_ = fields

        cls.__signature__ = Signature(parameters=[descriptor.signature_parameter for descriptor in fields.values()])
        cls._all_arguments = frozenset(cls.__signature__.parameters)
        cls._mandatory_arguments = frozenset(p.name for p in cls.__signature__.parameters.values() if p.default is Parameter.empty)
        cls._default_arguments = {p.name: p.default for p in cls.__signature__.parameters.values() if p.default is not Parameter.empty}

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({', '.join(f'{name}={_reprproxy(getattr(self, name))!r}' for name in self._fields_)})'

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Structure):
            return self.__class__ is other.__class__ and all(getattr(self, name) == getattr(other, name) for name in self._fields_)
        return NotImplemented

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        instance = super().__new__(cls)
        for field in cls._fields_.values():
            field.from_wire(instance, buffer)
        return instance

    def to_wire(self) -> bytes:
        return b''.join(field.to_wire(self) for field in self._fields_.values())

    def wire_length(self) -> int:
        return sum(field.wire_length(self) for field in self._fields_.values())


# Helpers

class _reprproxy:  # noqa: N801
    # Provide better representation for certain types which can be evaluated to recreate the object.

    def __init__(self, value: object) -> None:
        self.value = value

    def __repr__(self) -> str:
        match self.value:
            case Enum() as value:
                return f'{value.__class__.__qualname__}.{value.name}'
            case UnionType() as value:
                return ' | '.join('None' if _type is NoneType else _type.__qualname__ for _type in value.__args__)
            case type() as value:
                return value.__qualname__
            case value:
                return repr(value)

    __str__ = __repr__


def _protocol2adapter[T: DataWireProtocol](proto: type[T]) -> type[DataWireAdapter[T]]:
    # Turn a DataWireProtocol into a DataWireAdapter by creating a stand-in adapter on the fly,
    # whose validate method only checks that the value has the expected type.

    def validate(value: T, /) -> T:
        if not isinstance(value, proto):
            raise TypeError(f'Expected a {proto.__qualname__!r} value, got {value.__class__.__qualname__!r}')
        return value

    def prepare(ns: dict) -> None:
        ns['_abstract_'] = False
        ns['from_wire'] = staticmethod(proto.from_wire)
        ns['to_wire'] = staticmethod(proto.to_wire)
        ns['wire_length'] = staticmethod(proto.wire_length)
        ns['validate'] = staticmethod(validate)

    adapter = new_class(f'{proto.__name__}AdapterStandIn', (DataWireAdapter[T],), exec_body=prepare)
    adapter.__module__ = __name__
    adapter.__qualname__ = f'_protocol2adapter.<generated>.{adapter.__name__}'

    return adapter


def _select_adapter[T](element_type: type[T], adapter: 'DataWireAdapterType[T] | None') -> 'DataWireAdapterType[T]':
    if adapter is None:
        if issubclass(element_type, DataWireProtocol):
            adapter = cast(DataWireAdapterType[T], _protocol2adapter(element_type))
        else:
            adapter = AdapterRegistry.get_adapter(element_type)
    if adapter is None:
        raise TypeError('Either the element type must implement the DataWireProtocol or an adapter must be provided')
    if adapter._abstract_:
        raise TypeError(f'Cannot use abstract adapter {adapter.__qualname__!r} (need to select a concrete implementation of it, usually one that defines its size)')
    return adapter


def _read_element[T](adapter: 'DataWireAdapterType[T]', buffer: WireData, owner: type[Structure], name: str) -> T:
    try:
        return adapter.from_wire(buffer)
    except DecodeError as exc:
        raise exc.in_field(owner.__qualname__, name) from exc
    except ValueError as exc:
        raise InvalidEncoding(f'Failed to read the {owner.__qualname__}.{name} element from wire: {exc}') from exc


type DataWireAdapterType[T] = type[DataWireAdapter[T]]

# Field descriptor specifications

class FieldDescriptor(ABC):
    name: str | None
    default: object
    since: int

    def __init__(self, *, default: object, since: int) -> None:
        self.name = None
        self.default = default
        self.since = since

    @property
    @abstractmethod
    def signature_parameter(self) -> Parameter: ...

    @abstractmethod
    def from_wire(self, instance: Structure, buffer: WireData) -> None: ...

    @abstractmethod
    def to_wire(self, instance: Structure) -> bytes: ...

    @abstractmethod
    def wire_length(self, instance: Structure) -> int: ...

    @property
    def attribute(self) -> str:
        if self.name is None:
            raise TypeError(f'{self.__class__.__qualname__!r} instance is not bound to a structure field (__set_name__ was not called)')
        return self.name

    def __set_name__(self, owner: type[Structure], name: str) -> None:
        if self.name is None:
            self.name = name
        elif name != self.name:
            raise TypeError(f'Cannot assign the same {self.__class__.__qualname__!r} to two different names: {self.name!r} and {name!r}')

    def __get__(self, instance: Structure | None, owner: type[Structure] | None = None) -> object:
        if instance is None:
            return self
        try:
            return instance.__dict__[self.attribute]
        except KeyError as exc:
            raise AttributeError(f'{instance.__class__.__qualname__!r} object has no value for {self.name!r}') from exc

    def __delete__(self, instance: Structure) -> None:
        raise AttributeError(f'Attribute {self.name!r} of {instance.__class__.__qualname__!r} object cannot be deleted')

    def _parameter(self, annotation: object) -> Parameter:
        if self.default is NotImplemented:
            return Parameter(self.attribute, Parameter.KEYWORD_ONLY, annotation=annotation)
        return Parameter(self.attribute, Parameter.KEYWORD_ONLY, annotation=annotation, default=self.default)


# Field descriptor implementations

class Element[T](FieldDescriptor):
    """A mandatory field holding a single value"""

    type: type[T]
    adapter: DataWireAdapterType[T]

    def __init__(self, element_type: type[T], /, *, default: T = NotImplemented, adapter: DataWireAdapterType[T] | None = None, since: int = 0) -> None:
        super().__init__(default=default, since=since)
        self.type = element_type
        self.provided_adapter = adapter
        self.adapter = _select_adapter(element_type, adapter)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({_reprproxy(self.type)!r}, default={self.default!r}, adapter={_reprproxy(self.provided_adapter)!r}, since={self.since!r})'

    @property
    def signature_parameter(self) -> Parameter:
        return self._parameter(self.type)

    if TYPE_CHECKING:
        @overload
        def __get__(self, instance: None, owner: type[Structure]) -> Self: ...

        @overload
        def __get__(self, instance: Structure, owner: type[Structure] | None = None) -> T: ...

        def __get__(self, instance: Structure | None, owner: type[Structure] | None = None) -> Self | T: ...

    def __set__(self, instance: Structure, value: T) -> None:
        instance.__dict__[self.attribute] = self.adapter.validate(value)

    def from_wire(self, instance: Structure, buffer: WireData) -> None:
        instance.__dict__[self.attribute] = _read_element(self.adapter, buffer, instance.__class__, self.attribute)

    def to_wire(self, instance: Structure) -> bytes:
        return self.adapter.to_wire(self.__get__(instance))

    def wire_length(self, instance: Structure) -> int:
        return self.adapter.wire_length(self.__get__(instance))


class OptionalElement[T](Element[T]):
    """A field that may hold no value, encoded with a leading presence byte"""

    def __init__(self, element_type: type[T], /, *, default: T | None = None, adapter: DataWireAdapterType[T] | None = None, since: int = 0) -> None:
        super().__init__(element_type, default=default, adapter=adapter, since=since)  # type: ignore[arg-type]

    @property
    def signature_parameter(self) -> Parameter:
        return self._parameter(self.type | None)

    def __set__(self, instance: Structure, value: T | None) -> None:
        instance.__dict__[self.attribute] = None if value is None else self.adapter.validate(value)

    def from_wire(self, instance: Structure, buffer: WireData) -> None:
        name = self.attribute
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        try:
            presence = read_exact(buffer, 1, 'the presence marker')[0]
        except DecodeError as exc:
            raise exc.in_field(instance.__class__.__qualname__, name) from exc
        match presence:
            case 0:
                instance.__dict__[name] = None
            case 1:
                instance.__dict__[name] = _read_element(self.adapter, buffer, instance.__class__, name)
            case _:
                raise InvalidEncoding(f'Failed to read the {instance.__class__.__qualname__}.{name} element from wire: invalid presence marker {presence!r}')

    def to_wire(self, instance: Structure) -> bytes:
        value = self.__get__(instance)
        return b'\x00' if value is None else b'\x01' + self.adapter.to_wire(value)

    def wire_length(self, instance: Structure) -> int:
        value = self.__get__(instance)
        return 1 if value is None else 1 + self.adapter.wire_length(value)


class ListElement[T: DataWireProtocol](FieldDescriptor):
    """An ordered sequence of items, prefixed with the byte length of the encoded items"""

    maxsize: int
    item_type: type[T]
    list_type: type[List[T]]

    def __init__(self, item_type: type[T], /, *, default: Sequence[T] = NotImplemented, maxsize: int = 2**32 - 1, since: int = 0) -> None:
        super().__init__(default=default, since=since)
        self.maxsize = maxsize
        self.item_type = item_type
        self.list_type = make_variable_length_list_type(item_type, maxsize=maxsize, custom_repr=False)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.item_type.__qualname__}, default={self.default!r}, maxsize={self.maxsize!r}, since={self.since!r})'

    @property
    def signature_parameter(self) -> Parameter:
        return self._parameter(list[self.item_type])  # type: ignore[name-defined]

    if TYPE_CHECKING:
        @overload
        def __get__(self, instance: None, owner: type[Structure]) -> Self: ...

        @overload
        def __get__(self, instance: Structure, owner: type[Structure] | None = None) -> List[T]: ...

        def __get__(self, instance: Structure | None, owner: type[Structure] | None = None) -> Self | List[T]: ...

    def __set__(self, instance: Structure, value: Sequence[T]) -> None:
        items = self.list_type(value)
        if not all(isinstance(item, self.item_type) for item in items):
            raise TypeError(f'All the items in {instance.__class__.__qualname__}.{self.attribute} must be of type {self.item_type.__qualname__!r}')
        if items.wire_length() - byte_length(self.maxsize) > self.maxsize:
            raise ValueError(f'The items in {instance.__class__.__qualname__}.{self.attribute} exceed the maximum size of {self.maxsize} bytes')
        instance.__dict__[self.attribute] = items

    def from_wire(self, instance: Structure, buffer: WireData) -> None:
        instance.__dict__[self.attribute] = _read_element(self.list_type, buffer, instance.__class__, self.attribute)

    def to_wire(self, instance: Structure) -> bytes:
        return self.__get__(instance).to_wire()

    def wire_length(self, instance: Structure) -> int:
        return self.__get__(instance).wire_length()


class MappingElement[K: DataWireProtocol, V: DataWireProtocol](FieldDescriptor):
    """
    A mapping encoded as a sequence of (key, value) pairs, prefixed with the
    byte length of the encoded pairs. The pairs are sorted by the canonical
    encoding of their keys, which must be strictly increasing on the wire.
    """

    maxsize: int
    key_type: type[K]
    value_type: type[V]

    def __init__(self, key_type: type[K], value_type: type[V], /, *, default: Mapping[K, V] = NotImplemented, maxsize: int = 2**32 - 1, since: int = 0) -> None:
        super().__init__(default=default, since=since)
        self.maxsize = maxsize
        self.key_type = key_type
        self.value_type = value_type
        self._sizelen = byte_length(maxsize)
        self._key_adapter = _protocol2adapter(key_type)
        self._value_adapter = _protocol2adapter(value_type)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.key_type.__qualname__}, {self.value_type.__qualname__}, default={self.default!r}, maxsize={self.maxsize!r}, since={self.since!r})'

    @property
    def signature_parameter(self) -> Parameter:
        return self._parameter(Mapping[self.key_type, self.value_type])  # type: ignore[name-defined]

    if TYPE_CHECKING:
        @overload
        def __get__(self, instance: None, owner: type[Structure]) -> Self: ...

        @overload
        def __get__(self, instance: Structure, owner: type[Structure] | None = None) -> dict[K, V]: ...

        def __get__(self, instance: Structure | None, owner: type[Structure] | None = None) -> Self | dict[K, V]: ...

    def __set__(self, instance: Structure, value: Mapping[K, V]) -> None:
        field = f'{instance.__class__.__qualname__}.{self.attribute}'
        for key, item in value.items():
            if not isinstance(key, self.key_type):
                raise TypeError(f'The keys in {field} must be of type {self.key_type.__qualname__!r}')
            if not isinstance(item, self.value_type):
                raise TypeError(f'The values in {field} must be of type {self.value_type.__qualname__!r}')
        mapping = dict(sorted(value.items(), key=lambda pair: pair[0].to_wire()))
        if self._pairs_length(mapping) > self.maxsize:
            raise ValueError(f'The pairs in {field} exceed the maximum size of {self.maxsize} bytes')
        instance.__dict__[self.attribute] = mapping

    @staticmethod
    def _pairs_length(mapping: Mapping[K, V]) -> int:
        return sum(key.wire_length() + value.wire_length() for key, value in mapping.items())

    def from_wire(self, instance: Structure, buffer: WireData) -> None:
        name = self.attribute
        owner = instance.__class__
        try:
            data = read_length_prefixed(buffer, self._sizelen, self.maxsize, f'the pairs of {owner.__qualname__}.{name}')
        except DecodeError as exc:
            raise exc.in_field(owner.__qualname__, name) from exc
        pairs = BytesIO(data)
        mapping: dict[K, V] = {}
        previous_key: bytes | None = None
        while pairs.tell() < len(data):
            key = _read_element(self._key_adapter, pairs, owner, f'{name}[{len(mapping)}].key')
            encoded_key = key.to_wire()
            if previous_key is not None and encoded_key <= previous_key:
                raise InvalidEncoding(f'Failed to read the {owner.__qualname__}.{name} element from wire: keys are duplicated or not in canonical order')
            previous_key = encoded_key
            mapping[key] = _read_element(self._value_adapter, pairs, owner, f'{name}[{key!r}]')
        instance.__dict__[name] = mapping

    def to_wire(self, instance: Structure) -> bytes:
        mapping = self.__get__(instance)
        return length_prefixed(b''.join(key.to_wire() + value.to_wire() for key, value in mapping.items()), self._sizelen)

    def wire_length(self, instance: Structure) -> int:
        return self._sizelen + self._pairs_length(self.__get__(instance))


@dataclass_transform(kw_only_default=True, field_specifiers=(Element, OptionalElement, ListElement, MappingElement))
class AnnotatedStructure(Structure):
    pass
