# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Network configuration.

The configuration is an XML document in the urn:precore:config namespace
that names the network domain and optionally pins the decoder version used
for some message types, for nodes that must keep decoding as an older build
would until the whole network is upgraded:

    <network xmlns="urn:precore:config" domain="mainnet">
      <decoders>
        <decoder brand="ReRq" major="1" minor="0"/>
      </decoders>
    </network>

The document is validated against the bundled RelaxNG schema before use.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from os import PathLike
from pathlib import Path
from types import MappingProxyType
from typing import Self

from lxml import etree

from precore.messages import NodeMetadata
from precore.wire.exceptions import UnknownEnvelope
from precore.wire.versioning import Brand, Decoder, Envelope, ProtocolObject, Version

__all__ = 'ConfigurationError', 'NetworkConfiguration', 'RelaxNGValidator'


log = logging.getLogger(__name__)


# noinspection PyProtectedMember
type ETreeElement = etree._Element  # noqa: SLF001

CONFIG_NAMESPACE = 'urn:precore:config'


class ConfigurationError(ValueError):
    """Raised when a configuration document is malformed or inconsistent"""


class RelaxNGValidator:
    schema_directory = Path(__file__).parent / 'schema'

    def __init__(self, schema_file: str) -> None:
        self.schema_path = self.schema_directory / schema_file
        self.schema = etree.RelaxNG(file=str(self.schema_path))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RelaxNGValidator):
            return self.schema_path == other.schema_path
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.schema_path)

    def validate(self, element: ETreeElement) -> bool:
        return self.schema.validate(element)

    def check(self, element: ETreeElement) -> None:
        """Raise ConfigurationError if the element does not conform to the schema"""
        if not self.schema.validate(element):
            error = self.schema.error_log.last_error
            reason = f'line {error.line}: {error.message}' if error is not None else 'unknown error'
            raise ConfigurationError(f'The configuration does not conform to {self.schema_path.name} ({reason})')


_validator = RelaxNGValidator('network.rng')
_decoder_xpath = etree.XPath('ns:decoders/ns:decoder', namespaces={'ns': CONFIG_NAMESPACE})


@dataclass(frozen=True, eq=True)
class NetworkConfiguration:
    domain: str
    decoder_versions: Mapping[Brand, Version] = field(default_factory=dict)

    _decoders: Mapping[Brand, Decoder] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.domain:
            raise ConfigurationError('The network domain cannot be empty')
        decoder_versions = {}
        decoders = {}
        for brand, version in self.decoder_versions.items():
            try:
                brand = Brand(brand)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f'Invalid message brand {brand!r}: {exc}') from exc
            if not isinstance(version, Version):
                raise ConfigurationError(f'Invalid decoder version {version!r} for {brand}: expected a Version')
            message_type = ProtocolObject._registry_.get(brand)
            if message_type is None:
                raise ConfigurationError(f'Cannot pin the decoder version for unknown message brand {brand}')
            try:
                decoders[brand] = Decoder(message_type, version)
            except ValueError as exc:
                raise ConfigurationError(f'Invalid decoder version {version} for {brand}: {exc}') from exc
            decoder_versions[brand] = version
        object.__setattr__(self, 'decoder_versions', MappingProxyType(decoder_versions))
        object.__setattr__(self, '_decoders', MappingProxyType(decoders))

    def __hash__(self) -> int:
        return hash((self.domain, frozenset(self.decoder_versions.items())))

    @classmethod
    def from_element(cls, element: ETreeElement) -> Self:
        _validator.check(element)
        decoder_versions: dict[Brand, Version] = {}
        for decoder in _decoder_xpath(element):
            try:
                brand = Brand(decoder.get('brand').encode())
            except ValueError as exc:
                raise ConfigurationError(f'Invalid message brand {decoder.get('brand')!r}') from exc
            if brand in decoder_versions:
                raise ConfigurationError(f'The decoder version for {brand} is specified more than once')
            decoder_versions[brand] = Version(int(decoder.get('major')), int(decoder.get('minor')))
        return cls(domain=element.get('domain'), decoder_versions=decoder_versions)

    @classmethod
    def from_string(cls, data: str | bytes) -> Self:
        try:
            element = etree.fromstring(data.encode() if isinstance(data, str) else data)
        except etree.XMLSyntaxError as exc:
            raise ConfigurationError(f'Cannot parse the configuration: {exc}') from exc
        return cls.from_element(element)

    @classmethod
    def from_file(cls, path: str | PathLike[str]) -> Self:
        path = Path(path).expanduser()
        log.debug('Loading the network configuration from %s', path)
        try:
            document = etree.parse(str(path))
        except etree.XMLSyntaxError as exc:
            raise ConfigurationError(f'Cannot parse the configuration file {path}: {exc}') from exc
        return cls.from_element(document.getroot())

    def to_string(self) -> bytes:
        root = etree.Element(f'{{{CONFIG_NAMESPACE}}}network', nsmap={None: CONFIG_NAMESPACE}, domain=self.domain)
        if self.decoder_versions:
            decoders = etree.SubElement(root, f'{{{CONFIG_NAMESPACE}}}decoders')
            for brand, version in sorted(self.decoder_versions.items()):
                etree.SubElement(decoders, f'{{{CONFIG_NAMESPACE}}}decoder', brand=str(brand), major=str(version.major), minor=str(version.minor))
        return etree.tostring(root, xml_declaration=True, encoding='UTF-8', pretty_print=True)

    def decoder_for[T: ProtocolObject](self, message_type: type[T]) -> Decoder[T]:
        """Return the decoder for the message type, using the pinned version if there is one"""
        decoder = self._decoders.get(message_type._brand_)
        if decoder is None:
            return Decoder(message_type)
        return decoder

    def decode(self, data: bytes) -> ProtocolObject:
        """Decode any known message using the configured decoder versions"""
        envelope = Envelope.from_bytes(data)
        message_type = ProtocolObject._registry_.get(envelope.brand)
        if message_type is None:
            log.debug('Rejected message with unknown brand %s', envelope.brand)
            raise UnknownEnvelope(f'Unknown message brand {envelope.brand}')
        return self.decoder_for(message_type).decode_envelope(envelope)

    def accepts(self, node: NodeMetadata) -> bool:
        """Return True if the node belongs to this network and its metadata verifies"""
        if node.payload.domain != self.domain:
            log.debug('Rejected node %s from domain %r (expected %r)', node.payload.staker_address, node.payload.domain, self.domain)
            return False
        return node.verify()
