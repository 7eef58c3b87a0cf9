# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from precore.wire.datamodel import Enum, Opaque32Adapter, String32Adapter, UInt16Adapter
from precore.wire.elements import Element, OptionalElement
from precore.wire.versioning import ProtocolObject, Version

__all__ = 'FerveoVariant', 'ThresholdDecryptionRequest', 'ThresholdDecryptionResponse'


class FerveoVariant(Enum, size=1):
    SIMPLE = 0
    PRECOMPUTED = 1


class ThresholdDecryptionRequest(ProtocolObject, brand=b'ThRq', version=Version(1, 0)):
    """A request for a decryption share of a ciphertext encrypted for a DKG ritual"""

    ritual_id: Element[int] = Element(int, adapter=UInt16Adapter)
    ciphertext: Element[bytes] = Element(bytes, adapter=Opaque32Adapter)
    conditions: OptionalElement[str] = OptionalElement(str, adapter=String32Adapter)
    context: OptionalElement[str] = OptionalElement(str, adapter=String32Adapter)
    variant: Element[FerveoVariant] = Element(FerveoVariant, default=FerveoVariant.SIMPLE)


class ThresholdDecryptionResponse(ProtocolObject, brand=b'ThRs', version=Version(1, 0)):
    decryption_share: Element[bytes] = Element(bytes, adapter=Opaque32Adapter)
