"""
Vendor Address Codec

Turns vendor point addresses into canonical Modbus addresses.

Two grammars are recognized (case-insensitive, surrounding whitespace ignored):

    %Q2.6.5   bit address    <Q|I><module>.<byte>.<bit>
    %IW100    register       <Q|I>W<n>

Bit addresses need an explicit addressing scheme because controller
families disagree on how module/byte/bit flatten into a coil index:

    flat:      byte*8 + bit
    expanded:  module*64 + byte*8 + bit

Example:
    decode_address("%Q2.6.5", AddressingScheme.EXPANDED)
    # DecodedAddress(space=COIL, index=181, direction=OUTPUT, kind=DIGITAL)
"""

import re
from dataclasses import dataclass

from .config import AddressingScheme, DataSpace, Direction, PointKind
from .exceptions import AddressDecodeError

MAX_INDEX = 0xFFFF

_BIT_PATTERN = re.compile(r"^%([QI])(\d+)\.(\d+)\.(\d+)$")
_REGISTER_PATTERN = re.compile(r"^%([QI])W(\d+)$")

_SPACES = {
    ("Q", PointKind.DIGITAL): DataSpace.COIL,
    ("I", PointKind.DIGITAL): DataSpace.DISCRETE_INPUT,
    ("Q", PointKind.ANALOG): DataSpace.HOLDING_REGISTER,
    ("I", PointKind.ANALOG): DataSpace.INPUT_REGISTER,
}


@dataclass(frozen=True)
class CanonicalAddress:
    """Protocol-level (space, index) pair"""
    space: DataSpace
    index: int


@dataclass(frozen=True)
class DecodedAddress:
    """Result of decoding a vendor address"""
    space: DataSpace
    index: int
    direction: Direction
    kind: PointKind

    @property
    def canonical(self) -> CanonicalAddress:
        return CanonicalAddress(self.space, self.index)


def decode_address(
    raw: str,
    scheme: AddressingScheme | None = None,
) -> DecodedAddress:
    """
    Decode a vendor address string.

    Args:
        raw: Vendor address, e.g. "%Q0.6.5" or "%IW100"
        scheme: Addressing scheme for bit addresses (required for them)

    Returns:
        DecodedAddress

    Raises:
        AddressDecodeError: If the string matches no grammar or is out of range
    """
    if not isinstance(raw, str):
        raise AddressDecodeError(raw, "address must be a string")

    text = raw.strip().upper()

    match = _REGISTER_PATTERN.match(text)
    if match:
        letter, number = match.groups()
        return _build(raw, letter, PointKind.ANALOG, int(number))

    match = _BIT_PATTERN.match(text)
    if match:
        letter, module, byte, bit = match.groups()
        module, byte, bit = int(module), int(byte), int(bit)

        if scheme is None:
            raise AddressDecodeError(raw, "bit address requires an explicit addressing scheme")
        if bit > 7:
            raise AddressDecodeError(raw, f"bit {bit} out of range 0-7")

        if scheme == AddressingScheme.EXPANDED:
            if byte > 7:
                raise AddressDecodeError(raw, f"byte {byte} out of range 0-7 for expanded scheme")
            index = module * 64 + byte * 8 + bit
        else:
            index = byte * 8 + bit

        return _build(raw, letter, PointKind.DIGITAL, index)

    raise AddressDecodeError(raw, "unrecognized address format")


def _build(raw: str, letter: str, kind: PointKind, index: int) -> DecodedAddress:
    if index > MAX_INDEX:
        raise AddressDecodeError(raw, f"index {index} exceeds {MAX_INDEX}")
    return DecodedAddress(
        space=_SPACES[(letter, kind)],
        index=index,
        direction=Direction.OUTPUT if letter == "Q" else Direction.INPUT,
        kind=kind,
    )


def encode_address(
    space: DataSpace,
    index: int,
    scheme: AddressingScheme = AddressingScheme.FLAT,
) -> str:
    """Produce a vendor address string that decodes to (space, index)"""
    if not 0 <= index <= MAX_INDEX:
        raise ValueError(f"index {index} out of range 0-{MAX_INDEX}")

    if space == DataSpace.HOLDING_REGISTER:
        return f"%QW{index}"
    if space == DataSpace.INPUT_REGISTER:
        return f"%IW{index}"

    letter = "Q" if space == DataSpace.COIL else "I"
    if scheme == AddressingScheme.EXPANDED:
        module, rest = divmod(index, 64)
        return f"%{letter}{module}.{rest // 8}.{rest % 8}"
    return f"%{letter}0.{index // 8}.{index % 8}"
