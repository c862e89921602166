"""Register definitions, read planning and value decoding.

Rule numbering follows the ha-solarman inverter definition files:

    1 | 3  unsigned, N registers accumulated low word first
    2 | 4  signed, N registers accumulated low word first, then sign-extended
    5      ASCII string, high byte then low byte per register
    6      bit array rendered as hex words
    7      version string, one nibble per digit

Numeric rules decode as ``(raw - offset) * scale``.
"""

import re
from decimal import Decimal
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

from .logging_setup import get_logger

DEFAULT_FUNCTION_CODE = 3
MAX_REGISTERS_PER_READ = 100

STATE_CLASS_MEASUREMENT = "measurement"
STATE_CLASS_TOTAL_INCREASING = "total_increasing"

LookupKey = Union[int, Tuple[int, ...]]
Value = Union[int, float, str, None]


def slugify(name: str) -> str:
    """Identifier safe for topics and field keys: 'Output AC Power' -> 'output_ac_power'."""
    return re.sub(r'[^a-z0-9]+', '_', name.lower()).strip('_')


@dataclass(frozen=True)
class RegisterDefinition:
    """One decoded value and the registers it is built from."""
    name: str
    rule: int
    registers: Tuple[int, ...]
    scale: float = 1
    offset: float = 0
    fc: int = DEFAULT_FUNCTION_CODE
    lookup: Optional[Tuple[Tuple[LookupKey, str], ...]] = None
    binding: Optional[str] = None    # output field / topic name
    uom: Optional[str] = None
    device_class: Optional[str] = None
    state_class: Optional[str] = None

    def __post_init__(self):
        # Catalogs written as lists/dicts are frozen here
        object.__setattr__(self, 'registers', tuple(self.registers))
        if self.lookup is not None and not isinstance(self.lookup, tuple):
            items = self.lookup.items() if isinstance(self.lookup, dict) else self.lookup
            object.__setattr__(self, 'lookup', tuple(
                (tuple(key) if isinstance(key, list) else key, value) for key, value in items
            ))

    @property
    def instantaneous(self) -> bool:
        """Live measurement (zeroed at night), as opposed to an energy counter."""
        return self.state_class == STATE_CLASS_MEASUREMENT

    @property
    def field_name(self) -> str:
        """Output key: the binding when set, else the slugged name."""
        return self.binding or slugify(self.name)

    @property
    def numeric(self) -> bool:
        return self.rule in (1, 2, 3, 4) and not self.lookup


class ReadRequest(NamedTuple):
    fc: int
    start: int
    count: int


def build_read_requests(definitions: Iterable[RegisterDefinition],
                        max_count: int = MAX_REGISTERS_PER_READ) -> List[ReadRequest]:
    """
    Plan the minimum set of contiguous reads covering every definition.

    Args:
        definitions: Register definitions to cover
        max_count: Device limit of registers per read

    Returns:
        Read requests grouped by function code, ascending addresses
    """
    by_fc: Dict[int, set] = {}
    for definition in definitions:
        by_fc.setdefault(definition.fc, set()).update(definition.registers)

    requests = []
    for fc, addresses in by_fc.items():
        if not addresses:
            continue
        ordered = sorted(addresses)
        start = end = ordered[0]
        for address in ordered[1:]:
            if address - start < max_count:
                end = address
            else:
                requests.append(ReadRequest(fc, start, end - start + 1))
                start = end = address
        requests.append(ReadRequest(fc, start, end - start + 1))

    return requests


def _accumulate(definition: RegisterDefinition, register_map: Dict[int, int]) -> int:
    raw = 0
    for i, address in enumerate(definition.registers):
        raw += (register_map[address] & 0xFFFF) << (16 * i)
    return raw


def _places(number: float) -> int:
    return max(0, -Decimal(str(number)).as_tuple().exponent)


def _scaled(definition: RegisterDefinition, raw: int) -> Union[int, float]:
    """``(raw - offset) * scale``, rounded to the decimals offset and scale carry."""
    value = (raw - definition.offset) * definition.scale
    if isinstance(value, float):
        return round(value, _places(definition.offset) + _places(definition.scale))
    return value


def _lookup_label(definition: RegisterDefinition, raw: int) -> str:
    for key, label in definition.lookup:
        keys = key if isinstance(key, tuple) else (key,)
        if raw in keys:
            return label
    return f"Unknown({raw})"


def decode_register(definition: RegisterDefinition, register_map: Dict[int, int]) -> Value:
    """
    Decode one definition from a populated register map.

    Returns None when any required register is missing or the rule is
    unknown; never raises.
    """
    if any(address not in register_map for address in definition.registers):
        return None

    rule = definition.rule

    if rule in (1, 3):
        raw = _accumulate(definition, register_map)
        if definition.lookup:
            return _lookup_label(definition, raw)
        return _scaled(definition, raw)

    if rule in (2, 4):
        raw = _accumulate(definition, register_map)
        bits = 16 * len(definition.registers)
        if raw >= 1 << (bits - 1):
            raw -= 1 << bits
        return _scaled(definition, raw)

    if rule == 5:
        chars = []
        for address in definition.registers:
            value = register_map[address]
            for byte in ((value >> 8) & 0xFF, value & 0xFF):
                if byte:
                    chars.append(chr(byte))
        return ''.join(chars).strip()

    if rule == 6:
        return ','.join(f"0x{register_map[a] & 0xFFFF:04x}" for a in definition.registers)

    if rule == 7:
        versions = []
        for address in definition.registers:
            value = register_map[address]
            versions.append('.'.join(str((value >> shift) & 0xF) for shift in (12, 8, 4, 0)))
        return '-'.join(versions)

    get_logger().debug(f"{definition.name}: unknown decode rule {rule}")
    return None


def decode_all(definitions: Iterable[RegisterDefinition],
               register_map: Dict[int, int]) -> Dict[str, Value]:
    """Decode every definition into a name -> value snapshot."""
    return {d.name: decode_register(d, register_map) for d in definitions}
