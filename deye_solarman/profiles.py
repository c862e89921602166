"""Deye register catalogs.

Profiles:
- STRING_2MPPT: G0* string inverter, 2 active PV strings
- STRING_4MPPT: G0* string inverter, 4 active PV strings
- HYBRID:       SG0xLP1 / SG0xHP single-phase hybrid with battery

Custom catalogs can be loaded from YAML with ``load_register_catalog``.
"""

from pathlib import Path
from typing import Dict, List, Tuple

import yaml

from .register_parser import (
    RegisterDefinition,
    STATE_CLASS_MEASUREMENT as MEASUREMENT,
    STATE_CLASS_TOTAL_INCREASING as TOTAL_INCREASING,
)

DEVICE_SERIAL = "Device Serial"

DEVICE_STATE_LOOKUP = (
    (0x0000, "Standby"),
    (0x0001, "Self-test"),
    (0x0002, "Normal"),
    (0x0003, "Alarm"),
    (0x0004, "Fault"),
)

SERIAL_DEFINITION = RegisterDefinition(
    name=DEVICE_SERIAL, rule=5, registers=(0x0003, 0x0004, 0x0005, 0x0006, 0x0007),
    binding="serial_number",
)


def _pv(index: int, voltage_reg: int) -> Tuple[RegisterDefinition, RegisterDefinition]:
    return (
        RegisterDefinition(
            name=f"PV{index} Voltage", rule=1, registers=(voltage_reg,), scale=0.1,
            binding=f"pv{index}_voltage", uom="V", device_class="voltage",
            state_class=MEASUREMENT,
        ),
        RegisterDefinition(
            name=f"PV{index} Current", rule=1, registers=(voltage_reg + 1,), scale=0.1,
            binding=f"pv{index}_current", uom="A", device_class="current",
            state_class=MEASUREMENT,
        ),
    )


STRING_BASE: Tuple[RegisterDefinition, ...] = (
    SERIAL_DEFINITION,
    RegisterDefinition(
        name="Device State", rule=1, registers=(0x003B,), lookup=DEVICE_STATE_LOOKUP,
        binding="device_state",
    ),
    RegisterDefinition(
        name="Today Production", rule=1, registers=(0x003C,), scale=0.1,
        binding="today_production", uom="kWh", device_class="energy",
        state_class=TOTAL_INCREASING,
    ),
    RegisterDefinition(
        name="Total Production", rule=3, registers=(0x003F, 0x0040), scale=0.1,
        binding="total_production", uom="kWh", device_class="energy",
        state_class=TOTAL_INCREASING,
    ),
    RegisterDefinition(
        name="Grid L1 Voltage", rule=1, registers=(0x0049,), scale=0.1,
        binding="grid_voltage", uom="V", device_class="voltage", state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="Grid L1 Current", rule=2, registers=(0x004C,), scale=0.1,
        binding="grid_current", uom="A", device_class="current", state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="Grid Frequency", rule=1, registers=(0x004F,), scale=0.01,
        binding="grid_frequency", uom="Hz", device_class="frequency",
        state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="Output AC Power", rule=3, registers=(0x0050, 0x0051), scale=0.1,
        binding="ac_power", uom="W", device_class="power", state_class=MEASUREMENT,
    ),
    # 0x005A is the DC/MPPT temperature; 0x005B reads 0 on string models
    RegisterDefinition(
        name="Temperature", rule=2, registers=(0x005A,), offset=1000, scale=0.1,
        binding="temperature", uom="°C", device_class="temperature",
        state_class=MEASUREMENT,
    ),
) + _pv(1, 0x006D) + _pv(2, 0x006F)

STRING_2MPPT: Tuple[RegisterDefinition, ...] = STRING_BASE

STRING_4MPPT: Tuple[RegisterDefinition, ...] = STRING_BASE + _pv(3, 0x0071) + _pv(4, 0x0073)

HYBRID: Tuple[RegisterDefinition, ...] = (
    SERIAL_DEFINITION,
    RegisterDefinition(
        name="Device State", rule=1, registers=(0x003B,), lookup=DEVICE_STATE_LOOKUP,
        binding="device_state",
    ),
    RegisterDefinition(
        name="Today Production", rule=1, registers=(0x006C,), scale=0.1,
        binding="today_production", uom="kWh", device_class="energy",
        state_class=TOTAL_INCREASING,
    ),
    RegisterDefinition(
        name="Total Production", rule=3, registers=(0x0060, 0x0061), scale=0.1,
        binding="total_production", uom="kWh", device_class="energy",
        state_class=TOTAL_INCREASING,
    ),
    RegisterDefinition(
        name="Grid Frequency", rule=1, registers=(0x004F,), scale=0.01,
        binding="grid_frequency", uom="Hz", device_class="frequency",
        state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="Grid Voltage", rule=1, registers=(0x0096,), scale=0.1,
        binding="grid_voltage", uom="V", device_class="voltage", state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="Grid Power", rule=2, registers=(0x00A9,), scale=10,
        binding="grid_power", uom="W", device_class="power", state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="Load Power", rule=2, registers=(0x00B2,), scale=10,
        binding="load_power", uom="W", device_class="power", state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="DC Temperature", rule=2, registers=(0x005A,), offset=1000, scale=0.1,
        binding="dc_temperature", uom="°C", device_class="temperature",
        state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="AC Temperature", rule=2, registers=(0x005B,), offset=1000, scale=0.1,
        binding="ac_temperature", uom="°C", device_class="temperature",
        state_class=MEASUREMENT,
    ),
) + _pv(1, 0x006D) + _pv(2, 0x006F) + (
    RegisterDefinition(
        name="Battery SOC", rule=1, registers=(0x00B8,),
        binding="battery_soc", uom="%", device_class="battery", state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="Battery Voltage", rule=1, registers=(0x00B7,), scale=0.01,
        binding="battery_voltage", uom="V", device_class="voltage",
        state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="Battery Power", rule=2, registers=(0x00BE,),
        binding="battery_power", uom="W", device_class="power", state_class=MEASUREMENT,
    ),
    RegisterDefinition(
        name="Battery Temperature", rule=2, registers=(0x00B6,), offset=1000, scale=0.1,
        binding="battery_temperature", uom="°C", device_class="temperature",
        state_class=MEASUREMENT,
    ),
)

_DEFINITION_KEYS = {
    'name', 'rule', 'registers', 'scale', 'offset', 'fc', 'lookup',
    'binding', 'uom', 'device_class', 'state_class',
}


def _definition_from_dict(entry: Dict) -> RegisterDefinition:
    unknown = set(entry) - _DEFINITION_KEYS
    if unknown:
        raise ValueError(f"Register '{entry.get('name')}': unknown keys {sorted(unknown)}")
    for key in ('name', 'rule', 'registers'):
        if key not in entry:
            raise ValueError(f"Register definition missing '{key}': {entry}")

    lookup = entry.get('lookup')
    if lookup is not None:
        # YAML form: [{key: 0, value: Standby}, {key: [3, 4], value: Alarm}]
        lookup = [(item['key'], item['value']) for item in lookup]

    values = {k: v for k, v in entry.items() if k != 'lookup'}
    return RegisterDefinition(lookup=lookup, **values)


def load_register_catalog(path: str) -> Tuple[RegisterDefinition, ...]:
    """
    Load a register catalog from a YAML file.

    The file holds a top-level ``registers`` list, each entry using the
    RegisterDefinition field names.

    Args:
        path: Path to the YAML catalog

    Returns:
        Tuple of immutable register definitions
    """
    with open(Path(path), 'r') as f:
        document = yaml.safe_load(f) or {}

    entries: List[Dict] = document.get('registers', [])
    if not entries:
        raise ValueError(f"No registers defined in {path}")
    return tuple(_definition_from_dict(entry) for entry in entries)
