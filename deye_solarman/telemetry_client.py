"""Register-level telemetry reads on top of the V5 transport."""

from typing import Dict, Iterable, List, Optional, Sequence

from .logging_setup import get_logger
from .profiles import DEVICE_SERIAL, SERIAL_DEFINITION
from .register_parser import (
    MAX_REGISTERS_PER_READ,
    ReadRequest,
    RegisterDefinition,
    Value,
    build_read_requests,
    decode_all,
    decode_register,
)
from .solarman_v5 import FC_READ_INPUT, SolarmanV5Client, TransportMode


class TelemetryClient:
    """Plans, executes and decodes the register reads for one device."""

    def __init__(self, client: SolarmanV5Client, max_registers: int = MAX_REGISTERS_PER_READ):
        self.client = client
        self.max_registers = max_registers
        self.log = get_logger()

    @property
    def transport_mode(self) -> TransportMode:
        return self.client.transport

    def fetch_registers(self, requests: Sequence[ReadRequest]) -> Dict[int, int]:
        """
        Execute read requests one after another and merge the results.

        Any failed request aborts the whole fetch; the error propagates.

        Args:
            requests: Planned reads

        Returns:
            Register map of address -> raw uint16
        """
        register_map: Dict[int, int] = {}
        for request in requests:
            if request.fc == FC_READ_INPUT:
                values = self.client.read_input_registers(request.start, request.count)
            else:
                values = self.client.read_holding_registers(request.start, request.count)
            for i, value in enumerate(values):
                register_map[request.start + i] = value
        return register_map

    def read_all(self, definitions: Iterable[RegisterDefinition]) -> Dict[str, Value]:
        """Read and decode every definition in a single cycle."""
        definitions = list(definitions)
        requests = build_read_requests(definitions, self.max_registers)
        self.log.debug(
            f"{self.client.host}: {len(definitions)} definitions -> {plan_summary(requests)}"
        )
        register_map = self.fetch_registers(requests)
        return decode_all(definitions, register_map)

    def read_device_serial(self, definitions: Iterable[RegisterDefinition] = None) -> Optional[str]:
        """Read the inverter's own serial number (the rule 5 identity register)."""
        definition = SERIAL_DEFINITION
        for candidate in definitions or ():
            if candidate.name == DEVICE_SERIAL:
                definition = candidate
                break

        register_map = self.fetch_registers(build_read_requests([definition], self.max_registers))
        serial = decode_register(definition, register_map)
        return serial or None

    def disconnect(self):
        self.client.disconnect()

    def get_stats(self) -> dict:
        return self.client.get_stats()


def plan_summary(requests: List[ReadRequest]) -> str:
    """Compact text form of a read plan for log lines."""
    return ', '.join(f"fc{r.fc}@{r.start}x{r.count}" for r in requests)
