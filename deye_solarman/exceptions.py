"""Error kinds raised by the Solarman V5 transport.

All errors derive from pymodbus' exception hierarchy so callers that already
handle ``ModbusException`` keep working.
"""

from pymodbus.exceptions import (
    ConnectionException,
    ModbusException,
    ModbusIOException,
)

# Modbus exception codes as reported in the byte after the function code
MODBUS_EXCEPTION_NAMES = {
    0x01: "ILLEGAL_FUNCTION",
    0x02: "ILLEGAL_DATA_ADDRESS",
    0x03: "ILLEGAL_DATA_VALUE",
    0x04: "SLAVE_DEVICE_FAILURE",
    0x05: "ACKNOWLEDGE",
    0x06: "SLAVE_DEVICE_BUSY",
    0x08: "MEMORY_PARITY_ERROR",
    0x0A: "GATEWAY_PATH_UNAVAILABLE",
    0x0B: "GATEWAY_TARGET_DEVICE_FAILED_TO_RESPOND",
}


class SolarmanError(ModbusException):
    """Base class for every Solarman transport error."""


class TransportConnectionError(SolarmanError, ConnectionException):
    """Socket refused, timed out or closed while talking to the logger."""


class FrameFormatError(SolarmanError, ModbusIOException):
    """Response frame failed validation (markers, control code, length, shape)."""


class TransportMismatchError(FrameFormatError):
    """Response uses the other Modbus framing (RTU vs TCP) than the request did."""

    def __init__(self, detected_mode, string: str = ""):
        self.detected_mode = detected_mode
        super().__init__(string or f"response is {detected_mode.value}-framed")


class ModbusExceptionError(SolarmanError):
    """Device answered with a Modbus exception response."""

    def __init__(self, exception_code: int, function_code: int = None):
        self.exception_code = exception_code
        self.function_code = function_code
        name = MODBUS_EXCEPTION_NAMES.get(exception_code, "UNKNOWN")
        super().__init__(
            f"Modbus exception code {exception_code} ({name})"
            + (f" for function 0x{function_code:02X}" if function_code is not None else "")
        )
