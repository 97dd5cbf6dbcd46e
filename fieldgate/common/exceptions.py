"""
Custom Exception Classes for FieldGate

Hierarchical exception structure shared by the register, device and
discovery services.
"""


class FieldGateError(Exception):
    """Base exception for all FieldGate errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(FieldGateError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class ValidationError(FieldGateError):
    """Invalid input: register maps, scan configs, calibration values"""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or [message]
        super().__init__(message, recoverable=False)


class EquipmentNotFoundError(FieldGateError):
    """Unknown equipment reference"""

    def __init__(self, equipment_id: int | str):
        self.equipment_id = equipment_id
        super().__init__(f"Equipment not found: {equipment_id}", recoverable=False)


class DeviceError(FieldGateError):
    """Device communication errors"""

    def __init__(
        self,
        message: str,
        equipment_id: int | str | None = None,
        equipment_name: str | None = None,
        recoverable: bool = True,
    ):
        self.equipment_id = equipment_id
        self.equipment_name = equipment_name
        super().__init__(f"Device Error: {message}", recoverable)


class CommunicationError(DeviceError):
    """Transport unreachable or request timed out"""

    def __init__(
        self,
        message: str,
        equipment_id: int | str | None = None,
        equipment_name: str | None = None,
        host: str | None = None,
        port: int | None = None,
        timed_out: bool = False,
    ):
        self.host = host
        self.port = port
        self.timed_out = timed_out
        super().__init__(message, equipment_id, equipment_name, recoverable=True)


class ProtocolError(DeviceError):
    """Malformed or Modbus exception response"""

    def __init__(
        self,
        message: str,
        equipment_id: int | str | None = None,
        equipment_name: str | None = None,
        exception_code: int | None = None,
    ):
        self.exception_code = exception_code
        super().__init__(message, equipment_id, equipment_name, recoverable=True)


class DeviceBusyError(DeviceError):
    """Another read or write is already in flight for this device"""

    def __init__(
        self,
        equipment_id: int | str | None = None,
        equipment_name: str | None = None,
    ):
        super().__init__(
            "Operation already in progress",
            equipment_id,
            equipment_name,
            recoverable=True,
        )


class WriteError(DeviceError):
    """Coil or register write rejected by the device"""

    def __init__(
        self,
        message: str,
        equipment_id: int | str | None = None,
        equipment_name: str | None = None,
        register: int | None = None,
        value: int | bool | list | None = None,
    ):
        self.register = register
        self.value = value
        super().__init__(message, equipment_id, equipment_name, recoverable=True)
