class DeviceBridgeError(RuntimeError):
    """Base class for failures talking to a connected device."""

    code = "device_error"
    status_code = 500


class NoDeviceConnected(DeviceBridgeError):
    code = "no_device"
    status_code = 400

    def __init__(self, message: str = "No device connected") -> None:
        super().__init__(message)


class ToolUnavailable(DeviceBridgeError):
    """The device-bridge program is not installed or not in PATH."""

    code = "tool_unavailable"
    status_code = 503


class ParseFailure(DeviceBridgeError):
    """Tool output did not have the expected shape."""

    code = "parse_failure"
    status_code = 502


class MissingRequiredSignal(DeviceBridgeError):
    """A value needed for this request is absent and has no safe default."""

    code = "missing_signal"
    status_code = 422


class TransientIOFailure(DeviceBridgeError):
    code = "io_failure"
    status_code = 500
