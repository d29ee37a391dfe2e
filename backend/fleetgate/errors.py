class GatewayError(Exception):
    """Base class for every ingestion failure the gateway reports."""

    category = "error"


class FrameDecodeError(GatewayError):
    category = "decode_failed"

    def __init__(self, message: str, raw: bytes | str | None = None):
        super().__init__(message)
        self.raw = raw


class InvalidCoordinateError(GatewayError):
    category = "invalid_coordinates"

    def __init__(self, latitude, longitude):
        super().__init__(f"Coordinates out of range: {latitude}, {longitude}")
        self.latitude = latitude
        self.longitude = longitude


class UnresolvedDeviceError(GatewayError):
    category = "unresolved"

    def __init__(self, identifier: str, reason: str = "device not registered"):
        super().__init__(f"Unresolved device {identifier!r}: {reason}")
        self.identifier = identifier
        self.reason = reason


class TrackingDisabledError(GatewayError):
    category = "tracking_disabled"

    def __init__(self, identifier: str, vehicle_id=None, registration_number: str | None = None):
        label = registration_number or vehicle_id
        super().__init__(f"Live tracking is not enabled for vehicle {label} (device {identifier!r})")
        self.identifier = identifier
        self.vehicle_id = vehicle_id


class PersistenceError(GatewayError):
    category = "persistence_failed"


class UpstreamError(GatewayError):
    category = "upstream_failed"


class UpstreamAuthError(UpstreamError):
    category = "upstream_auth_failed"


class UpstreamTimeoutError(UpstreamError):
    category = "upstream_timeout"


class CommandError(GatewayError):
    category = "command_failed"


class CommandTimeoutError(CommandError):
    category = "command_timeout"

    def __init__(self, device_id: str, timeout: float):
        super().__init__(f"No reply from device {device_id!r} within {timeout:.0f}s")
        self.device_id = device_id
        self.timeout = timeout
