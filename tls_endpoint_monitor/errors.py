"""
Error taxonomy for TLS Endpoint Monitor.
"""


class MonitorError(Exception):
    """Base class for all monitor errors."""


class ProbeError(MonitorError):
    """A TLS probe against a single endpoint failed."""

    kind = "probe_error"

    def __init__(self, host: str, port: int, reason: str):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"{host}:{port} - {reason}")


class ProbeConnectionError(ProbeError):
    """Connection refused, reset, DNS failure or TLS protocol failure."""

    kind = "connection_error"


class ProbeTimeout(ProbeError):
    """Connect or handshake did not finish within the probe timeout."""

    kind = "timeout"


class ProbeStalled(ProbeError):
    """Watchdog forcibly aborted a connection stuck mid-handshake."""

    kind = "stalled"


class NoCertificate(ProbeError):
    """Handshake completed but the peer presented no certificate."""

    kind = "no_certificate"


class CertificateDecodeError(MonitorError):
    """Raw certificate bytes could not be decoded as X.509."""

    kind = "decode_error"


class InvalidScheduleExpression(MonitorError, ValueError):
    """Frequency is neither a known cadence nor a valid cron expression."""

    def __init__(self, expression: str, reason: str = ""):
        self.expression = expression
        message = f"Invalid schedule expression '{expression}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class InvalidTarget(MonitorError, ValueError):
    """A host or IP range input could not be turned into scan targets."""

    kind = "invalid_target"


class ScanNotFound(MonitorError, LookupError):
    """No scheduled scan exists with the requested id."""

    def __init__(self, scan_id: int):
        self.scan_id = scan_id
        super().__init__(f"Scheduled scan with ID {scan_id} not found")


class CertificateNotFound(MonitorError, LookupError):
    """No stored certificate record exists for the endpoint."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        super().__init__(f"No certificate record for {host}:{port}")


class ScanAlreadyRunning(MonitorError):
    """A run for this scheduled scan is already in flight."""

    def __init__(self, scan_id: int):
        self.scan_id = scan_id
        super().__init__(f"Scheduled scan with ID {scan_id} is already running")


class StoreUnavailable(MonitorError):
    """The persistence store cannot be opened or written."""
