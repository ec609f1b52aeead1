"""
TLS probe for TLS Endpoint Monitor.

Connects to a single host:port, completes the TLS handshake without trust
enforcement and returns the raw leaf certificate presented by the peer.
"""

import asyncio
import ssl
from dataclasses import dataclass
from typing import Optional

from tls_endpoint_monitor.errors import (
    NoCertificate,
    ProbeConnectionError,
    ProbeStalled,
    ProbeTimeout,
)
from tls_endpoint_monitor.logger import get_logger, log_probe_start

DEFAULT_TIMEOUT = 5.0
DEFAULT_STALL_GRACE = 5.0

# Upper bound on waiting for a graceful TLS shutdown from the peer
CLOSE_TIMEOUT = 1.0


@dataclass
class ProbeResult:
    """Raw handshake outcome for one endpoint."""

    host: str
    port: int
    der: bytes
    tls_version: Optional[str] = None
    cipher: Optional[str] = None


def create_probe_context() -> ssl.SSLContext:
    """
    Build a client context that observes certificates instead of trusting them.

    Self-signed, expired and otherwise untrusted chains are accepted and legacy
    protocol versions are allowed so older internal endpoints stay visible.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE

    try:
        context.minimum_version = ssl.TLSVersion.TLSv1
    except (ValueError, AttributeError):
        pass

    try:
        context.set_ciphers("DEFAULT:@SECLEVEL=0")
    except ssl.SSLError:
        pass

    return context


class CertificateProbe:
    """Retrieves leaf certificates from TLS endpoints."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        stall_grace: float = DEFAULT_STALL_GRACE,
        context: Optional[ssl.SSLContext] = None,
    ):
        self.timeout = timeout
        self.stall_grace = stall_grace
        self.context = context or create_probe_context()
        self.logger = get_logger("probe")

    @property
    def watchdog_timeout(self) -> float:
        return self.timeout + self.stall_grace

    async def probe(self, host: str, port: int) -> ProbeResult:
        """
        Fetch the leaf certificate from host:port.

        Args:
            host: Hostname or IP address, also used for SNI
            port: TCP port

        Returns:
            ProbeResult with the DER encoded certificate

        Raises:
            ProbeConnectionError: refused, reset, DNS or TLS protocol failure
            ProbeTimeout: connect or handshake exceeded ``timeout``
            ProbeStalled: the watchdog aborted a connection that never settled
            NoCertificate: the peer presented no certificate
        """
        log_probe_start(self.logger, host, port)
        try:
            return await asyncio.wait_for(self._probe(host, port), timeout=self.watchdog_timeout)
        except asyncio.TimeoutError as e:
            self.logger.error(f"Forcibly closing stalled connection to {host}:{port}")
            raise ProbeStalled(
                host, port, f"Connection stalled - forcibly closed after {self.watchdog_timeout}s"
            ) from e

    async def _probe(self, host: str, port: int) -> ProbeResult:
        writer: Optional[asyncio.StreamWriter] = None
        try:
            writer = await self._connect(host, port)

            ssl_object = writer.get_extra_info("ssl_object")
            der = ssl_object.getpeercert(binary_form=True) if ssl_object is not None else None
            if not der:
                raise NoCertificate(host, port, "No certificate found")

            cipher = ssl_object.cipher()
            self.logger.debug(f"TLS connection established with {host}:{port}")
            return ProbeResult(
                host=host,
                port=port,
                der=der,
                tls_version=ssl_object.version(),
                cipher=cipher[0] if cipher else None,
            )
        finally:
            if writer is not None:
                await self._close(writer)

    async def _connect(self, host: str, port: int) -> asyncio.StreamWriter:
        """Open the TCP connection and complete the TLS handshake."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    host, port, ssl=self.context, server_hostname=host
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProbeTimeout(host, port, f"Connection timeout after {self.timeout}s") from e
        except ssl.SSLError as e:
            raise ProbeConnectionError(host, port, f"TLS handshake failed: {e}") from e
        except OSError as e:
            reason = e.strerror or str(e) or type(e).__name__
            raise ProbeConnectionError(host, port, f"Connection error: {reason}") from e
        return writer

    async def _close(self, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_TIMEOUT)
        except (OSError, asyncio.TimeoutError):
            # Peer did not complete the TLS shutdown; drop the transport.
            writer.transport.abort()
        except asyncio.CancelledError:
            writer.transport.abort()
            raise
