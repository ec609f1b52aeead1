"""
Data model for TLS Endpoint Monitor.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class CertificateStatus(str, Enum):
    """Health classification of an endpoint certificate."""

    VALID = "valid"
    WARNING = "warning"
    EXPIRED = "expired"
    ERROR = "error"


class CertificateRecord(BaseModel):
    """Latest scan result for one host:port endpoint."""

    host: str
    port: int = Field(ge=1, le=65535)
    subject: str = "Unknown"
    issuer: str = "Unknown"
    common_name: str = ""
    organization: str = ""
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    fingerprint: str = ""
    serial_number: str = ""
    signature_algorithm: str = "unknown"
    self_signed: bool = False
    days_remaining: Optional[int] = None
    key_usage: List[str] = Field(default_factory=list)
    tls_version: Optional[str] = None
    cipher: Optional[str] = None
    status: CertificateStatus
    error: Optional[str] = None
    last_scanned: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def check_error_matches_status(self) -> "CertificateRecord":
        """An error reason is carried exactly when the status is error."""
        if self.status == CertificateStatus.ERROR:
            if not self.error:
                self.error = "Unknown error"
        elif self.error is not None:
            raise ValueError("error is only allowed on records with status 'error'")
        return self

    @property
    def key(self) -> Tuple[str, int]:
        return (self.host, self.port)

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


class ScheduledScan(BaseModel):
    """Recurring scan definition."""

    id: Optional[int] = None
    name: str = Field(min_length=1)
    hosts: List[str]
    ports: List[int] = Field(default_factory=lambda: [443])
    frequency: str = Field(default="daily")
    active: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name cannot be empty")
        return v

    @field_validator("hosts")
    @classmethod
    def validate_hosts(cls, v: List[str]) -> List[str]:
        """Strip, drop blanks and duplicates while keeping the given order."""
        hosts: List[str] = []
        for host in v:
            host = host.strip()
            if host and host not in hosts:
                hosts.append(host)
        if not hosts:
            raise ValueError("at least one valid host is required")
        return hosts

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: List[int]) -> List[int]:
        ports: List[int] = []
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"port {port} is outside 1..65535")
            if port not in ports:
                ports.append(port)
        if not ports:
            raise ValueError("at least one valid port is required")
        return ports

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, v: str) -> str:
        # Syntax is checked by the scheduler at save time so that stored
        # definitions with a broken expression can still be loaded.
        v = " ".join(v.split())
        if not v:
            raise ValueError("frequency cannot be empty")
        return v
