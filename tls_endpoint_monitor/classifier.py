"""
Expiry classification for TLS Endpoint Monitor.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone

from tls_endpoint_monitor.models import CertificateStatus

DEFAULT_WARNING_DAYS = 30
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class Classification:
    status: CertificateStatus
    days_remaining: int
    self_signed: bool


def days_until(valid_to: datetime, now: datetime) -> int:
    """Whole days from ``now`` until ``valid_to``, rounded down (may be negative)."""
    if valid_to.tzinfo is None:
        valid_to = valid_to.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return math.floor((valid_to - now).total_seconds() / SECONDS_PER_DAY)


def status_for(days_remaining: int, warning_days: int = DEFAULT_WARNING_DAYS) -> CertificateStatus:
    if days_remaining < 0:
        return CertificateStatus.EXPIRED
    if days_remaining < warning_days:
        return CertificateStatus.WARNING
    return CertificateStatus.VALID


def classify(
    valid_to: datetime,
    issuer: str,
    subject: str,
    now: datetime,
    warning_days: int = DEFAULT_WARNING_DAYS,
) -> Classification:
    """
    Classify a certificate by its remaining lifetime.

    ``issuer`` and ``subject`` must come from the same DN formatter so that a
    plain string comparison detects self-signed certificates.
    """
    days_remaining = days_until(valid_to, now)
    return Classification(
        status=status_for(days_remaining, warning_days),
        days_remaining=days_remaining,
        self_signed=issuer == subject,
    )
