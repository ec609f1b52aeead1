"""
Configuration management for TLS Endpoint Monitor.
"""

import ipaddress
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator


class Config(BaseModel):
    """Configuration model for TLS Endpoint Monitor."""

    # Server settings
    port: int = Field(default=3200, ge=1, le=65535)
    bind_address: str = Field(default="0.0.0.0")  # nosec B104

    # TLS settings for the API endpoint
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None

    # Persistence
    data_file: str = Field(default="./data/tls-endpoint-monitor.json")

    # Probe settings
    probe_timeout: float = Field(default=5.0, gt=0, le=120)
    stall_grace: float = Field(default=5.0, gt=0, le=120)
    workers: int = Field(default=10, ge=1, le=256)
    default_ports: List[int] = Field(default_factory=lambda: [443])
    max_range_hosts: int = Field(default=256, ge=1, le=65536)

    # Classification
    warning_days: int = Field(default=30, ge=0)

    # Scheduling
    schedule_timezone: str = Field(default="UTC")

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = None

    # Operation modes
    dry_run: bool = Field(default=False)

    # Security settings
    allowed_ips: List[str] = Field(default_factory=lambda: ["127.0.0.1", "::1"])
    enable_ip_whitelist: bool = Field(default=True)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("default_ports")
    @classmethod
    def validate_default_ports(cls, v: List[int]) -> List[int]:
        """Validate default ports are usable TCP ports."""
        if not v:
            raise ValueError("default_ports cannot be empty")
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"Port {port} is outside 1..65535")
        return v

    @field_validator("schedule_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate the timezone used to evaluate cron expressions."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{v}'") from e
        return v

    @field_validator("allowed_ips")
    @classmethod
    def validate_allowed_ips(cls, v: List[str]) -> List[str]:
        """Validate IP addresses and CIDR blocks in allowed_ips list."""
        validated_ips = []
        for ip_str in v:
            try:
                if "/" in ip_str:
                    ipaddress.ip_network(ip_str, strict=False)
                else:
                    ipaddress.ip_address(ip_str)
                validated_ips.append(ip_str)
            except ValueError as e:
                logging.error(f"Invalid IP address or network '{ip_str}': {e}")

        # Ensure localhost is always allowed for health checks
        for localhost in ["127.0.0.1", "::1"]:
            if localhost not in validated_ips:
                validated_ips.append(localhost)
                logging.info(f"Added {localhost} to allowed IPs for localhost access")

        return validated_ips

    @property
    def watchdog_timeout(self) -> float:
        """Hard upper bound for a single probe."""
        return self.probe_timeout + self.stall_grace

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.schedule_timezone)


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Config object
    """
    config_data: Dict[str, Any] = {}

    if config_path:
        config_file = Path(config_path)
        if config_file.exists():
            with open(config_file, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        else:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

    config_data.update(_get_env_overrides())

    return Config(**config_data)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _get_env_overrides() -> dict:
    """Get configuration overrides from environment variables."""
    env_mapping: Dict[str, tuple[str, Callable[[str], Any]]] = {
        "TLS_MONITOR_PORT": ("port", int),
        "TLS_MONITOR_BIND_ADDRESS": ("bind_address", str),
        "TLS_MONITOR_TLS_CERT": ("tls_cert", str),
        "TLS_MONITOR_TLS_KEY": ("tls_key", str),
        "TLS_MONITOR_DATA_FILE": ("data_file", str),
        "TLS_MONITOR_PROBE_TIMEOUT": ("probe_timeout", float),
        "TLS_MONITOR_STALL_GRACE": ("stall_grace", float),
        "TLS_MONITOR_WORKERS": ("workers", int),
        "TLS_MONITOR_MAX_RANGE_HOSTS": ("max_range_hosts", int),
        "TLS_MONITOR_WARNING_DAYS": ("warning_days", int),
        "TLS_MONITOR_SCHEDULE_TIMEZONE": ("schedule_timezone", str),
        "TLS_MONITOR_LOG_LEVEL": ("log_level", str),
        "TLS_MONITOR_LOG_FILE": ("log_file", str),
        "TLS_MONITOR_DRY_RUN": ("dry_run", _as_bool),
        "TLS_MONITOR_ENABLE_IP_WHITELIST": ("enable_ip_whitelist", _as_bool),
    }

    overrides: Dict[str, Any] = {}
    for env_var, (config_key, converter) in env_mapping.items():
        value = os.getenv(env_var)
        if value is not None:
            try:
                overrides[config_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for {env_var}: {value} - {e}")

    default_ports = os.getenv("TLS_MONITOR_DEFAULT_PORTS")
    if default_ports:
        try:
            overrides["default_ports"] = [int(p.strip()) for p in default_ports.split(",")]
        except ValueError as e:
            logging.warning(f"Invalid value for TLS_MONITOR_DEFAULT_PORTS: {default_ports} - {e}")

    allowed_ips = os.getenv("TLS_MONITOR_ALLOWED_IPS")
    if allowed_ips:
        overrides["allowed_ips"] = [ip.strip() for ip in allowed_ips.split(",")]

    return overrides


def create_example_config(output_path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example_config = {
        "port": 3200,
        "bind_address": "0.0.0.0",  # nosec B104
        "data_file": "./data/tls-endpoint-monitor.json",
        "probe_timeout": 5.0,
        "stall_grace": 5.0,
        "workers": 10,
        "default_ports": [443, 8443],
        "max_range_hosts": 256,
        "warning_days": 30,
        "schedule_timezone": "UTC",
        "log_level": "INFO",
        "dry_run": False,
        "allowed_ips": ["127.0.0.1", "::1", "192.168.1.0/24"],
        "enable_ip_whitelist": True,
    }

    with open(output_path, "w", encoding="utf-8") as f:
        yaml.dump(example_config, f, default_flow_style=False, sort_keys=False)
