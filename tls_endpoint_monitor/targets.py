"""
Scan target parsing for TLS Endpoint Monitor.

Hosts may be given as hostnames, IP addresses, CIDR blocks
(``10.0.0.0/30``) or inclusive dash ranges (``10.0.0.1-10.0.0.5`` or
``10.0.0.1-5``). Ranges are expanded to individual addresses.
"""

import ipaddress
import itertools
import re
from typing import Iterable, List, Union

from tls_endpoint_monitor.errors import InvalidTarget

DEFAULT_MAX_RANGE_HOSTS = 256

_SEPARATORS = re.compile(r"[,;\s]+")


def split_hosts(text: str) -> List[str]:
    """Split free-form host input on commas, semicolons and whitespace."""
    return [host for host in (h.strip() for h in _SEPARATORS.split(text)) if host]


def parse_ports(value: Union[str, int, Iterable[Union[str, int]]]) -> List[int]:
    """
    Parse port input, silently dropping anything outside 1..65535.

    Accepts a separated string, a single int, or an iterable of either.
    """
    if isinstance(value, int):
        items: Iterable[Union[str, int]] = [value]
    elif isinstance(value, str):
        items = _SEPARATORS.split(value)
    else:
        items = value

    ports: List[int] = []
    for item in items:
        try:
            port = int(str(item).strip())
        except ValueError:
            continue
        if 0 < port < 65536 and port not in ports:
            ports.append(port)
    return ports


def _expand_cidr(host: str, max_hosts: int) -> List[str]:
    try:
        network = ipaddress.ip_network(host, strict=False)
    except ValueError as e:
        raise InvalidTarget(f"Invalid CIDR range '{host}': {e}") from e

    if network.num_addresses == 1:
        return [str(network.network_address)]

    addresses = list(itertools.islice(network.hosts(), max_hosts + 1))
    if len(addresses) > max_hosts:
        raise InvalidTarget(
            f"Range '{host}' expands to more than {max_hosts} hosts"
        )
    return [str(address) for address in addresses]


def _expand_dash_range(host: str, max_hosts: int) -> List[str]:
    start_text, end_text = (part.strip() for part in host.split("-", 1))
    try:
        start = ipaddress.ip_address(start_text)
    except ValueError:
        # Hostname that happens to contain a dash
        return [host]

    try:
        if end_text.isdigit() and start.version == 4:
            prefix = str(start).rsplit(".", 1)[0]
            end = ipaddress.ip_address(f"{prefix}.{end_text}")
        else:
            end = ipaddress.ip_address(end_text)
    except ValueError as e:
        raise InvalidTarget(f"Invalid IP range '{host}': {e}") from e

    if end.version != start.version:
        raise InvalidTarget(f"Invalid IP range '{host}': mixed address families")
    if int(end) < int(start):
        raise InvalidTarget(f"Invalid IP range '{host}': end is before start")

    count = int(end) - int(start) + 1
    if count > max_hosts:
        raise InvalidTarget(f"Range '{host}' expands to more than {max_hosts} hosts")

    return [str(start + offset) for offset in range(count)]


def expand_host(host: str, max_hosts: int = DEFAULT_MAX_RANGE_HOSTS) -> List[str]:
    """
    Expand one host input into the addresses it names.

    Raises:
        InvalidTarget: malformed range or one larger than ``max_hosts``
    """
    host = host.strip()
    if not host:
        raise InvalidTarget("Empty host")
    if "/" in host:
        return _expand_cidr(host, max_hosts)
    if "-" in host:
        return _expand_dash_range(host, max_hosts)
    return [host]
