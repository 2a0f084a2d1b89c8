"""Reader for the host DHCP lease table (``/var/db/dhcpd_leases``).

The table is owned by the host's network service and only ever read here.
Records look like::

    {
        name=boot2docker
        ip_address=192.168.64.2
        hw_address=1,a6:3:c4:1e:2f:9
        identifier=1,a6:3:c4:1e:2f:9
        lease=0x5604e7b5
    }

Parsing is a sequential scan over two variables rather than a per-record
parse: every ``ip_address`` line overwrites the current address and every
``hw_address`` line binds the current address to that hardware address.
Since the service appends leases in order, the last binding for a MAC is
its most recent lease.
"""

import logging
import re
from pathlib import Path

from xhyve_driver.errors import AddressResolutionError, LeaseTableMissingError
from xhyve_driver.models import LeaseEntry


logger = logging.getLogger(__name__)

_IP_RE = re.compile(r"^\s*ip_address=(.+?)\s*$")
_HW_RE = re.compile(r"^\s*hw_address=\d+,(.+?)\s*$")


def normalize_mac(value: str) -> str:
    """Lower-case a MAC and drop leading zeros per octet (a6:03:... -> a6:3:...)."""
    octets = value.strip().lower().split(":")
    return ":".join(octet.lstrip("0") or "0" for octet in octets)


def parse_leases(text: str) -> list[LeaseEntry]:
    entries: list[LeaseEntry] = []
    last_ip = ""
    for line in text.splitlines():
        match = _IP_RE.match(line)
        if match:
            last_ip = match.group(1)
            continue
        match = _HW_RE.match(line)
        if match:
            entries.append(
                LeaseEntry(hw_address=match.group(1), ip_address=last_ip, order=len(entries))
            )
    return entries


def read_lease_table(lease_file: str | Path) -> str:
    path = Path(lease_file)
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError as exc:
        raise LeaseTableMissingError(str(path)) from exc
    except OSError as exc:
        raise AddressResolutionError(f"lease table unreadable {path}: {exc}") from exc


def resolve_address(hw_address: str | None, lease_file: str | Path) -> str | None:
    """Return the most recent IP leased to ``hw_address``.

    ``None`` for ``hw_address`` takes the last hardware entry in the table,
    whatever its MAC. Returns ``None`` when no entry matches.
    """
    entries = parse_leases(read_lease_table(lease_file))
    if hw_address is None:
        candidates = entries
    else:
        wanted = normalize_mac(hw_address)
        candidates = [e for e in entries if normalize_mac(e.hw_address) == wanted]
    if not candidates:
        return None

    entry = candidates[-1]
    if not entry.ip_address:
        raise AddressResolutionError(
            f"IP not found for MAC {entry.hw_address} in DHCP leases"
        )
    logger.debug(
        "lease resolved hw_address=%s ip_address=%s", entry.hw_address, entry.ip_address
    )
    return entry.ip_address


class LeaseTableReader:
    def __init__(self, lease_file: str | Path):
        self.lease_file = Path(lease_file)

    def resolve(self, hw_address: str | None) -> str | None:
        return resolve_address(hw_address, self.lease_file)
