"""Deterministic resource names and address arithmetic.

Everything in this module is pure: names are derived from VPC names and
subnet types only, addresses from CIDR blocks only.  Linux limits interface
names to 15 characters (``IFNAMSIZ - 1``), so link and bridge names are
shortened with a hash-based tag once the verbatim form no longer fits.

Shortening scheme
-----------------
``short_tag(name, width)`` returns ``name`` unchanged when it fits in
``width`` characters.  Longer names keep their first ``width - 5`` characters
followed by ``.`` and four hex digits of the name's SHA-256.  VPC names may not
contain ``.``, so a hashed tag can never equal a verbatim one.  Two long names
that share their leading characters *and* their four hex digits still collide;
callers check for that (see :class:`~linux_vpc.errors.NameCollision`).
"""

from __future__ import annotations

import hashlib
import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

from .errors import InvalidArgument

MAX_IFNAME_LEN = 15
BRIDGE_PREFIX = "br-"
NAMESPACE_PREFIX = "ns-"
PEERING_PREFIX = "vp"

VPC_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,31}$")

# Subnets need room for the .1 gateway and the .2 host.
MAX_PREFIXLEN = 30


class SubnetType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"

    @property
    def tag(self) -> str:
        return self.value[:3]

    @classmethod
    def parse(cls, value: Union[str, "SubnetType"]) -> "SubnetType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidArgument(
                f"subnet type must be 'public' or 'private', got {value!r}"
            ) from None


@dataclass(frozen=True)
class LinkNames:
    """Both ends of the veth pair that plugs a subnet into its VPC bridge."""

    host: str
    namespace: str


def validate_vpc_name(name: str) -> str:
    if not name or not VPC_NAME_RE.match(name):
        raise InvalidArgument(
            f"invalid VPC name {name!r}: use letters, digits, '_' or '-' "
            "(at most 32 characters, starting with a letter or digit)"
        )
    return name


def _digest(value: str, length: int = 4) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def short_tag(name: str, width: int) -> str:
    if width < 6:
        raise ValueError("tag width must leave room for the hash suffix")
    if len(name) <= width:
        return name
    return f"{name[:width - 5]}.{_digest(name)}"


def bridge_name(vpc: str) -> str:
    return BRIDGE_PREFIX + short_tag(vpc, MAX_IFNAME_LEN - len(BRIDGE_PREFIX))


def namespace_name(vpc: str, subnet_type: Union[str, SubnetType]) -> str:
    return f"{NAMESPACE_PREFIX}{vpc}-{SubnetType.parse(subnet_type).value}"


def parse_namespace(namespace: str) -> Optional[Tuple[str, SubnetType]]:
    """Split ``ns-<vpc>-<type>`` back into its parts.

    Returns ``None`` for namespaces that do not follow the convention.  The
    VPC part is matched exactly, so ``ns-main-x-public`` belongs to VPC
    ``main-x`` and never to ``main``.
    """

    if not namespace.startswith(NAMESPACE_PREFIX):
        return None
    body = namespace[len(NAMESPACE_PREFIX):]
    vpc, sep, suffix = body.rpartition("-")
    if not sep or not VPC_NAME_RE.match(vpc):
        return None
    try:
        return vpc, SubnetType(suffix)
    except ValueError:
        return None


def filter_vpc_namespaces(
    namespaces: Iterable[str],
    vpc: str,
    subnet_type: Optional[SubnetType] = None,
) -> List[str]:
    matched = []
    for namespace in namespaces:
        parsed = parse_namespace(namespace)
        if parsed is None or parsed[0] != vpc:
            continue
        if subnet_type is not None and parsed[1] is not subnet_type:
            continue
        matched.append(namespace)
    return matched


def subnet_link_names(vpc: str, subnet_type: Union[str, SubnetType]) -> LinkNames:
    stype = SubnetType.parse(subnet_type)
    stem = f"v{short_tag(vpc, 7)}{stype.tag}"
    return LinkNames(host=f"{stem}-h", namespace=f"{stem}-n")


def peering_key(vpc_a: str, vpc_b: str) -> Tuple[str, str]:
    """Canonical (sorted) form of an unordered VPC pair."""

    first, second = sorted((vpc_a, vpc_b))
    return first, second


def peering_link_names(vpc_a: str, vpc_b: str) -> Tuple[str, str]:
    """Return ``(link on first bridge, link on second bridge)``.

    Names are derived from the canonical pair so that ``(a, b)`` and
    ``(b, a)`` address the same links.  The two tags are joined with ``.``,
    which VPC names cannot contain; a hashed tag always carries its own ``.``
    at index 1, so the split point of a link name is never ambiguous.
    """

    first, second = peering_key(vpc_a, vpc_b)
    tag_first, tag_second = short_tag(first, 6), short_tag(second, 6)
    return (
        f"{PEERING_PREFIX}{tag_first}.{tag_second}",
        f"{PEERING_PREFIX}{tag_second}.{tag_first}",
    )


# ----------------------------------------------------------------------
# Address arithmetic
# ----------------------------------------------------------------------
def parse_cidr(cidr: str) -> ipaddress.IPv4Network:
    try:
        network = ipaddress.ip_network(str(cidr).strip(), strict=False)
    except ValueError as exc:
        raise InvalidArgument(f"invalid CIDR {cidr!r}: {exc}") from None
    if not isinstance(network, ipaddress.IPv4Network):
        raise InvalidArgument(f"only IPv4 CIDR blocks are supported, got {cidr!r}")
    if network.prefixlen > MAX_PREFIXLEN:
        raise InvalidArgument(
            f"CIDR {cidr!r} is too small: prefix must be /{MAX_PREFIXLEN} or shorter"
        )
    return network


def _as_network(cidr: Union[str, ipaddress.IPv4Network]) -> ipaddress.IPv4Network:
    if isinstance(cidr, ipaddress.IPv4Network):
        return cidr
    return parse_cidr(cidr)


def gateway_address(cidr: Union[str, ipaddress.IPv4Network]) -> str:
    """First host address of ``cidr`` (``x.x.x.1`` for octet-aligned blocks)."""

    return str(_as_network(cidr).network_address + 1)


def host_address(cidr: Union[str, ipaddress.IPv4Network]) -> str:
    """Address given to the single host of a subnet (``x.x.x.2``)."""

    return str(_as_network(cidr).network_address + 2)


def with_prefix(address: str, cidr: Union[str, ipaddress.IPv4Network]) -> str:
    return f"{address}/{_as_network(cidr).prefixlen}"


def network_of(interface: str) -> str:
    """Zero the host bits of ``address/prefix``."""

    try:
        return str(ipaddress.ip_interface(interface).network)
    except ValueError as exc:
        raise InvalidArgument(f"invalid interface address {interface!r}: {exc}") from None
