"""Data structures shared by the control-plane components.

Records (:class:`VPC`, :class:`Peering`) round-trip through plain dicts so the
record stores can stay format-agnostic.  The remaining classes describe the
outcome of operations and probes; they are never persisted.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .naming import SubnetType, peering_key


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class VPCStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class PeeringStatus(str, Enum):
    ACTIVE = "active"
    BROKEN = "broken"


@dataclass
class VPC:
    name: str
    cidr: str
    bridge: str
    gateway: str
    created_at: str = field(default_factory=utcnow)
    status: VPCStatus = VPCStatus.ACTIVE

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["status"] = self.status.value
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "VPC":
        return cls(
            name=str(record["name"]),
            cidr=str(record["cidr"]),
            bridge=str(record["bridge"]),
            gateway=str(record["gateway"]),
            created_at=str(record.get("created_at", "")),
            status=VPCStatus(record.get("status", VPCStatus.ACTIVE.value)),
        )


@dataclass(frozen=True)
class VPCSummary:
    name: str
    cidr: str
    bridge: str
    live: bool

    @property
    def state(self) -> str:
        return "UP" if self.live else "DOWN"


@dataclass(frozen=True)
class Subnet:
    vpc: str
    type: SubnetType
    cidr: str
    namespace: str
    host_link: str
    namespace_link: str
    address: str
    gateway: str


@dataclass
class SubnetInfo:
    """Live view of one subnet namespace, as reported by ``list_subnets``."""

    namespace: str
    vpc: str
    type: SubnetType
    addresses: List[str] = field(default_factory=list)
    routes: List[str] = field(default_factory=list)


@dataclass
class Peering:
    vpc_a: str
    vpc_b: str
    link_a: str
    link_b: str
    created_at: str = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if (self.vpc_a, self.vpc_b) != peering_key(self.vpc_a, self.vpc_b):
            self.vpc_a, self.vpc_b = self.vpc_b, self.vpc_a
            self.link_a, self.link_b = self.link_b, self.link_a

    @property
    def key(self) -> Tuple[str, str]:
        return self.vpc_a, self.vpc_b

    @property
    def links(self) -> Tuple[str, str]:
        return self.link_a, self.link_b

    def involves(self, vpc: str) -> bool:
        return vpc in self.key

    def peer_of(self, vpc: str) -> str:
        return self.vpc_b if vpc == self.vpc_a else self.vpc_a

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Peering":
        return cls(
            vpc_a=str(record["vpc_a"]),
            vpc_b=str(record["vpc_b"]),
            link_a=str(record["link_a"]),
            link_b=str(record["link_b"]),
            created_at=str(record.get("created_at", "")),
        )


@dataclass(frozen=True)
class PeeringView:
    peering: Peering
    status: PeeringStatus


@dataclass(frozen=True)
class FilterRule:
    """One iptables rule: ``iptables -t <table> -A <chain> <spec...>``."""

    table: str
    chain: str
    spec: Tuple[str, ...]

    def describe(self) -> str:
        prefix = "" if self.table == "filter" else f"-t {self.table} "
        return f"{prefix}{self.chain} {' '.join(self.spec)}"


@dataclass(frozen=True)
class FirewallRule:
    protocol: str
    action: str
    port: Optional[int] = None
    position: int = 0

    @property
    def target(self) -> str:
        return "ACCEPT" if self.action == "allow" else "DROP"

    def as_spec(self) -> Tuple[str, ...]:
        if self.protocol == "icmp":
            return ("-p", "icmp", "-j", self.target)
        return ("-p", self.protocol, "--dport", str(self.port), "-j", self.target)

    def describe(self) -> str:
        if self.protocol == "icmp":
            return f"{self.action} icmp"
        return f"{self.action} {self.protocol}/{self.port}"


@dataclass(frozen=True)
class RuleGroup:
    subnet: str
    ingress: Sequence[FirewallRule]


@dataclass
class OperationResult:
    """Outcome of a multi-target operation.

    ``succeeded`` and ``skipped`` list targets that reached (or were already
    in) the desired state; ``warnings`` lists per-target failures that did not
    abort the batch.
    """

    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.succeeded) or not self.warnings

    def merge(self, other: "OperationResult") -> "OperationResult":
        self.succeeded.extend(other.succeeded)
        self.skipped.extend(other.skipped)
        self.warnings.extend(other.warnings)
        return self


@dataclass(frozen=True)
class ProbeResult:
    namespace: str
    check: str
    target: str
    expected: bool
    reachable: bool

    @property
    def passed(self) -> bool:
        return self.expected == self.reachable


@dataclass(frozen=True)
class IsolationReport:
    source_namespace: str
    source_address: str
    target_namespace: str
    target_address: str
    reachable: bool
    peered: bool

    @property
    def isolated(self) -> bool:
        return not self.reachable

    @property
    def peering_confirmed(self) -> Optional[bool]:
        """``None`` without a peering record, else whether traffic flows."""

        if not self.peered:
            return None
        return self.reachable


@dataclass
class NATStatus:
    vpc: str
    forwarding_enabled: bool
    egress_interface: Optional[str]
    masquerade_rules: List[str] = field(default_factory=list)
    forward_rules: List[str] = field(default_factory=list)
    public_namespaces: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DiagnosticCheck:
    name: str
    ok: bool
    detail: str = ""


@dataclass(frozen=True)
class PortProbe:
    namespace: str
    address: str
    port: Optional[int]
    state: str  # "open", "closed", "filtered" or "allowed"/"blocked" for icmp


@dataclass(frozen=True)
class ProbeSettings:
    """Budget for reachability probes."""

    timeout: float = 1.0
    retries: int = 2
    external_address: str = "8.8.8.8"


@dataclass
class Workload:
    """A test HTTP server started inside a subnet namespace."""

    namespace: str
    app: str
    port: int
    address: str
    pid: int
    log_path: str = ""
    started_at: str = field(default_factory=utcnow)

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Workload":
        return cls(
            namespace=str(record["namespace"]),
            app=str(record["app"]),
            port=int(record["port"]),
            address=str(record["address"]),
            pid=int(record["pid"]),
            log_path=str(record.get("log_path", "")),
            started_at=str(record.get("started_at", "")),
        )

    @property
    def url(self) -> str:
        return f"http://{self.address}:{self.port}/"


@dataclass(frozen=True)
class WorkloadStatus:
    workload: Workload
    alive: bool
