"""Abstract interface over the kernel networking control surface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Sequence

from ..models import FilterRule


class NetworkDriver(ABC):
    """Everything the managers need from bridges, namespaces and iptables.

    Methods taking ``namespace`` operate inside that network namespace when
    it is given and on the host otherwise.  Deletions return ``False`` instead
    of failing when the object is already gone; any other rejection by the
    kernel raises :class:`~linux_vpc.errors.ExternalSystemFailure`.
    """

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------
    @abstractmethod
    def link_exists(self, name: str, namespace: Optional[str] = None) -> bool:
        """Return whether interface ``name`` is present."""

    @abstractmethod
    def create_bridge(self, name: str) -> None:
        """Create a bridge device on the host."""

    @abstractmethod
    def create_veth_pair(self, name: str, peer: str) -> None:
        """Create the host-side veth pair ``name`` <-> ``peer``."""

    @abstractmethod
    def delete_link(self, name: str, namespace: Optional[str] = None) -> bool:
        """Delete interface ``name`` (and its veth peer)."""

    @abstractmethod
    def set_link_up(self, name: str, namespace: Optional[str] = None) -> None:
        """Bring interface ``name`` up."""

    @abstractmethod
    def move_to_namespace(self, name: str, namespace: str) -> None:
        """Move host interface ``name`` into ``namespace``."""

    @abstractmethod
    def attach_to_bridge(self, name: str, bridge: str) -> None:
        """Enslave host interface ``name`` to ``bridge``."""

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------
    @abstractmethod
    def add_address(self, device: str, address: str, namespace: Optional[str] = None) -> bool:
        """Assign ``address`` (``a.b.c.d/len``); ``False`` if already present."""

    @abstractmethod
    def delete_address(self, device: str, address: str, namespace: Optional[str] = None) -> bool:
        """Remove ``address`` from ``device``; ``False`` if it was absent."""

    @abstractmethod
    def get_addresses(self, device: str, namespace: Optional[str] = None) -> List[str]:
        """Return the IPv4 addresses of ``device`` as ``a.b.c.d/len``."""

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------
    @abstractmethod
    def create_namespace(self, name: str) -> None:
        """Create network namespace ``name``."""

    @abstractmethod
    def delete_namespace(self, name: str) -> bool:
        """Delete network namespace ``name``."""

    @abstractmethod
    def list_namespaces(self) -> List[str]:
        """Return the names of all network namespaces."""

    def namespace_exists(self, name: str) -> bool:
        return name in self.list_namespaces()

    # ------------------------------------------------------------------
    # Routes and forwarding
    # ------------------------------------------------------------------
    @abstractmethod
    def add_route(
        self,
        destination: str,
        namespace: Optional[str] = None,
        *,
        gateway: Optional[str] = None,
        device: Optional[str] = None,
        onlink: bool = False,
    ) -> bool:
        """Add a route (``destination`` may be ``"default"``); ``False`` if present."""

    @abstractmethod
    def delete_route(self, destination: str, namespace: Optional[str] = None) -> bool:
        """Remove the route to ``destination``; ``False`` if absent."""

    @abstractmethod
    def list_routes(self, namespace: Optional[str] = None) -> List[str]:
        """Return the main routing table rendered as ``ip route`` lines."""

    @abstractmethod
    def get_default_interface(self) -> Optional[str]:
        """Return the egress interface of the host default route."""

    @abstractmethod
    def get_ip_forwarding(self, namespace: Optional[str] = None) -> bool:
        """Return the ``net.ipv4.ip_forward`` setting."""

    @abstractmethod
    def set_ip_forwarding(self, enabled: bool = True, namespace: Optional[str] = None) -> None:
        """Write the ``net.ipv4.ip_forward`` setting."""

    # ------------------------------------------------------------------
    # Packet filter
    # ------------------------------------------------------------------
    @abstractmethod
    def rule_exists(self, rule: FilterRule, namespace: Optional[str] = None) -> bool:
        """Return whether ``rule`` is installed."""

    @abstractmethod
    def append_rule(self, rule: FilterRule, namespace: Optional[str] = None) -> None:
        """Append ``rule`` to its chain."""

    @abstractmethod
    def insert_rule(self, rule: FilterRule, namespace: Optional[str] = None) -> None:
        """Insert ``rule`` at the head of its chain."""

    @abstractmethod
    def delete_rule(self, rule: FilterRule, namespace: Optional[str] = None) -> bool:
        """Delete ``rule``; ``False`` if it was not installed."""

    @abstractmethod
    def list_rules(
        self,
        table: str = "filter",
        chain: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> List[str]:
        """Return rules as ``iptables -S`` lines."""

    @abstractmethod
    def reset_filter(self, namespace: Optional[str] = None) -> None:
        """Flush all rules, delete custom chains and zero counters."""

    @abstractmethod
    def set_policy(self, chain: str, target: str, namespace: Optional[str] = None) -> None:
        """Set the default policy of a built-in chain."""

    # ------------------------------------------------------------------
    # Probes and processes
    # ------------------------------------------------------------------
    @abstractmethod
    def ping(
        self,
        address: str,
        namespace: Optional[str] = None,
        *,
        timeout: float = 1.0,
        retries: int = 1,
    ) -> bool:
        """Return whether ``address`` answers ICMP echo within the budget."""

    @abstractmethod
    def probe_tcp(self, address: str, port: int, *, timeout: float = 1.0) -> str:
        """Connect from the host; return ``open``, ``closed`` or ``filtered``."""

    @abstractmethod
    def spawn(
        self,
        argv: Sequence[str],
        namespace: str,
        *,
        log_path: Path,
        cwd: Optional[Path] = None,
    ) -> int:
        """Start a detached process inside ``namespace`` and return its pid."""

    @abstractmethod
    def process_alive(self, pid: int) -> bool:
        """Return whether process ``pid`` is running."""

    @abstractmethod
    def terminate(self, pid: int) -> bool:
        """Send SIGTERM to ``pid``; ``False`` if it was not running."""
