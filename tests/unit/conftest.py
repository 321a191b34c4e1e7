from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from linux_vpc import build_control_plane
from linux_vpc.drivers.base import NetworkDriver
from linux_vpc.errors import ExternalSystemFailure
from linux_vpc.models import FilterRule, ProbeSettings

HOST = None
BUILTIN_CHAINS = {
    "filter": ("INPUT", "FORWARD", "OUTPUT"),
    "nat": ("PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"),
}


@dataclass
class FakeLink:
    name: str
    kind: str
    space: Optional[str] = HOST
    peer: Optional["FakeLink"] = None
    master: Optional[str] = None
    up: bool = False
    addresses: List[str] = field(default_factory=list)


@dataclass
class FakeRoute:
    destination: str
    gateway: Optional[str] = None
    device: Optional[str] = None
    onlink: bool = False

    @property
    def network(self) -> ipaddress.IPv4Network:
        if self.destination == "default":
            return ipaddress.IPv4Network("0.0.0.0/0")
        return ipaddress.IPv4Network(self.destination, strict=False)


class FakeNetworkDriver(NetworkDriver):
    """In-memory kernel: links, namespaces, routes and a small iptables.

    ``ping`` and ``probe_tcp`` walk the simulated topology: layer-2 segments
    made of bridges joined by veth pairs, routing tables in the namespaces,
    host FORWARD/NAT rules and namespace INPUT rules.
    """

    def __init__(self) -> None:
        self.spaces: Dict[Optional[str], Dict[str, FakeLink]] = {HOST: {}}
        self.routes: Dict[Optional[str], List[FakeRoute]] = {HOST: []}
        self.forwarding: Dict[Optional[str], bool] = {HOST: False}
        self.rules: Dict[Optional[str], Dict[Tuple[str, str], List[Tuple[str, ...]]]] = {HOST: {}}
        self.policies: Dict[Optional[str], Dict[str, str]] = {HOST: {}}
        self.default_interface: Optional[str] = "eth0"
        self.internet = True
        self.calls: List[Tuple] = []
        self.failures: Dict[str, Optional[object]] = {}
        self.listeners: Set[Tuple[str, int]] = set()
        self.processes: Dict[int, List[str]] = {}
        self._next_pid = 4000
        self.spaces[HOST]["lo"] = FakeLink("lo", "loopback", up=True)
        self.spaces[HOST]["eth0"] = FakeLink("eth0", "ether", up=True, addresses=["192.0.2.10/24"])

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------
    def fail(self, method: str, match: Optional[object] = None) -> None:
        """Make the next ``method`` call (whose first argument is ``match``) fail."""

        self.failures[method] = match

    def _record(self, method: str, *args) -> None:
        if method in self.failures:
            match = self.failures[method]
            if match is None or (args and args[0] == match):
                del self.failures[method]
                raise ExternalSystemFailure(
                    f"{method} failed: injected", command=[method, *map(str, args)], stderr="injected"
                )
        self.calls.append((method, *args))

    def mutations(self, method: Optional[str] = None) -> List[Tuple]:
        return [call for call in self.calls if method is None or call[0] == method]

    def _space(self, namespace: Optional[str]) -> Dict[str, FakeLink]:
        if namespace not in self.spaces:
            raise ExternalSystemFailure(
                f"Cannot open network namespace \"{namespace}\": No such file or directory",
                stderr="No such file or directory",
            )
        return self.spaces[namespace]

    def _link(self, name: str, namespace: Optional[str] = None) -> FakeLink:
        link = self._space(namespace).get(name)
        if link is None:
            raise ExternalSystemFailure(
                f"Cannot find device \"{name}\"", stderr=f"Cannot find device \"{name}\""
            )
        return link

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------
    def link_exists(self, name: str, namespace: Optional[str] = None) -> bool:
        return name in self.spaces.get(namespace, {})

    def _add_link(self, link: FakeLink) -> None:
        if link.name in self.spaces[HOST]:
            raise ExternalSystemFailure(
                "RTNETLINK answers: File exists", stderr="RTNETLINK answers: File exists"
            )
        self.spaces[HOST][link.name] = link

    def create_bridge(self, name: str) -> None:
        self._record("create_bridge", name)
        self._add_link(FakeLink(name, "bridge"))

    def create_veth_pair(self, name: str, peer: str) -> None:
        self._record("create_veth_pair", name, peer)
        if peer in self.spaces[HOST]:
            raise ExternalSystemFailure("RTNETLINK answers: File exists", stderr="File exists")
        first, second = FakeLink(name, "veth"), FakeLink(peer, "veth")
        first.peer, second.peer = second, first
        self._add_link(first)
        self._add_link(second)

    def _remove(self, link: FakeLink) -> None:
        self.spaces.get(link.space, {}).pop(link.name, None)
        if link.kind == "bridge":
            for other in self.spaces[HOST].values():
                if other.master == link.name:
                    other.master = None

    def delete_link(self, name: str, namespace: Optional[str] = None) -> bool:
        self._record("delete_link", name, namespace)
        link = self._space(namespace).get(name)
        if link is None:
            return False
        self._remove(link)
        if link.peer is not None:
            self._remove(link.peer)
        return True

    def set_link_up(self, name: str, namespace: Optional[str] = None) -> None:
        self._record("set_link_up", name, namespace)
        self._link(name, namespace).up = True

    def move_to_namespace(self, name: str, namespace: str) -> None:
        self._record("move_to_namespace", name, namespace)
        link = self._link(name)
        target = self._space(namespace)
        del self.spaces[HOST][name]
        link.space, link.master, link.up = namespace, None, False
        target[name] = link

    def attach_to_bridge(self, name: str, bridge: str) -> None:
        self._record("attach_to_bridge", name, bridge)
        link = self._link(name)
        if self._link(bridge).kind != "bridge":
            raise ExternalSystemFailure(f"{bridge} is not a bridge", stderr="Invalid argument")
        link.master = bridge

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------
    def add_address(self, device: str, address: str, namespace: Optional[str] = None) -> bool:
        self._record("add_address", device, address, namespace)
        link = self._link(device, namespace)
        if address in link.addresses:
            return False
        link.addresses.append(address)
        return True

    def delete_address(self, device: str, address: str, namespace: Optional[str] = None) -> bool:
        self._record("delete_address", device, address, namespace)
        link = self.spaces.get(namespace, {}).get(device)
        if link is None or address not in link.addresses:
            return False
        link.addresses.remove(address)
        return True

    def get_addresses(self, device: str, namespace: Optional[str] = None) -> List[str]:
        link = self.spaces.get(namespace, {}).get(device)
        return list(link.addresses) if link else []

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------
    def create_namespace(self, name: str) -> None:
        self._record("create_namespace", name)
        if name in self.spaces:
            raise ExternalSystemFailure(
                f"Cannot create namespace file \"/var/run/netns/{name}\": File exists",
                stderr="File exists",
            )
        self.spaces[name] = {"lo": FakeLink("lo", "loopback", space=name)}
        self.routes[name] = []
        self.forwarding[name] = False
        self.rules[name] = {}
        self.policies[name] = {}

    def delete_namespace(self, name: str) -> bool:
        self._record("delete_namespace", name)
        if name not in self.spaces or name is HOST:
            return False
        for link in list(self.spaces[name].values()):
            if link.peer is not None:
                self._remove(link.peer)
        for table in (self.spaces, self.routes, self.forwarding, self.rules, self.policies):
            table.pop(name, None)
        return True

    def list_namespaces(self) -> List[str]:
        return sorted(name for name in self.spaces if name is not HOST)

    # ------------------------------------------------------------------
    # Routes and forwarding
    # ------------------------------------------------------------------
    def _connected(self, namespace: Optional[str]) -> List[Tuple[ipaddress.IPv4Network, FakeLink]]:
        return [
            (ipaddress.ip_interface(address).network, link)
            for link in self.spaces.get(namespace, {}).values()
            for address in link.addresses
        ]

    def add_route(
        self,
        destination: str,
        namespace: Optional[str] = None,
        *,
        gateway: Optional[str] = None,
        device: Optional[str] = None,
        onlink: bool = False,
    ) -> bool:
        self._record("add_route", destination, namespace, gateway, device, onlink)
        self._space(namespace)
        routes = self.routes[namespace]
        if device is not None:
            self._link(device, namespace)
        if gateway and not onlink:
            address = ipaddress.ip_address(gateway)
            if not any(address in network for network, _ in self._connected(namespace)):
                raise ExternalSystemFailure(
                    "Error: Nexthop has invalid gateway.", stderr="Nexthop has invalid gateway."
                )
        if any(route.destination == destination for route in routes):
            return False
        routes.append(FakeRoute(destination, gateway, device, onlink))
        return True

    def delete_route(self, destination: str, namespace: Optional[str] = None) -> bool:
        self._record("delete_route", destination, namespace)
        self._space(namespace)
        routes = self.routes[namespace]
        for route in routes:
            if route.destination == destination:
                routes.remove(route)
                return True
        return False

    def list_routes(self, namespace: Optional[str] = None) -> List[str]:
        lines = [f"{network} dev {link.name}" for network, link in self._connected(namespace)]
        for route in self.routes.get(namespace, []):
            parts = [route.destination]
            if route.gateway:
                parts.extend(["via", route.gateway])
            if route.device:
                parts.extend(["dev", route.device])
            lines.append(" ".join(parts))
        return lines

    def has_route(self, namespace: str, destination: str) -> bool:
        return any(route.destination == destination for route in self.routes.get(namespace, []))

    def get_default_interface(self) -> Optional[str]:
        return self.default_interface

    def get_ip_forwarding(self, namespace: Optional[str] = None) -> bool:
        return self.forwarding.get(namespace, False)

    def set_ip_forwarding(self, enabled: bool = True, namespace: Optional[str] = None) -> None:
        self._record("set_ip_forwarding", enabled, namespace)
        self._space(namespace)
        self.forwarding[namespace] = enabled

    # ------------------------------------------------------------------
    # Packet filter
    # ------------------------------------------------------------------
    def _chain(self, rule: FilterRule, namespace: Optional[str]) -> List[Tuple[str, ...]]:
        self._space(namespace)
        return self.rules[namespace].setdefault((rule.table, rule.chain), [])

    def rule_exists(self, rule: FilterRule, namespace: Optional[str] = None) -> bool:
        return tuple(rule.spec) in self._chain(rule, namespace)

    def append_rule(self, rule: FilterRule, namespace: Optional[str] = None) -> None:
        self._record("append_rule", rule, namespace)
        self._chain(rule, namespace).append(tuple(rule.spec))

    def insert_rule(self, rule: FilterRule, namespace: Optional[str] = None) -> None:
        self._record("insert_rule", rule, namespace)
        self._chain(rule, namespace).insert(0, tuple(rule.spec))

    def delete_rule(self, rule: FilterRule, namespace: Optional[str] = None) -> bool:
        self._record("delete_rule", rule, namespace)
        chain = self._chain(rule, namespace)
        if tuple(rule.spec) not in chain:
            return False
        chain.remove(tuple(rule.spec))
        return True

    def list_rules(
        self,
        table: str = "filter",
        chain: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> List[str]:
        self._space(namespace)
        lines = []
        for name in BUILTIN_CHAINS.get(table, ()):
            if chain in (None, name):
                policy = self.policies[namespace].get(name, "ACCEPT") if table == "filter" else "ACCEPT"
                lines.append(f"-P {name} {policy}")
        for (rule_table, rule_chain), specs in self.rules[namespace].items():
            if rule_table != table or chain not in (None, rule_chain):
                continue
            lines.extend(f"-A {rule_chain} {' '.join(spec)}" for spec in specs)
        return lines

    def rule_count(self, table: str, chain: str, namespace: Optional[str] = None) -> int:
        return len(self.rules.get(namespace, {}).get((table, chain), []))

    def reset_filter(self, namespace: Optional[str] = None) -> None:
        self._record("reset_filter", namespace)
        self._space(namespace)
        for key in [key for key in self.rules[namespace] if key[0] == "filter"]:
            del self.rules[namespace][key]

    def set_policy(self, chain: str, target: str, namespace: Optional[str] = None) -> None:
        self._record("set_policy", chain, target, namespace)
        self._space(namespace)
        self.policies[namespace][chain] = target

    # ------------------------------------------------------------------
    # Reachability model
    # ------------------------------------------------------------------
    @staticmethod
    def _spec_matches(spec: Sequence[str], packet: Dict[str, object]) -> bool:
        tokens = list(spec)
        index = 0
        while index < len(tokens) and tokens[index] != "-j":
            flag, value = tokens[index], tokens[index + 1]
            index += 2
            if flag in ("-i", "-o"):
                actual = packet.get("in" if flag == "-i" else "out")
                if value.endswith("+"):
                    if not (isinstance(actual, str) and actual.startswith(value[:-1])):
                        return False
                elif actual != value:
                    return False
            elif flag in ("-s", "-d"):
                address = packet.get("src" if flag == "-s" else "dst")
                if address is None or ipaddress.ip_address(address) not in ipaddress.ip_network(value):
                    return False
            elif flag == "-p":
                if packet.get("proto") != value:
                    return False
            elif flag == "--dport":
                if packet.get("port") != int(value):
                    return False
            elif flag == "--state":
                if packet.get("state", "NEW") not in value.split(","):
                    return False
            elif flag == "-m":
                continue
        return True

    def _verdict(self, namespace: Optional[str], chain: str, packet: Dict[str, object]) -> str:
        for spec in self.rules.get(namespace, {}).get(("filter", chain), []):
            if self._spec_matches(spec, packet):
                return spec[spec.index("-j") + 1]
        return self.policies.get(namespace, {}).get(chain, "ACCEPT")

    def _segment(self, bridge: str) -> Set[str]:
        """Bridges joined to ``bridge`` by veth pairs, transitively."""

        seen, todo = {bridge}, [bridge]
        while todo:
            current = todo.pop()
            for link in self.spaces[HOST].values():
                if link.master != current or link.peer is None:
                    continue
                other = link.peer
                if other.space is HOST and other.master and other.master not in seen:
                    seen.add(other.master)
                    todo.append(other.master)
        return seen

    def _namespace_bridge(self, link: FakeLink) -> Optional[str]:
        if link.peer is None or link.peer.space is not HOST:
            return None
        return link.peer.master

    def _owner(self, address: str) -> Tuple[Optional[str], Optional[FakeLink]]:
        """Return ``(namespace, link)`` holding ``address``; host owner -> (None, link)."""

        for namespace, links in self.spaces.items():
            for link in links.values():
                if any(entry.split("/")[0] == address for entry in link.addresses):
                    return namespace, link
        return None, None

    def _lookup(self, namespace: str, destination: str) -> Optional[Tuple[Optional[str], FakeLink]]:
        """Return ``(next hop or None for on-link, egress link)`` in ``namespace``."""

        address = ipaddress.ip_address(destination)
        best: Optional[Tuple[int, Optional[str], Optional[FakeLink]]] = None
        for network, link in self._connected(namespace):
            if link.kind != "loopback" and address in network:
                if best is None or network.prefixlen > best[0]:
                    best = (network.prefixlen, None, link)
        for route in self.routes.get(namespace, []):
            if address in route.network and (best is None or route.network.prefixlen > best[0]):
                device = self.spaces[namespace].get(route.device) if route.device else None
                if device is None:
                    device = next(
                        (other for other in self.spaces[namespace].values() if other.kind == "veth"),
                        None,
                    )
                best = (route.network.prefixlen, route.gateway, device)
        if best is None or best[2] is None or not best[2].up:
            return None
        return best[1], best[2]

    def _host_bridge_for(self, address: str) -> Optional[str]:
        target = ipaddress.ip_address(address)
        for network, link in self._connected(HOST):
            if link.kind == "bridge" and link.up and target in network:
                return link.name
        return None

    def _deliver(self, namespace: str, destination: str) -> Optional[str]:
        """Route a packet from ``namespace``; return the receiving namespace.

        The host is reported as ``"host"`` and the internet as ``"internet"``.
        """

        hop = self._lookup(namespace, destination)
        if hop is None:
            return None
        gateway, device = hop
        bridge = self._namespace_bridge(device)
        if bridge is None:
            return None
        segment = self._segment(bridge)
        source = device.addresses[0].split("/")[0] if device.addresses else None

        next_hop = gateway or destination
        owner_ns, owner_link = self._owner(next_hop)
        if owner_link is None:
            return None
        if owner_ns is not HOST:
            on_segment = self._namespace_bridge(owner_link) in segment
            return owner_ns if on_segment and gateway is None else None
        if owner_link.kind != "bridge" or owner_link.name not in segment:
            return None

        # the host answers ARP for every local address, so routed traffic
        # enters on the sender's own bridge
        ingress = bridge
        local_ns, local_link = self._owner(destination)
        if local_ns is HOST and local_link is not None:
            return "host"
        if not self.forwarding.get(HOST):
            return None
        if local_link is None:
            packet = {"in": ingress, "out": self.default_interface, "src": source, "dst": destination}
            if self._verdict(HOST, "FORWARD", packet) != "ACCEPT":
                return None
            masquerade = any(
                self._spec_matches(spec, packet)
                for spec in self.rules[HOST].get(("nat", "POSTROUTING"), [])
                if "MASQUERADE" in spec
            )
            return "internet" if masquerade and self.internet else None
        egress = self._host_bridge_for(destination)
        if egress is None:
            return None
        packet = {"in": ingress, "out": egress, "src": source, "dst": destination}
        if self._verdict(HOST, "FORWARD", packet) != "ACCEPT":
            return None
        return local_ns

    def _host_reaches(self, address: str) -> Optional[str]:
        owner_ns, owner_link = self._owner(address)
        if owner_link is None:
            return "internet" if self.internet else None
        if owner_ns is HOST:
            return "host"
        bridge = self._host_bridge_for(address)
        if bridge is None or self._namespace_bridge(owner_link) != bridge:
            return None
        return owner_ns

    def _accepts(self, namespace: str, packet: Dict[str, object]) -> bool:
        return self._verdict(namespace, "INPUT", packet) == "ACCEPT"

    def _source_address(self, namespace: str) -> Optional[str]:
        for link in self.spaces[namespace].values():
            if link.kind == "veth" and link.addresses:
                return link.addresses[0].split("/")[0]
        return None

    # ------------------------------------------------------------------
    # Probes and processes
    # ------------------------------------------------------------------
    def ping(
        self,
        address: str,
        namespace: Optional[str] = None,
        *,
        timeout: float = 1.0,
        retries: int = 1,
    ) -> bool:
        if namespace is None:
            target = self._host_reaches(address)
            if target in (None, "host", "internet"):
                return target is not None
            return self._accepts(target, {"proto": "icmp", "in": "veth"})
        if namespace not in self.spaces:
            return False
        if self._owner(address)[0] == namespace:
            return True
        target = self._deliver(namespace, address)
        if target is None:
            return False
        if target in ("host", "internet"):
            return True
        if not self._accepts(target, {"proto": "icmp", "in": "veth"}):
            return False
        source = self._source_address(namespace)
        return source is not None and self._deliver(target, source) == namespace

    def probe_tcp(self, address: str, port: int, *, timeout: float = 1.0) -> str:
        target = self._host_reaches(address)
        if target in (None, "internet"):
            return "filtered"
        if target == "host":
            return "open" if (address, port) in self.listeners else "closed"
        if not self._accepts(target, {"proto": "tcp", "port": port, "in": "veth"}):
            return "filtered"
        return "open" if (address, port) in self.listeners else "closed"

    def spawn(
        self,
        argv: Sequence[str],
        namespace: str,
        *,
        log_path: Path,
        cwd: Optional[Path] = None,
    ) -> int:
        self._record("spawn", list(argv), namespace)
        self._space(namespace)
        pid = self._next_pid
        self._next_pid += 1
        self.processes[pid] = list(argv)
        if "--bind" in argv:
            port = int(argv[argv.index("http.server") + 1])
            self.listeners.add((argv[argv.index("--bind") + 1], port))
        return pid

    def process_alive(self, pid: int) -> bool:
        return pid in self.processes

    def terminate(self, pid: int) -> bool:
        self._record("terminate", pid)
        argv = self.processes.pop(pid, None)
        if argv is None:
            return False
        if "--bind" in argv:
            port = int(argv[argv.index("http.server") + 1])
            self.listeners.discard((argv[argv.index("--bind") + 1], port))
        return True


@pytest.fixture
def driver() -> FakeNetworkDriver:
    return FakeNetworkDriver()


@pytest.fixture
def control(driver: FakeNetworkDriver):
    return build_control_plane(driver, probe=ProbeSettings(timeout=0.1, retries=1))


@pytest.fixture
def two_vpcs(control):
    """VPC ``main`` with public and private subnets plus VPC ``secondary``."""

    control.vpcs.create_vpc("main", "10.0.0.0/16")
    control.subnets.add_subnet("main", "public", "10.0.1.0/24")
    control.subnets.add_subnet("main", "private", "10.0.2.0/24")
    control.vpcs.create_vpc("secondary", "10.1.0.0/16")
    control.subnets.add_subnet("secondary", "public", "10.1.1.0/24")
    return control
