"""Peering between two VPCs.

A peering is one veth pair whose ends are enslaved to the two VPC bridges,
plus a route towards the peer VPC in every subnet namespace of each side.
The link alone gives layer-2 adjacency.  Traffic only flows once the routes
exist and the host accepts forwarding between the two bridges, ahead of the
per-VPC drop rules.

States: ``Absent -> Active -> (Broken | Absent)``.  ``Broken`` is never
stored; it is recomputed from live links by :meth:`PeeringManager.reconcile`.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .drivers.base import NetworkDriver
from .errors import (
    ExternalSystemFailure,
    InsufficientState,
    InvalidArgument,
    NameCollision,
    NotFound,
)
from .locking import OperationLock, serialized
from .models import (
    VPC,
    IsolationReport,
    OperationResult,
    Peering,
    PeeringStatus,
    PeeringView,
    ProbeSettings,
)
from .naming import bridge_name, parse_namespace, peering_key, peering_link_names, subnet_link_names
from .steps import StepPlan
from .store import PeeringRepository
from .subnet import SubnetManager
from .vpc import VPCRegistry, peering_forward_rules

LOG = logging.getLogger(__name__)


class PeeringManager:
    def __init__(
        self,
        driver: NetworkDriver,
        vpcs: VPCRegistry,
        subnets: SubnetManager,
        repository: PeeringRepository,
        lock: Optional[OperationLock] = None,
        probe: Optional[ProbeSettings] = None,
    ) -> None:
        self._driver = driver
        self._vpcs = vpcs
        self._subnets = subnets
        self._repository = repository
        self._lock = lock or OperationLock()
        self._probe = probe or ProbeSettings()

    @serialized
    def create_peering(self, vpc_a: str, vpc_b: str) -> OperationResult:
        if vpc_a == vpc_b:
            raise InvalidArgument(f"cannot peer VPC {vpc_a} with itself")
        first = self._vpcs.get(vpc_a)
        second = self._vpcs.get(vpc_b)
        first, second = sorted((first, second), key=lambda vpc: vpc.name)

        result = OperationResult()
        existing = self._repository.get(first.name, second.name)
        if existing is not None:
            LOG.info("Peering %s <-> %s already exists", first.name, second.name)
            result.skipped.append(f"peering {first.name}<->{second.name} (already exists)")
            return result

        link_a, link_b = peering_link_names(first.name, second.name)
        for link in (link_a, link_b):
            owner = self._repository.find_by_link(link)
            if owner is not None:
                raise NameCollision(
                    f"peering link {link} is already used by {owner.vpc_a}<->{owner.vpc_b}"
                )
            if self._driver.link_exists(link):
                raise NameCollision(
                    f"interface {link} exists without a peering record; remove it first"
                )

        first = self._vpcs.require_live(first.name)
        second = self._vpcs.require_live(second.name)
        route_a, route_b = self._resolve_routes(first, second)

        driver = self._driver
        plan = StepPlan(f"peer {first.name} with {second.name}").add(
            f"create veth pair {link_a}/{link_b}",
            lambda: driver.create_veth_pair(link_a, link_b),
            lambda: driver.delete_link(link_a),
        ).add(
            f"attach {link_a} to {first.bridge}",
            lambda: driver.attach_to_bridge(link_a, first.bridge),
        ).add(
            f"attach {link_b} to {second.bridge}",
            lambda: driver.attach_to_bridge(link_b, second.bridge),
        )
        for rule in peering_forward_rules(first.bridge, second.bridge):
            if driver.rule_exists(rule):
                continue
            plan.add(
                f"allow {rule.describe()}",
                lambda rule=rule: driver.insert_rule(rule),
                lambda rule=rule: driver.delete_rule(rule),
            )
        plan.run(rollback=True)
        for link in (link_a, link_b):
            driver.set_link_up(link)
        result.succeeded.append(f"{link_a}<->{link_b}")

        result.merge(self._inject_routes(first.name, *route_b))
        result.merge(self._inject_routes(second.name, *route_a))

        self._repository.save(
            Peering(vpc_a=first.name, vpc_b=second.name, link_a=link_a, link_b=link_b)
        )
        LOG.info(
            "Peered VPC %s (%s) with VPC %s (%s) over %s/%s",
            first.name,
            first.cidr,
            second.name,
            second.cidr,
            link_a,
            link_b,
        )
        return result

    def _resolve_routes(self, first: VPC, second: VPC) -> Tuple[Tuple[str, str], Tuple[str, str]]:
        """Return ``(cidr, gateway)`` for both sides, read from the live bridges."""

        routes = []
        for vpc in (first, second):
            addresses = [a.split("/", 1)[0] for a in self._driver.get_addresses(vpc.bridge)]
            gateway = vpc.gateway if vpc.gateway in addresses else ""
            if not vpc.cidr or not gateway:
                raise InsufficientState(
                    f"cannot resolve CIDR and gateway of VPC {vpc.name} on {vpc.bridge}"
                )
            routes.append((vpc.cidr, gateway))
        return routes[0], routes[1]

    def _inject_routes(self, vpc: str, cidr: str, gateway: str) -> OperationResult:
        result = OperationResult()
        for namespace in self._subnets.get_vpc_namespaces(vpc):
            device = self._namespace_link(namespace)
            try:
                added = self._driver.add_route(
                    cidr, namespace, gateway=gateway, device=device, onlink=True
                )
            except ExternalSystemFailure as exc:
                LOG.warning("Could not add route %s via %s in %s: %s", cidr, gateway, namespace, exc)
                result.warnings.append(f"{namespace}: route {cidr}: {exc}")
                continue
            if added:
                result.succeeded.append(f"{namespace}: {cidr} via {gateway}")
            else:
                result.skipped.append(f"{namespace}: {cidr} (already present)")
        return result

    def _remove_routes(self, vpc: str, cidr: str) -> OperationResult:
        result = OperationResult()
        for namespace in self._subnets.get_vpc_namespaces(vpc):
            try:
                removed = self._driver.delete_route(cidr, namespace)
            except ExternalSystemFailure as exc:
                LOG.warning("Could not remove route %s from %s: %s", cidr, namespace, exc)
                result.warnings.append(f"{namespace}: route {cidr}: {exc}")
                continue
            if removed:
                result.succeeded.append(f"{namespace}: {cidr}")
            else:
                result.skipped.append(f"{namespace}: {cidr} (absent)")
        return result

    def _revoke_forwarding(self, first: str, second: str) -> OperationResult:
        result = OperationResult()
        bridges = [
            self._vpcs.get(name).bridge if self._vpcs.exists(name) else bridge_name(name)
            for name in (first, second)
        ]
        for rule in peering_forward_rules(*bridges):
            try:
                if self._driver.delete_rule(rule):
                    result.succeeded.append(rule.describe())
            except ExternalSystemFailure as exc:
                LOG.warning("Could not remove rule %s: %s", rule.describe(), exc)
                result.warnings.append(f"{rule.describe()}: {exc}")
        return result

    @staticmethod
    def _namespace_link(namespace: str) -> Optional[str]:
        parsed = parse_namespace(namespace)
        return subnet_link_names(*parsed).namespace if parsed else None

    @serialized
    def delete_peering(self, vpc_a: str, vpc_b: str) -> OperationResult:
        first, second = peering_key(vpc_a, vpc_b)
        record = self._repository.get(first, second)
        links = record.links if record else peering_link_names(first, second)
        present = [link for link in links if self._driver.link_exists(link)]
        if record is None and not present:
            raise NotFound(f"no peering between {first} and {second}")

        result = OperationResult()
        for link in links:
            try:
                removed = self._driver.delete_link(link)
            except ExternalSystemFailure as exc:
                LOG.warning("Could not remove peering link %s: %s", link, exc)
                result.warnings.append(f"{link}: {exc}")
                continue
            if removed:
                result.succeeded.append(link)
            else:
                result.skipped.append(f"{link} (already gone)")

        result.merge(self._revoke_forwarding(first, second))

        for vpc, peer in ((first, second), (second, first)):
            peer_vpc = self._vpcs.get(peer) if self._vpcs.exists(peer) else None
            if peer_vpc is None:
                result.skipped.append(f"routes towards {peer} (VPC record gone)")
                continue
            result.merge(self._remove_routes(vpc, peer_vpc.cidr))

        self._repository.delete(first, second)
        LOG.info("Deleted peering %s <-> %s", first, second)
        return result

    # ------------------------------------------------------------------
    # Reconciliation and reporting
    # ------------------------------------------------------------------
    def reconcile(self) -> List[PeeringView]:
        """Recompute every recorded peering's status from live links."""

        views = []
        for peering in self._repository.list():
            live = all(self._driver.link_exists(link) for link in peering.links)
            status = PeeringStatus.ACTIVE if live else PeeringStatus.BROKEN
            if not live:
                LOG.warning(
                    "Peering %s <-> %s is broken: links %s missing",
                    peering.vpc_a,
                    peering.vpc_b,
                    ", ".join(l for l in peering.links if not self._driver.link_exists(l)),
                )
            views.append(PeeringView(peering=peering, status=status))
        return views

    def list_peerings(self) -> List[PeeringView]:
        return self.reconcile()

    def check_isolation(self, vpc_a: str, vpc_b: str) -> IsolationReport:
        source_ns, source_addr = self._first_endpoint(vpc_a)
        target_ns, target_addr = self._first_endpoint(vpc_b)
        reachable = self._driver.ping(
            target_addr,
            source_ns,
            timeout=self._probe.timeout,
            retries=self._probe.retries,
        )
        report = IsolationReport(
            source_namespace=source_ns,
            source_address=source_addr,
            target_namespace=target_ns,
            target_address=target_addr,
            reachable=reachable,
            peered=self._repository.get(vpc_a, vpc_b) is not None,
        )
        LOG.info(
            "Isolation check %s (%s) -> %s (%s): %s",
            source_ns,
            source_addr,
            target_ns,
            target_addr,
            "reachable" if reachable else "isolated",
        )
        return report

    def _first_endpoint(self, vpc: str) -> Tuple[str, str]:
        self._vpcs.get(vpc)
        namespaces = self._subnets.get_vpc_namespaces(vpc)
        if not namespaces:
            raise InsufficientState(f"VPC {vpc} has no subnets; add one with add-subnet")
        address = self._subnets.get_namespace_address(namespaces[0])
        if not address:
            raise InsufficientState(f"cannot resolve the address of {namespaces[0]}")
        return namespaces[0], address

    @serialized
    def cleanup(self) -> OperationResult:
        result = OperationResult()
        for peering in self._repository.list():
            result.merge(self.delete_peering(peering.vpc_a, peering.vpc_b))
        return result
