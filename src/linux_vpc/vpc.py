"""VPC lifecycle: one bridge and one persisted record per VPC."""

from __future__ import annotations

import logging
from typing import List, Optional

from .drivers.base import NetworkDriver
from .errors import AlreadyExists, ExternalSystemFailure, NameCollision, NotFound, ResourceStale
from .locking import OperationLock, serialized
from .models import VPC, FilterRule, OperationResult, Peering, VPCSummary
from .naming import (
    BRIDGE_PREFIX,
    bridge_name,
    filter_vpc_namespaces,
    gateway_address,
    parse_cidr,
    parse_namespace,
    subnet_link_names,
    validate_vpc_name,
    with_prefix,
)
from .steps import StepPlan
from .store import PeeringRepository, VPCRepository

LOG = logging.getLogger(__name__)


def bridge_forward_rules(bridge: str) -> List[FilterRule]:
    """Host FORWARD rules confining routed traffic to ``bridge``.

    Traffic entering and leaving the same bridge is accepted; traffic towards
    any other VPC bridge is dropped unless a peering inserted an exception
    ahead of the drop (see :func:`peering_forward_rules`).
    """

    return [
        FilterRule("filter", "FORWARD", ("-i", bridge, "-o", bridge, "-j", "ACCEPT")),
        FilterRule("filter", "FORWARD", ("-i", bridge, "-o", f"{BRIDGE_PREFIX}+", "-j", "DROP")),
    ]



def peering_forward_rules(bridge_a: str, bridge_b: str) -> List[FilterRule]:
    """Host FORWARD exceptions letting two peered bridges route to each other.

    A peered namespace resolves the peer gateway through the host, so its
    packets arrive on its own bridge and leave on the peer bridge.  These
    rules must sit ahead of the per-bridge drops.
    """

    return [
        FilterRule("filter", "FORWARD", ("-i", bridge_a, "-o", bridge_b, "-j", "ACCEPT")),
        FilterRule("filter", "FORWARD", ("-i", bridge_b, "-o", bridge_a, "-j", "ACCEPT")),
    ]


class VPCRegistry:
    """Create, delete and list VPCs.

    Parameters
    ----------
    driver:
        Kernel control surface.
    repository:
        Durable VPC records.
    peerings:
        Peering records; when given, deleting a VPC also tears down every
        peering that references it.
    lock:
        Shared lock serializing mutating operations.
    """

    def __init__(
        self,
        driver: NetworkDriver,
        repository: VPCRepository,
        peerings: Optional[PeeringRepository] = None,
        lock: Optional[OperationLock] = None,
    ) -> None:
        self._driver = driver
        self._repository = repository
        self._peerings = peerings
        self._lock = lock or OperationLock()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, name: str) -> VPC:
        vpc = self._repository.get(name)
        if vpc is None:
            raise NotFound(f"VPC {name} does not exist")
        return vpc

    def exists(self, name: str) -> bool:
        return self._repository.get(name) is not None

    def get_cidr(self, name: str) -> str:
        return self.get(name).cidr

    def require_live(self, name: str) -> VPC:
        """Return the record, insisting that its bridge is still present."""

        vpc = self.get(name)
        if not self._driver.link_exists(vpc.bridge):
            raise ResourceStale(
                f"VPC {name} is recorded but bridge {vpc.bridge} is missing; "
                f"delete and recreate the VPC"
            )
        return vpc

    def list_vpcs(self) -> List[VPCSummary]:
        return [
            VPCSummary(
                name=vpc.name,
                cidr=vpc.cidr,
                bridge=vpc.bridge,
                live=self._driver.link_exists(vpc.bridge),
            )
            for vpc in self._repository.list()
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @serialized
    def create_vpc(self, name: str, cidr: str) -> VPC:
        validate_vpc_name(name)
        network = parse_cidr(cidr)
        bridge = bridge_name(name)

        if self._repository.get(name) is not None:
            raise AlreadyExists(f"VPC {name} already exists")
        if self._driver.link_exists(bridge):
            raise AlreadyExists(f"bridge {bridge} for VPC {name} already exists")
        clash = self._repository.find_by_bridge(bridge)
        if clash is not None:
            raise NameCollision(
                f"VPC {name} derives bridge {bridge}, already used by VPC {clash.name}"
            )

        gateway = gateway_address(network)
        StepPlan(f"create VPC {name}").add(
            f"create bridge {bridge}",
            lambda: self._driver.create_bridge(bridge),
            lambda: self._discard_bridge(bridge),
        ).add(
            f"bring up {bridge}",
            lambda: self._driver.set_link_up(bridge),
        ).add(
            f"assign {gateway} to {bridge}",
            lambda: self._driver.add_address(bridge, with_prefix(gateway, network)),
        ).add(
            f"confine forwarding to {bridge}",
            lambda: self._ensure_rules(bridge_forward_rules(bridge)),
        ).run(rollback=True)

        vpc = VPC(name=name, cidr=str(network), bridge=bridge, gateway=gateway)
        self._repository.save(vpc)
        self._driver.set_ip_forwarding(True)
        LOG.info("Created VPC %s (cidr=%s bridge=%s gateway=%s)", name, vpc.cidr, bridge, gateway)
        return vpc

    @serialized
    def delete_vpc(self, name: str) -> OperationResult:
        vpc = self.get(name)
        result = OperationResult()

        for namespace in filter_vpc_namespaces(self._driver.list_namespaces(), name):
            _, subnet_type = parse_namespace(namespace)
            host_link = subnet_link_names(name, subnet_type).host
            try:
                self._driver.delete_link(host_link)
                self._driver.delete_namespace(namespace)
            except ExternalSystemFailure as exc:
                LOG.warning("Could not remove subnet namespace %s: %s", namespace, exc)
                result.warnings.append(f"{namespace}: {exc}")
            else:
                result.succeeded.append(namespace)

        if self._peerings is not None:
            for peering in self._peerings.involving(name):
                result.merge(self._detach_peering(vpc, peering))

        for rule in bridge_forward_rules(vpc.bridge):
            try:
                if self._driver.delete_rule(rule):
                    result.succeeded.append(rule.describe())
            except ExternalSystemFailure as exc:
                LOG.warning("Could not remove rule %s: %s", rule.describe(), exc)
                result.warnings.append(f"{rule.describe()}: {exc}")

        if self._driver.link_exists(vpc.bridge):
            self._driver.delete_link(vpc.bridge)
            result.succeeded.append(vpc.bridge)
        else:
            result.skipped.append(f"{vpc.bridge} (already gone)")

        self._repository.delete(name)
        LOG.info("Deleted VPC %s", name)
        return result

    def _ensure_rules(self, rules: List[FilterRule]) -> None:
        for rule in rules:
            if not self._driver.rule_exists(rule):
                self._driver.append_rule(rule)

    def _discard_bridge(self, bridge: str) -> None:
        for rule in bridge_forward_rules(bridge):
            self._driver.delete_rule(rule)
        self._driver.delete_link(bridge)

    def _detach_peering(self, vpc: VPC, peering: Peering) -> OperationResult:
        result = OperationResult()
        for link in peering.links:
            try:
                self._driver.delete_link(link)
            except ExternalSystemFailure as exc:
                result.warnings.append(f"{link}: {exc}")

        peer = peering.peer_of(vpc.name)
        other = self._repository.get(peer)
        peer_bridge = other.bridge if other is not None else bridge_name(peer)
        for rule in peering_forward_rules(vpc.bridge, peer_bridge):
            try:
                self._driver.delete_rule(rule)
            except ExternalSystemFailure as exc:
                result.warnings.append(f"{rule.describe()}: {exc}")

        for namespace in filter_vpc_namespaces(self._driver.list_namespaces(), peer):
            try:
                self._driver.delete_route(vpc.cidr, namespace)
            except ExternalSystemFailure as exc:
                result.warnings.append(f"{namespace}: route {vpc.cidr}: {exc}")

        self._peerings.delete(*peering.key)
        LOG.info("Removed peering %s <-> %s with VPC %s", peering.vpc_a, peering.vpc_b, vpc.name)
        result.succeeded.append(f"peering {peering.vpc_a}<->{peering.vpc_b}")
        return result
