"""Subnet lifecycle: a namespace wired to the VPC bridge by a veth pair."""

from __future__ import annotations

import ipaddress
import logging
from typing import List, Optional, Union

from .drivers.base import NetworkDriver
from .errors import AlreadyExists, ExternalSystemFailure, InvalidArgument, NameCollision
from .locking import OperationLock, serialized
from .models import OperationResult, ProbeResult, ProbeSettings, Subnet, SubnetInfo
from .naming import (
    SubnetType,
    filter_vpc_namespaces,
    gateway_address,
    host_address,
    namespace_name,
    network_of,
    parse_cidr,
    parse_namespace,
    subnet_link_names,
    with_prefix,
)
from .steps import StepPlan
from .vpc import VPCRegistry

LOG = logging.getLogger(__name__)


class SubnetManager:
    def __init__(
        self,
        driver: NetworkDriver,
        vpcs: VPCRegistry,
        lock: Optional[OperationLock] = None,
        probe: Optional[ProbeSettings] = None,
    ) -> None:
        self._driver = driver
        self._vpcs = vpcs
        self._lock = lock or OperationLock()
        self._probe = probe or ProbeSettings()

    @serialized
    def add_subnet(
        self, vpc_name: str, subnet_type: Union[str, SubnetType], cidr: str
    ) -> Subnet:
        """Create the ``subnet_type`` subnet of ``vpc_name``.

        The flow is forward-only: if a step fails the error lists the steps
        already performed and :meth:`delete_subnet` cleans up.
        """

        stype = SubnetType.parse(subnet_type)
        network = parse_cidr(cidr)
        vpc = self._vpcs.get(vpc_name)

        if not network.subnet_of(ipaddress.ip_network(vpc.cidr)):
            raise InvalidArgument(f"subnet {network} is outside VPC {vpc.name} ({vpc.cidr})")

        namespace = namespace_name(vpc.name, stype)
        if self._driver.namespace_exists(namespace):
            raise AlreadyExists(f"subnet {namespace} already exists")

        for sibling in self.get_vpc_namespaces(vpc.name):
            interface = self.get_namespace_interface(sibling)
            if interface and network.overlaps(ipaddress.ip_network(network_of(interface))):
                raise InvalidArgument(
                    f"subnet {network} overlaps {network_of(interface)} of {sibling}"
                )

        links = subnet_link_names(vpc.name, stype)
        for link in (links.host, links.namespace):
            if self._driver.link_exists(link):
                raise NameCollision(f"interface {link} for {namespace} is already in use")

        vpc = self._vpcs.require_live(vpc.name)

        gateway = gateway_address(network)
        address = host_address(network)
        driver = self._driver
        plan = StepPlan(f"add subnet {namespace}")
        plan.add(
            f"create namespace {namespace}",
            lambda: driver.create_namespace(namespace),
            lambda: driver.delete_namespace(namespace),
        ).add(
            f"create veth pair {links.host}/{links.namespace}",
            lambda: driver.create_veth_pair(links.host, links.namespace),
            lambda: driver.delete_link(links.host),
        ).add(
            f"move {links.namespace} into {namespace}",
            lambda: driver.move_to_namespace(links.namespace, namespace),
        ).add(
            f"attach {links.host} to {vpc.bridge}",
            lambda: driver.attach_to_bridge(links.host, vpc.bridge),
        ).add(
            f"bring up {links.host}",
            lambda: driver.set_link_up(links.host),
        ).add(
            f"bring up {links.namespace}",
            lambda: driver.set_link_up(links.namespace, namespace),
        ).add(
            "bring up loopback",
            lambda: driver.set_link_up("lo", namespace),
        ).add(
            f"add gateway {gateway} to {vpc.bridge}",
            lambda: driver.add_address(vpc.bridge, with_prefix(gateway, network)),
        ).add(
            f"assign {address} to {links.namespace}",
            lambda: driver.add_address(links.namespace, with_prefix(address, network), namespace),
        ).add(
            f"default route via {gateway}",
            lambda: driver.add_route(
                "default", namespace, gateway=gateway, device=links.namespace
            ),
        )
        if stype is SubnetType.PUBLIC:
            plan.add(
                "enable forwarding",
                lambda: driver.set_ip_forwarding(True, namespace),
            )
        plan.run()

        LOG.info(
            "Added %s subnet %s to VPC %s: namespace=%s address=%s gateway=%s links=%s/%s",
            stype.value,
            network,
            vpc.name,
            namespace,
            address,
            gateway,
            links.host,
            links.namespace,
        )
        return Subnet(
            vpc=vpc.name,
            type=stype,
            cidr=str(network),
            namespace=namespace,
            host_link=links.host,
            namespace_link=links.namespace,
            address=address,
            gateway=gateway,
        )

    @serialized
    def delete_subnet(self, vpc_name: str, subnet_type: Union[str, SubnetType]) -> OperationResult:
        stype = SubnetType.parse(subnet_type)
        vpc = self._vpcs.get(vpc_name)
        namespace = namespace_name(vpc.name, stype)
        links = subnet_link_names(vpc.name, stype)
        result = OperationResult()

        interface = self.get_namespace_interface(namespace)
        if interface:
            network = network_of(interface)
            gateway = with_prefix(gateway_address(network), network)
            # the VPC gateway itself stays on the bridge
            if gateway != with_prefix(vpc.gateway, vpc.cidr):
                self._collect(
                    result, gateway, lambda: self._driver.delete_address(vpc.bridge, gateway)
                )
        self._collect(result, links.host, lambda: self._driver.delete_link(links.host))
        self._collect(result, namespace, lambda: self._driver.delete_namespace(namespace))
        LOG.info("Deleted %s subnet of VPC %s", stype.value, vpc.name)
        return result

    @staticmethod
    def _collect(result: OperationResult, target: str, action) -> None:
        try:
            removed = action()
        except ExternalSystemFailure as exc:
            LOG.warning("Could not remove %s: %s", target, exc)
            result.warnings.append(f"{target}: {exc}")
            return
        if removed:
            result.succeeded.append(target)
        else:
            result.skipped.append(f"{target} (already gone)")

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------
    def list_subnets(self) -> List[SubnetInfo]:
        subnets = []
        for namespace in self._driver.list_namespaces():
            parsed = parse_namespace(namespace)
            if parsed is None:
                continue
            vpc, stype = parsed
            link = subnet_link_names(vpc, stype).namespace
            subnets.append(
                SubnetInfo(
                    namespace=namespace,
                    vpc=vpc,
                    type=stype,
                    addresses=self._driver.get_addresses(link, namespace),
                    routes=self._driver.list_routes(namespace),
                )
            )
        return subnets

    def get_vpc_namespaces(
        self, vpc_name: str, subnet_type: Optional[Union[str, SubnetType]] = None
    ) -> List[str]:
        stype = SubnetType.parse(subnet_type) if subnet_type is not None else None
        return filter_vpc_namespaces(self._driver.list_namespaces(), vpc_name, stype)

    def get_namespace_interface(self, namespace: str) -> str:
        """Return ``address/prefix`` of the subnet link, or ``""``."""

        parsed = parse_namespace(namespace)
        if parsed is None:
            return ""
        link = subnet_link_names(*parsed).namespace
        addresses = self._driver.get_addresses(link, namespace)
        return addresses[0] if addresses else ""

    def get_namespace_address(self, namespace: str) -> str:
        interface = self.get_namespace_interface(namespace)
        return interface.split("/", 1)[0] if interface else ""

    def verify_connectivity(self, vpc_name: str) -> List[ProbeResult]:
        """Ping between every pair of subnets of ``vpc_name``."""

        self._vpcs.get(vpc_name)
        namespaces = self.get_vpc_namespaces(vpc_name)
        results = []
        for index, source in enumerate(namespaces):
            for target in namespaces[index + 1 :]:
                address = self.get_namespace_address(target)
                if not address:
                    continue
                reachable = self._driver.ping(
                    address, source, timeout=self._probe.timeout, retries=self._probe.retries
                )
                log = LOG.info if reachable else LOG.warning
                log(
                    "%s -> %s (%s): %s",
                    source,
                    target,
                    address,
                    "connected" if reachable else "failed",
                )
                results.append(
                    ProbeResult(
                        namespace=source,
                        check="subnet",
                        target=address,
                        expected=True,
                        reachable=reachable,
                    )
                )
        return results

    def find_namespace_by_subnet(self, vpc_name: str, cidr: str) -> Optional[str]:
        """Return the namespace of ``vpc_name`` whose address lies in ``cidr``."""

        network = parse_cidr(cidr)
        for namespace in self.get_vpc_namespaces(vpc_name):
            address = self.get_namespace_address(namespace)
            if address and ipaddress.ip_address(address) in network:
                return namespace
        return None
