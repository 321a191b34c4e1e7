"""Outbound NAT for public subnets and intra-VPC forwarding policy."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .drivers.base import NetworkDriver
from .errors import InsufficientState
from .locking import OperationLock, serialized
from .models import (
    DiagnosticCheck,
    FilterRule,
    NATStatus,
    OperationResult,
    ProbeResult,
    ProbeSettings,
)
from .naming import SubnetType, network_of
from .subnet import SubnetManager
from .vpc import VPCRegistry, bridge_forward_rules

LOG = logging.getLogger(__name__)


def subnet_nat_rules(cidr: str, egress: str) -> List[FilterRule]:
    """Rules giving ``cidr`` masqueraded egress through ``egress``."""

    return [
        FilterRule("nat", "POSTROUTING", ("-s", cidr, "-o", egress, "-j", "MASQUERADE")),
        FilterRule("filter", "FORWARD", ("-s", cidr, "-o", egress, "-j", "ACCEPT")),
        FilterRule(
            "filter",
            "FORWARD",
            (
                "-d", cidr,
                "-i", egress,
                "-m", "state",
                "--state", "ESTABLISHED,RELATED",
                "-j", "ACCEPT",
            ),
        ),
    ]


class NATManager:
    def __init__(
        self,
        driver: NetworkDriver,
        vpcs: VPCRegistry,
        subnets: SubnetManager,
        lock: Optional[OperationLock] = None,
        egress_interface: Optional[str] = None,
        probe: Optional[ProbeSettings] = None,
    ) -> None:
        self._driver = driver
        self._vpcs = vpcs
        self._subnets = subnets
        self._lock = lock or OperationLock()
        self._egress_interface = egress_interface
        self._probe = probe or ProbeSettings()

    def egress_interface(self) -> Optional[str]:
        return self._egress_interface or self._driver.get_default_interface()

    def public_subnets(self, vpc_name: str) -> List[Tuple[str, str]]:
        """Return ``(namespace, cidr)`` for each addressed public subnet."""

        subnets = []
        for namespace in self._subnets.get_vpc_namespaces(vpc_name, SubnetType.PUBLIC):
            interface = self._subnets.get_namespace_interface(namespace)
            if not interface:
                LOG.warning("Public namespace %s has no address; skipping", namespace)
                continue
            subnets.append((namespace, network_of(interface)))
        return subnets

    def _subnet_rules(self, vpc_name: str, egress: str) -> List[FilterRule]:
        rules = []
        for _, cidr in self.public_subnets(vpc_name):
            rules.extend(subnet_nat_rules(cidr, egress))
        return rules

    @serialized
    def enable_nat(self, vpc_name: str) -> OperationResult:
        vpc = self._vpcs.get(vpc_name)
        self._driver.set_ip_forwarding(True)

        egress = self.egress_interface()
        if not egress:
            raise InsufficientState("cannot determine the egress interface: no default route")
        LOG.info("Enabling NAT for VPC %s via %s", vpc_name, egress)

        if not self.public_subnets(vpc_name):
            raise InsufficientState(
                f"VPC {vpc_name} has no public subnets; create one first: "
                f"vpcctl add-subnet {vpc_name} public <cidr>"
            )

        result = OperationResult()
        # intra-VPC forwarding is normally installed with the bridge already
        intra_vpc = bridge_forward_rules(vpc.bridge)[0]
        for rule in self._subnet_rules(vpc_name, egress) + [intra_vpc]:
            if self._driver.rule_exists(rule):
                LOG.debug("Rule already present: %s", rule.describe())
                result.skipped.append(rule.describe())
                continue
            self._driver.append_rule(rule)
            LOG.info("Added rule: %s", rule.describe())
            result.succeeded.append(rule.describe())
        return result

    @serialized
    def disable_nat(self, vpc_name: str) -> OperationResult:
        self._vpcs.get(vpc_name)
        egress = self.egress_interface()
        if not egress:
            raise InsufficientState("cannot determine the egress interface: no default route")

        result = OperationResult()
        for rule in self._subnet_rules(vpc_name, egress):
            if self._driver.delete_rule(rule):
                LOG.info("Removed rule: %s", rule.describe())
                result.succeeded.append(rule.describe())
            else:
                result.skipped.append(f"{rule.describe()} (absent)")
        return result

    @serialized
    def reset_nat(self, vpc_name: str) -> OperationResult:
        """Remove every NAT rule of the public subnets, then enable NAT again.

        Rules are matched by subnet CIDR rather than egress interface, so
        rules left behind for a previous egress interface go as well.  The
        bridge isolation rules are kept.
        """

        self._vpcs.get(vpc_name)
        cidrs = {cidr for _, cidr in self.public_subnets(vpc_name)}
        LOG.info("Resetting NAT rules for VPC %s", vpc_name)

        result = OperationResult()
        for table, chain in (("nat", "POSTROUTING"), ("filter", "FORWARD")):
            for line in self._driver.list_rules(table, chain):
                tokens = line.split()
                if tokens[:1] != ["-A"] or not cidrs.intersection(tokens):
                    continue
                rule = FilterRule(table, chain, tuple(tokens[2:]))
                if self._driver.delete_rule(rule):
                    LOG.info("Removed rule: %s", rule.describe())
                    result.succeeded.append(f"removed {rule.describe()}")
        result.merge(self.enable_nat(vpc_name))
        return result

    def list_nat_rules(self) -> Dict[str, List[str]]:
        """Return the host ``nat`` table and the filter ``FORWARD`` chain."""

        return {
            "nat": self._driver.list_rules("nat"),
            "FORWARD": self._driver.list_rules("filter", "FORWARD"),
        }

    # ------------------------------------------------------------------
    # Probes and reports
    # ------------------------------------------------------------------
    def _namespace_gateway(self, namespace: str) -> str:
        for route in self._driver.list_routes(namespace):
            parts = route.split()
            if parts[:2] == ["default", "via"] and len(parts) > 2:
                return parts[2]
        return ""

    def test_connectivity(self, vpc_name: str) -> List[ProbeResult]:
        self._vpcs.get(vpc_name)
        results = []
        external = self._probe.external_address
        for stype in (SubnetType.PUBLIC, SubnetType.PRIVATE):
            for namespace in self._subnets.get_vpc_namespaces(vpc_name, stype):
                results.append(
                    ProbeResult(
                        namespace=namespace,
                        check="internet",
                        target=external,
                        expected=stype is SubnetType.PUBLIC,
                        reachable=self._ping(external, namespace),
                    )
                )
                gateway = self._namespace_gateway(namespace)
                if gateway:
                    results.append(
                        ProbeResult(
                            namespace=namespace,
                            check="gateway",
                            target=gateway,
                            expected=True,
                            reachable=self._ping(gateway, namespace),
                        )
                    )
        for probe in results:
            log = LOG.info if probe.passed else LOG.warning
            log(
                "%s %s -> %s: %s (expected %s)",
                probe.namespace,
                probe.check,
                probe.target,
                "reachable" if probe.reachable else "unreachable",
                "reachable" if probe.expected else "unreachable",
            )
        return results

    def _ping(self, address: str, namespace: Optional[str] = None) -> bool:
        return self._driver.ping(
            address, namespace, timeout=self._probe.timeout, retries=self._probe.retries
        )

    def verify_nat_setup(self, vpc_name: str) -> NATStatus:
        vpc = self._vpcs.get(vpc_name)
        public = self.public_subnets(vpc_name)
        markers = [cidr for _, cidr in public] + [vpc.bridge]

        def mentions(line: str) -> bool:
            return line.startswith("-A") and any(marker in line.split() for marker in markers)

        return NATStatus(
            vpc=vpc_name,
            forwarding_enabled=self._driver.get_ip_forwarding(),
            egress_interface=self.egress_interface(),
            masquerade_rules=[
                line
                for line in self._driver.list_rules("nat", "POSTROUTING")
                if "MASQUERADE" in line and mentions(line)
            ],
            forward_rules=[
                line for line in self._driver.list_rules("filter", "FORWARD") if mentions(line)
            ],
            public_namespaces=[namespace for namespace, _ in public],
        )

    def diagnose_nat_issues(self, vpc_name: str) -> List[DiagnosticCheck]:
        self._vpcs.get(vpc_name)
        external = self._probe.external_address
        checks = [
            DiagnosticCheck(
                "host internet",
                self._ping(external),
                f"ping {external} from the host",
            ),
            DiagnosticCheck(
                "ip forwarding",
                self._driver.get_ip_forwarding(),
                "net.ipv4.ip_forward on the host",
            ),
        ]
        egress = self.egress_interface()
        checks.append(DiagnosticCheck("egress interface", bool(egress), egress or "no default route"))

        public = self.public_subnets(vpc_name)
        checks.append(
            DiagnosticCheck(
                "public subnets",
                bool(public),
                ", ".join(namespace for namespace, _ in public) or "none",
            )
        )
        if egress:
            for namespace, cidr in public:
                masquerade = subnet_nat_rules(cidr, egress)[0]
                checks.append(
                    DiagnosticCheck(
                        f"masquerade {cidr}",
                        self._driver.rule_exists(masquerade),
                        masquerade.describe(),
                    )
                )
        for check in checks:
            if not check.ok:
                LOG.warning("NAT check failed for %s: %s (%s)", vpc_name, check.name, check.detail)
        return checks
