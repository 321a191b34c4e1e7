"""Per-subnet packet filter policy, security-group style.

A rule-set document lists groups keyed by subnet CIDR::

    rules:
      - subnet: 10.0.1.0/24
        ingress:
          - {port: 80, protocol: tcp, action: allow}
          - {protocol: icmp, action: allow}
          - {port: 22, protocol: tcp, action: deny}

JSON documents with the same shape are accepted as well.  Applying a group
replaces the namespace's filter table: it is reset to a default-deny baseline
and the declared rules are appended in order.
"""

from __future__ import annotations

import ipaddress
import logging
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import yaml

from .drivers.base import NetworkDriver
from .errors import InvalidInput, NotFound
from .locking import OperationLock, serialized
from .models import FilterRule, FirewallRule, OperationResult, PortProbe, ProbeSettings, RuleGroup
from .subnet import SubnetManager
from .vpc import VPCRegistry

LOG = logging.getLogger(__name__)

PROTOCOLS = ("tcp", "udp", "icmp")
ACTIONS = ("allow", "deny")
DEFAULT_TEST_PORTS = (80, 22, 443, 8080)

BASELINE_POLICIES = (("INPUT", "DROP"), ("FORWARD", "DROP"), ("OUTPUT", "ACCEPT"))
OPEN_POLICIES = (("INPUT", "ACCEPT"), ("FORWARD", "ACCEPT"), ("OUTPUT", "ACCEPT"))
BASELINE_RULES = (
    FilterRule("filter", "INPUT", ("-m", "state", "--state", "ESTABLISHED,RELATED", "-j", "ACCEPT")),
    FilterRule("filter", "INPUT", ("-i", "lo", "-j", "ACCEPT")),
)

RuleSource = Union[str, Path, Mapping[str, Any], Sequence[RuleGroup]]


def _parse_port(value: Any, where: str) -> int:
    if isinstance(value, bool):
        raise InvalidInput(f"{where}: port must be an integer")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{where}: port must be an integer, got {value!r}") from None
    if not 1 <= port <= 65535:
        raise InvalidInput(f"{where}: port {port} is out of range")
    return port


def _parse_rule(raw: Any, where: str, position: int) -> FirewallRule:
    if not isinstance(raw, Mapping):
        raise InvalidInput(f"{where}: ingress entry must be a mapping")
    protocol = str(raw.get("protocol", "")).lower()
    if protocol not in PROTOCOLS:
        raise InvalidInput(f"{where}: protocol must be one of {', '.join(PROTOCOLS)}")
    action = str(raw.get("action", "")).lower()
    if action not in ACTIONS:
        raise InvalidInput(f"{where}: action must be 'allow' or 'deny'")
    port = None
    if protocol != "icmp":
        if raw.get("port") is None:
            raise InvalidInput(f"{where}: {protocol} rules need a port")
        port = _parse_port(raw["port"], where)
    return FirewallRule(protocol=protocol, action=action, port=port, position=position)


def _parse_group(raw: Any, index: int) -> RuleGroup:
    where = f"rules[{index}]"
    if not isinstance(raw, Mapping):
        raise InvalidInput(f"{where} must be a mapping")
    subnet = raw.get("subnet")
    try:
        network = ipaddress.ip_network(str(subnet), strict=False)
    except ValueError:
        raise InvalidInput(f"{where}: invalid subnet {subnet!r}") from None
    ingress = raw.get("ingress") or []
    if not isinstance(ingress, list):
        raise InvalidInput(f"{where}.ingress must be a list")
    return RuleGroup(
        subnet=str(network),
        ingress=tuple(
            _parse_rule(entry, f"{where}.ingress[{position}]", position)
            for position, entry in enumerate(ingress)
        ),
    )


def parse_rule_set(document: Union[str, Mapping[str, Any]]) -> List[RuleGroup]:
    """Validate a rule-set document (text or already-loaded mapping)."""

    if isinstance(document, str):
        try:
            document = yaml.safe_load(document)
        except yaml.YAMLError as exc:
            raise InvalidInput(f"rule set is not valid YAML/JSON: {exc}") from None
    if not isinstance(document, Mapping):
        raise InvalidInput("rule set must be a mapping with a 'rules' list")
    rules = document.get("rules")
    if not isinstance(rules, list):
        raise InvalidInput("rule set must contain a 'rules' list")
    return [_parse_group(group, index) for index, group in enumerate(rules)]


def load_rule_set(path: Union[str, Path]) -> List[RuleGroup]:
    path = Path(path)
    try:
        text = path.read_text()
    except FileNotFoundError:
        raise NotFound(f"rules file not found: {path}") from None
    except OSError as exc:
        raise InvalidInput(f"cannot read rules file {path}: {exc}") from None
    return parse_rule_set(text)


class FirewallManager:
    def __init__(
        self,
        driver: NetworkDriver,
        vpcs: VPCRegistry,
        subnets: SubnetManager,
        lock: Optional[OperationLock] = None,
        probe: Optional[ProbeSettings] = None,
    ) -> None:
        self._driver = driver
        self._vpcs = vpcs
        self._subnets = subnets
        self._lock = lock or OperationLock()
        self._probe = probe or ProbeSettings()

    @staticmethod
    def _groups(source: RuleSource) -> List[RuleGroup]:
        if isinstance(source, (str, Path)):
            return load_rule_set(source)
        if isinstance(source, Mapping):
            return parse_rule_set(source)
        return list(source)

    @serialized
    def apply_firewall(self, vpc_name: str, source: RuleSource) -> OperationResult:
        groups = self._groups(source)
        self._vpcs.get(vpc_name)
        LOG.info("Applying %d firewall rule group(s) to VPC %s", len(groups), vpc_name)

        result = OperationResult()
        configured = set()
        for group in groups:
            namespace = self._subnets.find_namespace_by_subnet(vpc_name, group.subnet)
            if namespace is None:
                LOG.warning("No namespace of VPC %s in subnet %s; skipping", vpc_name, group.subnet)
                result.warnings.append(f"{group.subnet}: no matching namespace")
                continue
            if namespace in configured:
                LOG.warning("%s matched more than one group; the last one wins", namespace)
            self._apply_group(namespace, group.ingress)
            configured.add(namespace)
            result.succeeded.append(f"{namespace} ({group.subnet}): {len(group.ingress)} rule(s)")
        return result

    def _apply_group(self, namespace: str, ingress: Iterable[FirewallRule]) -> None:
        self._driver.reset_filter(namespace)
        for chain, target in BASELINE_POLICIES:
            self._driver.set_policy(chain, target, namespace)
        for rule in BASELINE_RULES:
            self._driver.append_rule(rule, namespace)
        for rule in ingress:
            self._driver.append_rule(FilterRule("filter", "INPUT", rule.as_spec()), namespace)
            LOG.info("  %s: %s", namespace, rule.describe())

    def test_firewall(
        self, vpc_name: str, ports: Sequence[int] = DEFAULT_TEST_PORTS
    ) -> List[PortProbe]:
        self._vpcs.get(vpc_name)
        probes = []
        for namespace in self._subnets.get_vpc_namespaces(vpc_name):
            address = self._subnets.get_namespace_address(namespace)
            if not address:
                LOG.warning("%s has no address; skipping", namespace)
                continue
            for port in ports:
                state = self._driver.probe_tcp(address, port, timeout=self._probe.timeout)
                probes.append(PortProbe(namespace, address, port, state))
            icmp = self._driver.ping(
                address, timeout=self._probe.timeout, retries=self._probe.retries
            )
            probes.append(PortProbe(namespace, address, None, "allowed" if icmp else "blocked"))
        return probes

    @serialized
    def cleanup_firewall(self, vpc_name: str) -> OperationResult:
        self._vpcs.get(vpc_name)
        result = OperationResult()
        for namespace in self._subnets.get_vpc_namespaces(vpc_name):
            self._driver.reset_filter(namespace)
            for chain, target in OPEN_POLICIES:
                self._driver.set_policy(chain, target, namespace)
            LOG.info("Reset firewall of %s", namespace)
            result.succeeded.append(namespace)
        return result
