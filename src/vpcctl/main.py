"""Entry point for the vpcctl command-line tool."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

from linux_vpc import ControlPlane, VPCError, build_control_plane
from linux_vpc.drivers import LinuxNetworkDriver
from linux_vpc.firewall import DEFAULT_TEST_PORTS
from linux_vpc.models import OperationResult, ProbeResult

from .config import CtlConfig, default_config_path, load_config

LOG = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

Handler = Callable[[ControlPlane, argparse.Namespace, CtlConfig], int]


def _setup_logging(verbose: bool, level: str = "INFO", log_file: Optional[Path] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _print_result(result: OperationResult) -> int:
    for item in result.succeeded:
        print(f"  done: {item}")
    for item in result.skipped:
        print(f"  skipped: {item}")
    for item in result.warnings:
        print(f"  warning: {item}")
    return 0 if result.ok else 1


# ----------------------------------------------------------------------
# VPCs and subnets
# ----------------------------------------------------------------------
def _create_vpc(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    vpc = control.vpcs.create_vpc(args.name, args.cidr or config.network.default_vpc_cidr)
    print(f"VPC {vpc.name} created: cidr={vpc.cidr} bridge={vpc.bridge} gateway={vpc.gateway}")
    return 0


def _delete_vpc(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    result = control.vpcs.delete_vpc(args.name)
    print(f"VPC {args.name} deleted")
    return _print_result(result)


def _list_vpcs(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    summaries = control.vpcs.list_vpcs()
    if not summaries:
        print("No VPCs found")
        return 0
    print(f"{'NAME':<20} {'CIDR':<18} {'BRIDGE':<16} STATE")
    for vpc in summaries:
        print(f"{vpc.name:<20} {vpc.cidr:<18} {vpc.bridge:<16} {vpc.state}")
    return 0


def _add_subnet(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    subnet = control.subnets.add_subnet(args.vpc, args.type, args.cidr)
    print(
        f"Subnet {subnet.namespace} created: cidr={subnet.cidr} address={subnet.address} "
        f"gateway={subnet.gateway} links={subnet.host_link}/{subnet.namespace_link}"
    )
    return 0


def _delete_subnet(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    return _print_result(control.subnets.delete_subnet(args.vpc, args.type))


def _verify_subnets(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    print(f"Checking connectivity between subnets of VPC {args.vpc}")
    return _print_reachability(control.subnets.verify_connectivity(args.vpc))


def _list_subnets(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    subnets = control.subnets.list_subnets()
    if not subnets:
        print("No subnets found")
    for subnet in subnets:
        print(f"{subnet.namespace} (vpc={subnet.vpc} type={subnet.type.value})")
        print(f"  addresses: {', '.join(subnet.addresses) or '-'}")
        for route in subnet.routes:
            print(f"  route: {route}")
    return 0


# ----------------------------------------------------------------------
# Peering
# ----------------------------------------------------------------------
def _create_peering(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    print(f"Peering {args.vpc_a} <-> {args.vpc_b}")
    return _print_result(control.peerings.create_peering(args.vpc_a, args.vpc_b))


def _delete_peering(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    print(f"Removing peering {args.vpc_a} <-> {args.vpc_b}")
    return _print_result(control.peerings.delete_peering(args.vpc_a, args.vpc_b))


def _list_peerings(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    views = control.peerings.list_peerings()
    if not views:
        print("No peerings found")
    for view in views:
        peering = view.peering
        print(
            f"{peering.vpc_a} <-> {peering.vpc_b}: {view.status.value.upper()} "
            f"({peering.link_a}/{peering.link_b}, created {peering.created_at})"
        )
    return 0


def _test_isolation(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    report = control.peerings.check_isolation(args.vpc_a, args.vpc_b)
    state = "REACHABLE" if report.reachable else "ISOLATED"
    print(
        f"{report.source_namespace} ({report.source_address}) -> "
        f"{report.target_namespace} ({report.target_address}): {state}"
    )
    if report.peering_confirmed is not None:
        print(f"  peering working: {'yes' if report.peering_confirmed else 'NO'}")
        return 0 if report.peering_confirmed else 1
    return 0


def _cleanup_peerings(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    return _print_result(control.peerings.cleanup())


# ----------------------------------------------------------------------
# NAT
# ----------------------------------------------------------------------
def _enable_nat(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    print(f"Enabling NAT for VPC {args.vpc}")
    return _print_result(control.nat.enable_nat(args.vpc))


def _disable_nat(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    print(f"Removing NAT rules of VPC {args.vpc}")
    return _print_result(control.nat.disable_nat(args.vpc))


def _print_reachability(results: List[ProbeResult]) -> int:
    for item in results:
        verdict = "PASS" if item.passed else "FAIL"
        state = "reachable" if item.reachable else "unreachable"
        print(f"{item.namespace:<24} {item.check:<9} {item.target:<16} {state:<12} {verdict}")
    return 0 if all(item.passed for item in results) else 1


def _test_connectivity(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    return _print_reachability(control.nat.test_connectivity(args.vpc))


def _reset_nat(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    print(f"Resetting NAT rules of VPC {args.vpc}")
    return _print_result(control.nat.reset_nat(args.vpc))


def _list_nat_rules(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    for title, lines in control.nat.list_nat_rules().items():
        print(f"{title}:")
        for line in lines:
            print(f"  {line}")
    return 0


def _verify_nat(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    status = control.nat.verify_nat_setup(args.vpc)
    print(f"NAT setup of VPC {status.vpc}")
    print(f"  ip forwarding: {'enabled' if status.forwarding_enabled else 'disabled'}")
    print(f"  egress interface: {status.egress_interface or '-'}")
    print(f"  public subnets: {', '.join(status.public_namespaces) or '-'}")
    for rule in status.masquerade_rules or ["(none)"]:
        print(f"  nat: {rule}")
    for rule in status.forward_rules or ["(none)"]:
        print(f"  forward: {rule}")
    return 0


def _diagnose_nat(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    checks = control.nat.diagnose_nat_issues(args.vpc)
    for check in checks:
        print(f"  [{'ok' if check.ok else 'FAIL'}] {check.name}: {check.detail}")
    return 0 if all(check.ok for check in checks) else 1


# ----------------------------------------------------------------------
# Firewall
# ----------------------------------------------------------------------
def _apply_firewall(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    print(f"Applying {args.rules} to VPC {args.vpc}")
    return _print_result(control.firewall.apply_firewall(args.vpc, args.rules))


def _test_firewall(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    for probe in control.firewall.test_firewall(args.vpc, args.ports):
        target = f"port {probe.port}" if probe.port is not None else "icmp"
        print(f"{probe.namespace:<24} {probe.address:<16} {target:<10} {probe.state}")
    return 0


def _cleanup_firewall(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    return _print_result(control.firewall.cleanup_firewall(args.vpc))


# ----------------------------------------------------------------------
# Workloads
# ----------------------------------------------------------------------
def _deploy_app(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    workload = control.workloads.deploy_app(args.vpc, args.type, args.app)
    print(f"{workload.app} running in {workload.namespace} (pid {workload.pid}): {workload.url}")
    return 0


def _describe_app(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    status = control.workloads.describe_app(args.vpc, args.type)
    workload = status.workload
    print(
        f"{workload.app} in {workload.namespace}: pid {workload.pid} "
        f"{'running' if status.alive else 'NOT running'} at {workload.url}"
    )
    return 0 if status.alive else 1


def _stop_app(control: ControlPlane, args: argparse.Namespace, config: CtlConfig) -> int:
    control.workloads.stop_app(args.vpc, args.type)
    print(f"Workload in ns-{args.vpc}-{args.type} stopped")
    return 0


def _ports(value: str) -> List[int]:
    try:
        return [int(port) for port in value.split(",") if port.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port list '{value}'") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vpcctl", description="Manage single-host VPCs built from Linux bridges"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the configuration file (default: $VPCCTL_CONFIG or /etc/vpcctl/vpcctl.yaml)",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Override the directory holding VPC and peering records",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    def command(name: str, handler: Handler, help_text: str) -> argparse.ArgumentParser:
        sub = commands.add_parser(name, help=help_text)
        sub.set_defaults(handler=handler)
        return sub

    sub = command("create-vpc", _create_vpc, "Create a VPC bridge")
    sub.add_argument("name")
    sub.add_argument("cidr", nargs="?", help="CIDR block (default from configuration)")
    sub = command("delete-vpc", _delete_vpc, "Delete a VPC with its subnets and peerings")
    sub.add_argument("name")
    command("list-vpcs", _list_vpcs, "List VPCs and their bridge state")

    for name, handler, help_text in (
        ("add-subnet", _add_subnet, "Add a public or private subnet"),
        ("delete-subnet", _delete_subnet, "Remove a subnet"),
        ("deploy-app", _deploy_app, "Start a test web server in a subnet"),
        ("describe-app", _describe_app, "Show the test web server of a subnet"),
        ("stop-app", _stop_app, "Stop the test web server of a subnet"),
    ):
        sub = command(name, handler, help_text)
        sub.add_argument("vpc")
        sub.add_argument("type", choices=["public", "private"])
        if name == "add-subnet":
            sub.add_argument("cidr")
        elif name == "deploy-app":
            sub.add_argument("app", choices=["nginx", "python"])
    command("list-subnets", _list_subnets, "List subnet namespaces")

    for name, handler, help_text in (
        ("create-peering", _create_peering, "Peer two VPCs"),
        ("delete-peering", _delete_peering, "Remove the peering of two VPCs"),
        ("test-isolation", _test_isolation, "Probe reachability between two VPCs"),
    ):
        sub = command(name, handler, help_text)
        sub.add_argument("vpc_a")
        sub.add_argument("vpc_b")
    command("list-peerings", _list_peerings, "List peerings with live status")
    command("cleanup-peerings", _cleanup_peerings, "Remove every peering")
    command("list-nat-rules", _list_nat_rules, "Show the host NAT and FORWARD rules")

    for name, handler, help_text in (
        ("enable-nat", _enable_nat, "Give public subnets internet access"),
        ("disable-nat", _disable_nat, "Remove the NAT rules of a VPC"),
        ("test-connectivity", _test_connectivity, "Probe internet and gateway access"),
        ("verify-nat", _verify_nat, "Show the NAT configuration of a VPC"),
        ("diagnose-nat", _diagnose_nat, "Check common NAT problems"),
        ("reset-nat", _reset_nat, "Remove and reinstall the NAT rules of a VPC"),
        ("verify-subnets", _verify_subnets, "Ping between the subnets of a VPC"),
        ("cleanup-firewall", _cleanup_firewall, "Reset subnet firewalls to accept all"),
    ):
        command(name, handler, help_text).add_argument("vpc")

    sub = command("apply-firewall", _apply_firewall, "Apply a firewall rule set")
    sub.add_argument("vpc")
    sub.add_argument("rules", type=Path, help="YAML or JSON rule-set file")
    sub = command("test-firewall", _test_firewall, "Probe subnet ports from the host")
    sub.add_argument("vpc")
    sub.add_argument(
        "--ports",
        type=_ports,
        default=list(DEFAULT_TEST_PORTS),
        help="Comma separated TCP ports (default: 80,22,443,8080)",
    )
    return parser


def main(argv: Optional[List[str]] = None, control: Optional[ControlPlane] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config or default_config_path())
    except (OSError, ValueError) as exc:
        _setup_logging(args.verbose)
        LOG.error("cannot load configuration: %s", exc)
        return 1
    if args.state_dir is not None:
        config.state_dir = args.state_dir
    _setup_logging(args.verbose, config.log.level, config.log_path)

    try:
        if control is None:
            control = build_control_plane(
                LinuxNetworkDriver(),
                config.state_dir,
                egress_interface=config.network.egress_interface,
                probe=config.probe.to_settings(),
            )
        return args.handler(control, args, config)
    except VPCError as exc:
        LOG.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
