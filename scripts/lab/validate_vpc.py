#!/usr/bin/env python3
"""End-to-end validation of the VPC control plane against the real kernel.

Needs root.  Builds two VPCs with throwaway names, exercises subnets, NAT,
isolation, peering, workloads and firewall rules, then tears everything down.
Set ``SKIP_INTERNET=1`` on hosts without outbound connectivity.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Callable, List

REPO_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from linux_vpc import ControlPlane, VPCError, build_control_plane  # noqa: E402
from linux_vpc.drivers import LinuxNetworkDriver  # noqa: E402
from linux_vpc.models import PeeringStatus  # noqa: E402

LOG = logging.getLogger("validate_vpc")

MAIN = os.environ.get("LAB_MAIN_VPC", "labmain")
SECONDARY = os.environ.get("LAB_SECONDARY_VPC", "labsec")


class ValidationError(RuntimeError):
    pass


def expect(condition: bool, message: str) -> None:
    if not condition:
        raise ValidationError(message)


def ping(control: ControlPlane, namespace: str, address: str) -> bool:
    return control.driver.ping(address, namespace, timeout=1.0, retries=2)


def phase_core(control: ControlPlane) -> None:
    control.vpcs.create_vpc(MAIN, "10.0.0.0/16")
    control.subnets.add_subnet(MAIN, "public", "10.0.1.0/24")
    control.subnets.add_subnet(MAIN, "private", "10.0.2.0/24")
    states = {vpc.name: vpc.state for vpc in control.vpcs.list_vpcs()}
    expect(states.get(MAIN) == "UP", f"bridge of {MAIN} is not up: {states}")
    expect(
        control.subnets.get_namespace_address(f"ns-{MAIN}-public") == "10.0.1.2",
        "public subnet did not get 10.0.1.2",
    )


def phase_inter_subnet(control: ControlPlane) -> None:
    expect(
        ping(control, f"ns-{MAIN}-public", "10.0.2.2"),
        "public subnet cannot reach the private subnet of the same VPC",
    )
    failed = [item for item in control.subnets.verify_connectivity(MAIN) if not item.passed]
    expect(not failed, f"subnet pairs cannot reach each other: {failed}")


def phase_nat(control: ControlPlane) -> None:
    control.nat.enable_nat(MAIN)
    again = control.nat.enable_nat(MAIN)
    expect(not again.succeeded, f"second enable-nat added rules: {again.succeeded}")
    control.nat.reset_nat(MAIN)
    expect(
        control.nat.verify_nat_setup(MAIN).masquerade_rules,
        f"reset-nat left {MAIN} without a MASQUERADE rule",
    )
    if os.environ.get("SKIP_INTERNET") == "1":
        LOG.info("Skipping internet probes")
        return
    failed = [probe for probe in control.nat.test_connectivity(MAIN) if not probe.passed]
    expect(not failed, f"connectivity checks failed: {failed}")


def phase_isolation(control: ControlPlane) -> None:
    control.vpcs.create_vpc(SECONDARY, "10.1.0.0/16")
    control.subnets.add_subnet(SECONDARY, "public", "10.1.1.0/24")
    report = control.peerings.check_isolation(MAIN, SECONDARY)
    expect(report.isolated, f"{MAIN} reaches {SECONDARY} without a peering")


def phase_peering(control: ControlPlane) -> None:
    control.peerings.create_peering(MAIN, SECONDARY)
    report = control.peerings.check_isolation(MAIN, SECONDARY)
    expect(report.peering_confirmed is True, f"peering {MAIN}<->{SECONDARY} carries no traffic")
    views = control.peerings.list_peerings()
    expect(
        all(view.status is PeeringStatus.ACTIVE for view in views),
        f"peering reported broken: {views}",
    )


def phase_workloads(control: ControlPlane) -> None:
    main_app = control.workloads.deploy_app(MAIN, "public", "nginx")
    control.workloads.deploy_app(SECONDARY, "public", "python")
    time.sleep(1.0)
    expect(
        control.driver.probe_tcp(main_app.address, main_app.port) == "open",
        f"{main_app.url} is not answering",
    )


def phase_firewall(control: ControlPlane) -> None:
    control.firewall.apply_firewall(
        MAIN,
        {
            "rules": [
                {
                    "subnet": "10.0.1.0/24",
                    "ingress": [
                        {"port": 80, "protocol": "tcp", "action": "allow"},
                        {"port": 22, "protocol": "tcp", "action": "deny"},
                    ],
                }
            ]
        },
    )
    states = {
        probe.port: probe.state
        for probe in control.firewall.test_firewall(MAIN, ports=(80, 22))
        if probe.namespace == f"ns-{MAIN}-public"
    }
    expect(states.get(80) == "open", f"port 80 should stay open: {states}")
    expect(states.get(22) == "filtered", f"port 22 should be filtered: {states}")


def cleanup(control: ControlPlane) -> None:
    for vpc, subnet_type in ((MAIN, "public"), (SECONDARY, "public")):
        try:
            control.workloads.stop_app(vpc, subnet_type)
        except VPCError as exc:
            LOG.debug("stop-app %s/%s: %s", vpc, subnet_type, exc)
    for vpc in (MAIN, SECONDARY):
        for step in (control.nat.disable_nat, control.vpcs.delete_vpc):
            try:
                step(vpc)
            except VPCError as exc:
                LOG.warning("cleanup of %s: %s", vpc, exc)


PHASES: List[Callable[[ControlPlane], None]] = [
    phase_core,
    phase_inter_subnet,
    phase_nat,
    phase_isolation,
    phase_peering,
    phase_workloads,
    phase_firewall,
]


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    if os.geteuid() != 0:
        raise SystemExit("validate_vpc.py must run as root")

    with tempfile.TemporaryDirectory(prefix="vpc-lab-") as state_dir:
        control = build_control_plane(LinuxNetworkDriver(), Path(state_dir))
        try:
            for phase in PHASES:
                LOG.info("=== %s ===", phase.__name__)
                try:
                    phase(control)
                except VPCError as exc:
                    raise ValidationError(f"{phase.__name__}: {exc}") from exc
        finally:
            cleanup(control)

    print("VPC lab validation succeeded")


if __name__ == "__main__":
    try:
        main()
    except ValidationError as exc:
        print(f"[validate_vpc] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
