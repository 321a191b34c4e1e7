"""Single-host VPC control plane on top of Linux networking primitives.

Every VPC is a bridge, every subnet a network namespace plugged into that
bridge with a veth pair, and every peering a veth pair between two bridges
plus routes in the subnets of both sides.  The package orchestrates those
kernel objects:

* deriving bounded, collision-checked interface names (:mod:`linux_vpc.naming`);
* persisting VPC and peering records and reconciling them against live links;
* installing NAT and forwarding rules for public subnets; and
* replacing per-subnet packet filter policy from rule-set documents.

All kernel access goes through :class:`linux_vpc.drivers.NetworkDriver`, so the
managers can be exercised in unit tests against a fake driver.
"""

from .control import ControlPlane, build_control_plane  # noqa: F401
from .errors import VPCError  # noqa: F401

__all__ = [
    "ControlPlane",
    "VPCError",
    "build_control_plane",
]
