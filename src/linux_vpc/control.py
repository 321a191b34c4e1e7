"""Wire the managers together around one driver, one lock and one state dir."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .drivers.base import NetworkDriver
from .firewall import FirewallManager
from .locking import OperationLock
from .models import ProbeSettings
from .nat import NATManager
from .peering import PeeringManager
from .store import DirectoryStore, MemoryStore, PeeringRepository, RecordStore, VPCRepository
from .subnet import SubnetManager
from .vpc import VPCRegistry
from .workload import WorkloadManager

LOCK_FILE = "vpcctl.lock"


@dataclass
class ControlPlane:
    driver: NetworkDriver
    lock: OperationLock
    vpcs: VPCRegistry
    subnets: SubnetManager
    peerings: PeeringManager
    nat: NATManager
    firewall: FirewallManager
    workloads: WorkloadManager


def build_control_plane(
    driver: NetworkDriver,
    state_dir: Optional[Path] = None,
    *,
    egress_interface: Optional[str] = None,
    probe: Optional[ProbeSettings] = None,
) -> ControlPlane:
    """Assemble a :class:`ControlPlane`.

    With ``state_dir`` the records live in ``vpcs/``, ``peerings/`` and
    ``workloads/`` below it and concurrent processes serialize on
    ``vpcctl.lock``.  Without it everything is kept in memory.
    """

    vpc_store: RecordStore
    peering_store: RecordStore
    workload_store: RecordStore
    if state_dir is not None:
        state_dir = Path(state_dir)
        vpc_store = DirectoryStore(state_dir / "vpcs")
        peering_store = DirectoryStore(state_dir / "peerings")
        workload_store = DirectoryStore(state_dir / "workloads")
        lock = OperationLock(state_dir / LOCK_FILE)
        web_root = state_dir / "www"
    else:
        vpc_store, peering_store, workload_store = MemoryStore(), MemoryStore(), MemoryStore()
        lock = OperationLock()
        web_root = Path(tempfile.gettempdir()) / "vpcctl-www"

    probe = probe or ProbeSettings()
    peering_repo = PeeringRepository(peering_store)
    vpcs = VPCRegistry(driver, VPCRepository(vpc_store), peering_repo, lock)
    subnets = SubnetManager(driver, vpcs, lock, probe)
    return ControlPlane(
        driver=driver,
        lock=lock,
        vpcs=vpcs,
        subnets=subnets,
        peerings=PeeringManager(driver, vpcs, subnets, peering_repo, lock, probe),
        nat=NATManager(driver, vpcs, subnets, lock, egress_interface, probe),
        firewall=FirewallManager(driver, vpcs, subnets, lock, probe),
        workloads=WorkloadManager(driver, subnets, workload_store, web_root, lock),
    )
