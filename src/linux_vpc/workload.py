"""Throwaway HTTP servers for exercising subnets, NAT and firewall rules."""

from __future__ import annotations

import html
import logging
from pathlib import Path
from typing import Dict, Optional, Union

from .drivers.base import NetworkDriver
from .errors import AlreadyExists, InsufficientState, InvalidArgument, NotFound
from .locking import OperationLock, serialized
from .models import Workload, WorkloadStatus
from .naming import SubnetType, namespace_name
from .store import RecordStore
from .subnet import SubnetManager

LOG = logging.getLogger(__name__)

# "nginx" is served by http.server as well; only the port differs.
APP_PORTS: Dict[str, int] = {"nginx": 80, "python": 8080}

INDEX_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>VPC Test Server</title></head>
<body>
<h1>Hello from VPC Test Server</h1>
<p>Namespace: {namespace}</p>
<p>IP Address: {address}</p>
<p>Application: {app}</p>
</body>
</html>
"""


class WorkloadManager:
    def __init__(
        self,
        driver: NetworkDriver,
        subnets: SubnetManager,
        store: RecordStore,
        web_root: Path,
        lock: Optional[OperationLock] = None,
    ) -> None:
        self._driver = driver
        self._subnets = subnets
        self._store = store
        self._web_root = Path(web_root)
        self._lock = lock or OperationLock()

    def _namespace(self, vpc_name: str, subnet_type: Union[str, SubnetType]) -> str:
        namespace = namespace_name(vpc_name, subnet_type)
        if not self._driver.namespace_exists(namespace):
            raise NotFound(f"subnet {namespace} does not exist")
        return namespace

    @serialized
    def deploy_app(
        self, vpc_name: str, subnet_type: Union[str, SubnetType], app: str
    ) -> Workload:
        if app not in APP_PORTS:
            raise InvalidArgument(f"unknown app {app!r}; use {' or '.join(APP_PORTS)}")
        namespace = self._namespace(vpc_name, subnet_type)

        current = self._store.get(namespace)
        if current is not None:
            workload = Workload.from_record(current)
            if self._driver.process_alive(workload.pid):
                raise AlreadyExists(
                    f"{workload.app} is already running in {namespace} (pid {workload.pid})"
                )
            LOG.info("Dropping stale workload record for %s", namespace)
            self._store.delete(namespace)

        address = self._subnets.get_namespace_address(namespace)
        if not address:
            raise InsufficientState(f"{namespace} has no address")

        port = APP_PORTS[app]
        site = self._web_root / namespace
        site.mkdir(parents=True, exist_ok=True)
        (site / "index.html").write_text(
            INDEX_TEMPLATE.format(
                namespace=html.escape(namespace), address=html.escape(address), app=app
            )
        )
        log_path = site / "server.log"
        pid = self._driver.spawn(
            ["python3", "-m", "http.server", str(port), "--bind", address],
            namespace,
            log_path=log_path,
            cwd=site,
        )
        workload = Workload(
            namespace=namespace,
            app=app,
            port=port,
            address=address,
            pid=pid,
            log_path=str(log_path),
        )
        self._store.put(namespace, workload.to_record())
        LOG.info("Started %s in %s (pid %d): %s", app, namespace, pid, workload.url)
        return workload

    def describe_app(self, vpc_name: str, subnet_type: Union[str, SubnetType]) -> WorkloadStatus:
        namespace = namespace_name(vpc_name, subnet_type)
        record = self._store.get(namespace)
        if record is None:
            raise NotFound(f"no workload deployed in {namespace}")
        workload = Workload.from_record(record)
        return WorkloadStatus(workload, self._driver.process_alive(workload.pid))

    @serialized
    def stop_app(self, vpc_name: str, subnet_type: Union[str, SubnetType]) -> bool:
        """Stop the workload; return whether a live process was signalled."""

        status = self.describe_app(vpc_name, subnet_type)
        signalled = status.alive and self._driver.terminate(status.workload.pid)
        self._store.delete(status.workload.namespace)
        LOG.info(
            "Stopped %s in %s%s",
            status.workload.app,
            status.workload.namespace,
            "" if signalled else " (process already gone)",
        )
        return signalled
