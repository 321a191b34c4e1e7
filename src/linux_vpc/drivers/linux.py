"""Network driver backed by the Linux kernel.

Mutations run the ``ip``, ``iptables`` and ``sysctl`` tools through a
pluggable runner so each step is visible in the debug log exactly as an
operator would type it.  Reads go through netlink with pyroute2, which avoids
scraping command output.
"""

from __future__ import annotations

import logging
import math
import os
import signal
import socket
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

import pyroute2
from pyroute2 import netns
from pyroute2.netlink.exceptions import NetlinkError

from ..errors import ExternalSystemFailure, NotFound
from ..models import FilterRule
from .base import NetworkDriver

LOG = logging.getLogger(__name__)

MAIN_TABLE = 254
IP_FORWARD_PROC = Path("/proc/sys/net/ipv4/ip_forward")

CommandRunner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]

# stderr fragments meaning "the object is already in the requested state"
_EXISTS = ("File exists", "Address already assigned")
_MISSING_LINK = ("Cannot find device", "does not exist")
_MISSING_ADDR = ("Cannot assign requested address",) + _MISSING_LINK
_MISSING_ROUTE = ("No such process", "No such file or directory")
_MISSING_NETNS = ("No such file or directory",)


def run_command(argv: Sequence[str], timeout: float = 30.0) -> "subprocess.CompletedProcess[str]":
    try:
        return subprocess.run(
            list(argv), check=False, text=True, capture_output=True, timeout=timeout
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(list(argv), 127, "", str(exc))
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(list(argv), 124, "", f"timed out after {timeout}s")


class LinuxNetworkDriver(NetworkDriver):
    def __init__(self, runner: Optional[CommandRunner] = None) -> None:
        self._runner = runner or run_command

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------
    def _run(
        self, argv: Sequence[str], namespace: Optional[str] = None
    ) -> "subprocess.CompletedProcess[str]":
        if namespace:
            argv = ["ip", "netns", "exec", namespace, *argv]
        LOG.debug("Executing: %s", " ".join(argv))
        return self._runner(list(argv))

    def _apply(
        self,
        argv: Sequence[str],
        what: str,
        namespace: Optional[str] = None,
        tolerate: Sequence[str] = (),
    ) -> bool:
        """Run a mutation; ``False`` when stderr matches one of ``tolerate``."""

        result = self._run(argv, namespace)
        if result.returncode == 0:
            return True
        stderr = (result.stderr or "").strip()
        if any(marker in stderr for marker in tolerate):
            LOG.debug("%s: %s (ignored)", what, stderr)
            return False
        raise ExternalSystemFailure(
            f"{what} failed: {stderr or f'exit status {result.returncode}'}",
            command=result.args,
            stderr=stderr,
        )

    @contextmanager
    def _netlink(self, namespace: Optional[str] = None) -> Iterator[pyroute2.IPRoute]:
        if namespace is None:
            ipr = pyroute2.IPRoute()
        else:
            if namespace not in self.list_namespaces():
                raise NotFound(f"namespace {namespace} does not exist")
            # flags=0: never create the namespace as a side effect of a read
            ipr = pyroute2.NetNS(namespace, flags=0)
        try:
            yield ipr
        finally:
            ipr.close()

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------
    def link_exists(self, name: str, namespace: Optional[str] = None) -> bool:
        try:
            with self._netlink(namespace) as ipr:
                return bool(ipr.link_lookup(ifname=name))
        except NotFound:
            return False
        except (NetlinkError, OSError) as exc:
            LOG.debug("link lookup for %s failed: %s", name, exc)
            return False

    def create_bridge(self, name: str) -> None:
        self._apply(["ip", "link", "add", "name", name, "type", "bridge"], f"create bridge {name}")

    def create_veth_pair(self, name: str, peer: str) -> None:
        self._apply(
            ["ip", "link", "add", name, "type", "veth", "peer", "name", peer],
            f"create veth pair {name}/{peer}",
        )

    def delete_link(self, name: str, namespace: Optional[str] = None) -> bool:
        return self._apply(
            ["ip", "link", "delete", name], f"delete link {name}", namespace, _MISSING_LINK
        )

    def set_link_up(self, name: str, namespace: Optional[str] = None) -> None:
        self._apply(["ip", "link", "set", "dev", name, "up"], f"bring up {name}", namespace)

    def move_to_namespace(self, name: str, namespace: str) -> None:
        self._apply(
            ["ip", "link", "set", name, "netns", namespace], f"move {name} into {namespace}"
        )

    def attach_to_bridge(self, name: str, bridge: str) -> None:
        self._apply(["ip", "link", "set", name, "master", bridge], f"attach {name} to {bridge}")

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------
    def add_address(self, device: str, address: str, namespace: Optional[str] = None) -> bool:
        return self._apply(
            ["ip", "addr", "add", address, "dev", device],
            f"assign {address} to {device}",
            namespace,
            _EXISTS,
        )

    def delete_address(self, device: str, address: str, namespace: Optional[str] = None) -> bool:
        return self._apply(
            ["ip", "addr", "del", address, "dev", device],
            f"remove {address} from {device}",
            namespace,
            _MISSING_ADDR,
        )

    def get_addresses(self, device: str, namespace: Optional[str] = None) -> List[str]:
        try:
            with self._netlink(namespace) as ipr:
                index = ipr.link_lookup(ifname=device)
                if not index:
                    return []
                return [
                    f"{msg.get_attr('IFA_ADDRESS')}/{msg['prefixlen']}"
                    for msg in ipr.get_addr(index=index[0], family=socket.AF_INET)
                ]
        except NotFound:
            return []
        except (NetlinkError, OSError) as exc:
            LOG.debug("address lookup for %s failed: %s", device, exc)
            return []

    # ------------------------------------------------------------------
    # Namespaces
    # ------------------------------------------------------------------
    def create_namespace(self, name: str) -> None:
        self._apply(["ip", "netns", "add", name], f"create namespace {name}")

    def delete_namespace(self, name: str) -> bool:
        return self._apply(
            ["ip", "netns", "delete", name], f"delete namespace {name}", tolerate=_MISSING_NETNS
        )

    def list_namespaces(self) -> List[str]:
        return sorted(netns.listnetns())

    # ------------------------------------------------------------------
    # Routes and forwarding
    # ------------------------------------------------------------------
    def add_route(
        self,
        destination: str,
        namespace: Optional[str] = None,
        *,
        gateway: Optional[str] = None,
        device: Optional[str] = None,
        onlink: bool = False,
    ) -> bool:
        argv = ["ip", "route", "add", destination]
        if gateway:
            argv.extend(["via", gateway])
        if device:
            argv.extend(["dev", device])
        if onlink:
            argv.append("onlink")
        return self._apply(argv, f"add route {destination}", namespace, _EXISTS)

    def delete_route(self, destination: str, namespace: Optional[str] = None) -> bool:
        return self._apply(
            ["ip", "route", "del", destination],
            f"delete route {destination}",
            namespace,
            _MISSING_ROUTE,
        )

    def list_routes(self, namespace: Optional[str] = None) -> List[str]:
        try:
            with self._netlink(namespace) as ipr:
                names = {
                    link["index"]: link.get_attr("IFLA_IFNAME") for link in ipr.get_links()
                }
                lines = []
                for msg in ipr.get_routes(family=socket.AF_INET, table=MAIN_TABLE):
                    dst = msg.get_attr("RTA_DST")
                    parts = [f"{dst}/{msg['dst_len']}" if dst else "default"]
                    gateway = msg.get_attr("RTA_GATEWAY")
                    if gateway:
                        parts.extend(["via", gateway])
                    oif = msg.get_attr("RTA_OIF")
                    if oif in names:
                        parts.extend(["dev", names[oif]])
                    lines.append(" ".join(parts))
                return lines
        except NotFound:
            return []
        except (NetlinkError, OSError) as exc:
            LOG.debug("route dump failed: %s", exc)
            return []

    def get_default_interface(self) -> Optional[str]:
        try:
            with self._netlink() as ipr:
                for msg in ipr.get_routes(family=socket.AF_INET, table=MAIN_TABLE):
                    oif = msg.get_attr("RTA_OIF")
                    if msg["dst_len"] != 0 or oif is None:
                        continue
                    links = ipr.get_links(oif)
                    if links:
                        return links[0].get_attr("IFLA_IFNAME")
        except (NetlinkError, OSError) as exc:
            LOG.debug("default route lookup failed: %s", exc)
        return None

    def get_ip_forwarding(self, namespace: Optional[str] = None) -> bool:
        if namespace is None:
            try:
                return IP_FORWARD_PROC.read_text().strip() == "1"
            except OSError as exc:
                LOG.debug("cannot read %s: %s", IP_FORWARD_PROC, exc)
                return False
        result = self._run(["sysctl", "-n", "net.ipv4.ip_forward"], namespace)
        return result.returncode == 0 and result.stdout.strip() == "1"

    def set_ip_forwarding(self, enabled: bool = True, namespace: Optional[str] = None) -> None:
        value = "1" if enabled else "0"
        self._apply(
            ["sysctl", "-w", f"net.ipv4.ip_forward={value}"],
            f"set ip_forward={value}",
            namespace,
        )

    # ------------------------------------------------------------------
    # Packet filter
    # ------------------------------------------------------------------
    @staticmethod
    def _iptables(rule: FilterRule, op: str) -> List[str]:
        return ["iptables", "-t", rule.table, op, rule.chain, *rule.spec]

    def rule_exists(self, rule: FilterRule, namespace: Optional[str] = None) -> bool:
        result = self._run(self._iptables(rule, "-C"), namespace)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise ExternalSystemFailure(
            f"check rule '{rule.describe()}' failed: {result.stderr.strip()}",
            command=result.args,
            stderr=result.stderr,
        )

    def append_rule(self, rule: FilterRule, namespace: Optional[str] = None) -> None:
        self._apply(self._iptables(rule, "-A"), f"append rule '{rule.describe()}'", namespace)

    def insert_rule(self, rule: FilterRule, namespace: Optional[str] = None) -> None:
        self._apply(self._iptables(rule, "-I"), f"insert rule '{rule.describe()}'", namespace)

    def delete_rule(self, rule: FilterRule, namespace: Optional[str] = None) -> bool:
        result = self._run(self._iptables(rule, "-D"), namespace)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise ExternalSystemFailure(
            f"delete rule '{rule.describe()}' failed: {result.stderr.strip()}",
            command=result.args,
            stderr=result.stderr,
        )

    def list_rules(
        self,
        table: str = "filter",
        chain: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> List[str]:
        argv = ["iptables", "-t", table, "-S"]
        if chain:
            argv.append(chain)
        result = self._run(argv, namespace)
        if result.returncode != 0:
            raise ExternalSystemFailure(
                f"list {table} rules failed: {result.stderr.strip()}",
                command=result.args,
                stderr=result.stderr,
            )
        return [line for line in result.stdout.splitlines() if line.strip()]

    def reset_filter(self, namespace: Optional[str] = None) -> None:
        for flag, what in (("-F", "flush rules"), ("-X", "delete chains"), ("-Z", "zero counters")):
            self._apply(["iptables", flag], what, namespace)

    def set_policy(self, chain: str, target: str, namespace: Optional[str] = None) -> None:
        self._apply(["iptables", "-P", chain, target], f"set {chain} policy {target}", namespace)

    # ------------------------------------------------------------------
    # Probes and processes
    # ------------------------------------------------------------------
    def ping(
        self,
        address: str,
        namespace: Optional[str] = None,
        *,
        timeout: float = 1.0,
        retries: int = 1,
    ) -> bool:
        wait = str(max(1, math.ceil(timeout)))
        for attempt in range(max(1, retries)):
            result = self._run(["ping", "-c", "1", "-W", wait, address], namespace)
            if result.returncode == 0:
                return True
            LOG.debug("ping %s from %s: attempt %d failed", address, namespace or "host", attempt + 1)
        return False

    def probe_tcp(self, address: str, port: int, *, timeout: float = 1.0) -> str:
        try:
            with socket.create_connection((address, port), timeout=timeout):
                return "open"
        except ConnectionRefusedError:
            return "closed"
        except OSError:
            return "filtered"

    def spawn(
        self,
        argv: Sequence[str],
        namespace: str,
        *,
        log_path: Path,
        cwd: Optional[Path] = None,
    ) -> int:
        command = ["ip", "netns", "exec", namespace, *argv]
        LOG.debug("Spawning: %s", " ".join(command))
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as log:
            try:
                process = subprocess.Popen(
                    command,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    cwd=cwd,
                    start_new_session=True,
                )
            except OSError as exc:
                raise ExternalSystemFailure(
                    f"spawn in {namespace} failed: {exc}", command=command
                ) from exc
        return process.pid

    def process_alive(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def terminate(self, pid: int) -> bool:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        return True
