"""Exception hierarchy raised by the VPC control plane."""

from __future__ import annotations

from typing import Optional, Sequence


class VPCError(Exception):
    """Base class for every failure reported by the orchestrator."""


class InvalidArgument(VPCError, ValueError):
    """A name, CIDR, subnet type or rule was malformed."""


class InvalidInput(InvalidArgument):
    """A firewall rule-set document could not be parsed or validated."""


class AlreadyExists(VPCError):
    """A VPC, subnet or peering with the same identity already exists."""


class NotFound(VPCError):
    """The referenced VPC, subnet, peering or rule target does not exist."""


class NameCollision(VPCError):
    """A derived interface name is taken by an unrelated resource."""


class InsufficientState(VPCError):
    """The preconditions of an operation are not met yet."""


class ResourceStale(VPCError):
    """A persisted record refers to a kernel object that is gone."""


class ExternalSystemFailure(VPCError):
    """The kernel networking tools rejected an operation."""

    def __init__(
        self,
        message: str,
        *,
        command: Optional[Sequence[str]] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.command = list(command) if command else None
        self.stderr = stderr
