"""Record stores and the repositories built on top of them.

A store is a tiny key/value interface over JSON-compatible dicts.  The
in-memory variant backs the unit tests; :class:`DirectoryStore` keeps one JSON
file per key and is what the CLI uses.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .models import VPC, Peering
from .naming import peering_key

LOG = logging.getLogger(__name__)

Record = Dict[str, Any]


class RecordStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Record]:
        """Return the record stored under ``key`` or ``None``."""

    @abstractmethod
    def put(self, key: str, record: Record) -> None:
        """Create or replace the record stored under ``key``."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; return whether it existed."""

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, Record]]:
        """Iterate over all ``(key, record)`` pairs."""


class MemoryStore(RecordStore):
    def __init__(self) -> None:
        self._records: Dict[str, Record] = {}

    def get(self, key: str) -> Optional[Record]:
        record = self._records.get(key)
        return dict(record) if record is not None else None

    def put(self, key: str, record: Record) -> None:
        self._records[key] = dict(record)

    def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    def items(self) -> Iterator[Tuple[str, Record]]:
        for key, record in list(self._records.items()):
            yield key, dict(record)


class DirectoryStore(RecordStore):
    """Persist each record as ``<directory>/<key>.json``."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, key: str) -> Path:
        if not key or "/" in key or key.startswith("."):
            raise ValueError(f"invalid record key {key!r}")
        return self._directory / f"{key}.json"

    def get(self, key: str) -> Optional[Record]:
        path = self._path(key)
        if not path.exists():
            return None
        return self._load(path)

    def put(self, key: str, record: Record) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=f".{key}.")
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(record, fh, indent=2, sort_keys=True)
                fh.write("\n")
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        LOG.debug("Saved record %s", path)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        LOG.debug("Removed record %s", path)
        return True

    def items(self) -> Iterator[Tuple[str, Record]]:
        if not self._directory.is_dir():
            return
        for path in sorted(self._directory.glob("*.json")):
            record = self._load(path)
            if record is not None:
                yield path.stem, record

    def _load(self, path: Path) -> Optional[Record]:
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            LOG.warning("Ignoring unreadable record %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            LOG.warning("Ignoring record %s: not a mapping", path)
            return None
        return data


class VPCRepository:
    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def get(self, name: str) -> Optional[VPC]:
        record = self._store.get(name)
        return VPC.from_record(record) if record else None

    def save(self, vpc: VPC) -> None:
        self._store.put(vpc.name, vpc.to_record())

    def delete(self, name: str) -> bool:
        return self._store.delete(name)

    def list(self) -> List[VPC]:
        return [VPC.from_record(record) for _, record in self._store.items()]

    def find_by_bridge(self, bridge: str) -> Optional[VPC]:
        return next((vpc for vpc in self.list() if vpc.bridge == bridge), None)


class PeeringRepository:
    def __init__(self, store: RecordStore) -> None:
        self._store = store

    @staticmethod
    def key_for(vpc_a: str, vpc_b: str) -> str:
        first, second = peering_key(vpc_a, vpc_b)
        return f"peer-{first}-{second}"

    def get(self, vpc_a: str, vpc_b: str) -> Optional[Peering]:
        record = self._store.get(self.key_for(vpc_a, vpc_b))
        return Peering.from_record(record) if record else None

    def save(self, peering: Peering) -> None:
        self._store.put(self.key_for(*peering.key), peering.to_record())

    def delete(self, vpc_a: str, vpc_b: str) -> bool:
        return self._store.delete(self.key_for(vpc_a, vpc_b))

    def list(self) -> List[Peering]:
        return [Peering.from_record(record) for _, record in self._store.items()]

    def involving(self, vpc: str) -> List[Peering]:
        return [peering for peering in self.list() if peering.involves(vpc)]

    def find_by_link(self, link: str) -> Optional[Peering]:
        return next((p for p in self.list() if link in p.links), None)
