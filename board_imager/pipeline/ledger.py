"""Serializable ledger of resources a build currently holds.

Every resource the pipeline acquires is appended here in acquisition order
and removed once released. When a path is given the ledger is rewritten
after each change, so a build killed mid-way leaves behind an exact list
that ``board-imager cleanup`` can unwind.

Example ledger file:
    {
      "image_path": "/srv/out/debian-orangepi-rv2-20261019-141500.img",
      "job_id": "build-1a2b3c4d",
      "resources": [
        {"kind": "loop", "identifier": "/dev/loop7"},
        {"kind": "mapping", "identifier": "/dev/loop7"},
        {"kind": "mount", "identifier": "/srv/rootfs"}
      ]
    }
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from board_imager.storage.exceptions import LedgerError


LOOP = "loop"
MAPPING = "mapping"
MOUNT = "mount"

RESOURCE_KINDS = (LOOP, MAPPING, MOUNT)


@dataclass(frozen=True)
class ResourceEntry:
    kind: str
    identifier: str


@dataclass
class ResourceLedger:
    path: Optional[Path] = None
    image_path: Optional[str] = None
    job_id: Optional[str] = None
    resources: list[ResourceEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.resources)

    def __iter__(self) -> Iterator[ResourceEntry]:
        return iter(list(self.resources))

    def __contains__(self, entry: object) -> bool:
        return entry in self.resources

    def reverse(self) -> list[ResourceEntry]:
        """Entries in teardown order (most recently acquired first)."""
        return list(reversed(self.resources))

    def record(self, kind: str, identifier: str) -> ResourceEntry:
        if kind not in RESOURCE_KINDS:
            raise LedgerError(f"Unknown resource kind {kind!r}", path=self._path_str())
        entry = ResourceEntry(kind=kind, identifier=str(identifier))
        if entry not in self.resources:
            self.resources.append(entry)
            self.save()
        return entry

    def discard(self, kind: str, identifier: str) -> None:
        entry = ResourceEntry(kind=kind, identifier=str(identifier))
        if entry in self.resources:
            self.resources.remove(entry)
            self.save()

    def clear(self) -> None:
        self.resources.clear()
        self.save()

    def to_dict(self) -> dict[str, Any]:
        return {
            "image_path": self.image_path,
            "job_id": self.job_id,
            "resources": [asdict(entry) for entry in self.resources],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Optional[Path] = None) -> "ResourceLedger":
        if not isinstance(data, dict):
            raise LedgerError("Ledger must contain an object", path=str(path) if path else None)
        try:
            resources = [
                ResourceEntry(kind=str(item["kind"]), identifier=str(item["identifier"]))
                for item in data.get("resources", [])
            ]
        except (KeyError, TypeError) as error:
            raise LedgerError(f"Malformed ledger entry: {error}", path=str(path) if path else None)
        return cls(
            path=path,
            image_path=data.get("image_path"),
            job_id=data.get("job_id"),
            resources=resources,
        )

    def _path_str(self) -> Optional[str]:
        return str(self.path) if self.path else None

    def save(self) -> None:
        if self.path is None:
            return
        path = Path(self.path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # write-then-rename so a crash never leaves a truncated ledger
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
            tmp.replace(path)
        except OSError as error:
            raise LedgerError(f"Cannot write ledger: {error}", path=str(path)) from error

    @classmethod
    def load(cls, path) -> "ResourceLedger":
        """Load a ledger; a missing file is an empty ledger bound to ``path``."""
        path = Path(path)
        if not path.exists():
            return cls(path=path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise LedgerError(f"Cannot read ledger: {error}", path=str(path)) from error
        return cls.from_dict(data, path=path)

    def delete(self) -> None:
        """Remove the ledger file once nothing is held."""
        if self.path is not None and not self.resources:
            try:
                Path(self.path).unlink(missing_ok=True)
            except OSError as error:
                raise LedgerError(f"Cannot remove ledger: {error}", path=str(self.path)) from error
