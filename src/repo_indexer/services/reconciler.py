"""
Reconciliation of persisted file state against freshly discovered state

Each path lands in exactly one bucket:
- NEW: discovered, no row yet
- UPDATED: discovered, content id differs (or force_reindex)
- UNCHANGED: discovered, same content id, not forced
- DELETED: has a row, not discovered (or discovered but filtered out)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Mapping, Optional, Set, Tuple

from repo_indexer.models import FileDescriptor, ProjectFile
from repo_indexer.services.file_filters import FilterConfig


class ChangeKind(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"


@dataclass
class ReconciliationPlan:
    """Per-path classification for one run, in discovery order"""
    to_process: List[Tuple[FileDescriptor, ChangeKind]] = field(default_factory=list)
    unchanged: List[FileDescriptor] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    in_scope: int = 0

    @property
    def new(self) -> List[FileDescriptor]:
        return [d for d, kind in self.to_process if kind == ChangeKind.NEW]

    @property
    def updated(self) -> List[FileDescriptor]:
        return [d for d, kind in self.to_process if kind == ChangeKind.UPDATED]

    def kind_of(self, path: str) -> Optional[ChangeKind]:
        for descriptor, kind in self.to_process:
            if descriptor.path == path:
                return kind
        if any(d.path == path for d in self.unchanged):
            return ChangeKind.UNCHANGED
        if path in self.deleted:
            return ChangeKind.DELETED
        return None


def reconcile(
    existing: Mapping[str, ProjectFile],
    discovered: Iterable[FileDescriptor],
    force_reindex: bool = False,
    filter_config: Optional[FilterConfig] = None
) -> ReconciliationPlan:
    """Classify every path as NEW, UPDATED, UNCHANGED or DELETED

    When filter_config is given, discovered entries it rejects are treated
    as absent so previously indexed files that fell out of scope are removed.
    """
    plan = ReconciliationPlan()
    seen: Set[str] = set()

    for descriptor in discovered:
        if descriptor.path in seen:
            continue
        if filter_config is not None and not filter_config.is_supported(descriptor):
            continue
        seen.add(descriptor.path)
        plan.in_scope += 1

        previous = existing.get(descriptor.path)
        if previous is None:
            plan.to_process.append((descriptor, ChangeKind.NEW))
        elif force_reindex or previous.content_id != descriptor.content_id:
            plan.to_process.append((descriptor, ChangeKind.UPDATED))
        else:
            plan.unchanged.append(descriptor)

    plan.deleted = sorted(path for path in existing if path not in seen)
    return plan
