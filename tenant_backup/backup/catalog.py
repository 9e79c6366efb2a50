"""
Source catalog: which record sets and storage containers make up a tenant backup.

The catalog only names sources. How they are read lives in records.py and objects.py,
and where their content lands inside the archive is derived here:

- record set ``products``            -> ``database/products.json``
- object ``thumbs/b.png`` in ``avatars`` -> ``storage/avatars/thumbs/b.png``
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple


@dataclass(frozen=True)
class RecordSetRef:
    """A named table whose rows are exported as one JSON entry."""
    name: str

    @property
    def entry_path(self) -> str:
        return f"database/{self.name}.json"


@dataclass(frozen=True)
class ContainerRef:
    """A named object storage bucket whose leaf objects are exported one entry each."""
    name: str

    def entry_path(self, key: str) -> str:
        return f"storage/{self.name}/{key}"


@dataclass(frozen=True)
class SourceCatalog:
    record_sets: Tuple[RecordSetRef, ...] = field(default_factory=tuple)
    containers: Tuple[ContainerRef, ...] = field(default_factory=tuple)

    def __post_init__(self):
        _ensure_unique('record set', [ref.name for ref in self.record_sets])
        _ensure_unique('container', [ref.name for ref in self.containers])

    @property
    def is_empty(self) -> bool:
        return not self.record_sets and not self.containers

    def to_dict(self) -> dict:
        return {
            'record_sets': [ref.name for ref in self.record_sets],
            'containers': [ref.name for ref in self.containers],
        }


def _ensure_unique(kind: str, names: list):
    seen = set()
    for name in names:
        if not name:
            raise ValueError(f"Empty {kind} name in backup catalog")
        if name in seen:
            raise ValueError(f"Duplicate {kind} in backup catalog: {name}")
        seen.add(name)


def build_catalog(record_sets: Iterable[str], containers: Iterable[str]) -> SourceCatalog:
    """
    Build an immutable catalog from plain names, keeping their order.

    Raises:
        ValueError: If a name is empty or repeated within its kind
    """
    return SourceCatalog(
        record_sets=tuple(RecordSetRef(name) for name in record_sets),
        containers=tuple(ContainerRef(name) for name in containers),
    )


def catalog_from_config(app_config, object_store: Optional[object] = None) -> SourceCatalog:
    """
    Build the catalog for one job from application configuration.

    When BACKUP_DISCOVER_CONTAINERS is set, every bucket reported by the object store
    is backed up instead of the configured BACKUP_CONTAINERS list.

    Args:
        app_config: Flask config mapping
        object_store: Store used for container discovery (required when discovering)
    """
    containers = list(app_config.get('BACKUP_CONTAINERS') or [])

    if app_config.get('BACKUP_DISCOVER_CONTAINERS'):
        if object_store is None:
            raise ValueError("Container discovery requires an object store")
        containers = object_store.list_containers()

    return build_catalog(app_config.get('BACKUP_RECORD_SETS') or [], containers)
