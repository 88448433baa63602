"""
Aggregation of completed resource reports into one hospital-wide snapshot.

Staff rosters are unioned by normalized name (first occurrence wins), scalar
inventory counts are summed and named inventory lines are merged by
normalized name with their counts summed. The snapshot is recomputed from the
stored records on every read; ``merge_into`` is the single fold step, so a
full recomputation and a sequence of incremental merges are the same thing.

Two different people who share a normalized name are merged into one entry.
That is a known limitation of name-based matching.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from normalization import (
    LIST_FIELDS,
    SCALAR_FIELDS,
    STAFF_FIELDS,
    CountedItem,
    Inventory,
    ResourcePayload,
    StaffEntry,
    normalize_key,
)

COMPLETED = 'completed'


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class AggregatedSnapshot:
    doctors: List[StaffEntry] = field(default_factory=list)
    nurses: List[StaffEntry] = field(default_factory=list)
    inventory: Inventory = field(default_factory=Inventory)
    resources: List[Dict[str, Any]] = field(default_factory=list)
    # merge bookkeeping, keyed by normalized name
    _staff_keys: Dict[str, Set[str]] = field(
        default_factory=lambda: {name: set() for name in STAFF_FIELDS}, repr=False, compare=False)
    _item_index: Dict[str, Dict[str, CountedItem]] = field(
        default_factory=lambda: {name: {} for name in LIST_FIELDS}, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'doctors': [d.to_dict() for d in self.doctors],
            'nurses': [n.to_dict() for n in self.nurses],
            'inventory': self.inventory.to_dict(),
            'resources': [dict(r) for r in self.resources],
        }


def record_summary(record) -> Dict[str, Any]:
    return {
        'id': record.id,
        'fileName': record.file_name,
        'createdAt': _isoformat(record.created_at),
        'updatedAt': _isoformat(record.updated_at),
    }


def merge_payload(snapshot: AggregatedSnapshot, payload: ResourcePayload) -> AggregatedSnapshot:
    """Fold one canonical payload into ``snapshot`` in place"""
    for staff_field in STAFF_FIELDS:
        seen = snapshot._staff_keys[staff_field]
        roster = getattr(snapshot, staff_field)
        for entry in getattr(payload, staff_field):
            if entry.key in seen:
                continue
            seen.add(entry.key)
            roster.append(StaffEntry(entry.name, entry.available_days, entry.time))

    totals = snapshot.inventory
    for name in SCALAR_FIELDS:
        setattr(totals, name, getattr(totals, name) + getattr(payload.inventory, name))

    for list_field in LIST_FIELDS:
        index = snapshot._item_index[list_field]
        merged = getattr(totals, list_field)
        for item in getattr(payload.inventory, list_field):
            existing = index.get(item.key)
            if existing is not None:
                existing.count += item.count
            else:
                added = CountedItem(item.name, item.count)
                index[item.key] = added
                merged.append(added)
    return snapshot


def merge_into(snapshot: AggregatedSnapshot, record) -> AggregatedSnapshot:
    """Fold a stored resource record into ``snapshot``; non-completed records contribute nothing"""
    if record.processing_status != COMPLETED:
        return snapshot
    merge_payload(snapshot, ResourcePayload.from_stored(record.resource_data))
    snapshot.resources.append(record_summary(record))
    return snapshot


def aggregate_resources(records: Iterable) -> AggregatedSnapshot:
    """Build the snapshot for an owner's records, in the order given"""
    snapshot = AggregatedSnapshot()
    for record in records:
        merge_into(snapshot, record)
    return snapshot


def apply_holds(inventory: Inventory, holds: Dict[str, int],
                item_holds: Optional[Dict[str, int]] = None) -> Inventory:
    """Return a copy of ``inventory`` with held quantities subtracted.

    ``holds`` reduces scalar fields by name. ``item_holds`` is matched by
    normalized name against the first list entry carrying it and never
    touches a scalar field. Counts floor at 0 and unmatched holds are ignored.
    """
    view = copy.deepcopy(inventory)
    for field, quantity in holds.items():
        if field in SCALAR_FIELDS and quantity > 0:
            setattr(view, field, max(getattr(view, field) - quantity, 0))
    for key, quantity in (item_holds or {}).items():
        if quantity <= 0:
            continue
        wanted = normalize_key(key)
        for list_field in LIST_FIELDS:
            match = next((item for item in getattr(view, list_field) if item.key == wanted), None)
            if match is not None:
                match.count = max(match.count - quantity, 0)
                break
    return view
