"""
Normalization of AI extraction output into canonical resource payloads.

The extraction service answers with loosely shaped JSON: numbers arrive as
null, strings or floats, lists arrive as strings, names carry stray casing and
whitespace. Everything below coerces instead of raising; the only hard failure
is a payload that is not an object at all.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List

from errors import MalformedExtractionError

SCALAR_FIELDS = (
    'saline',
    'injections',
    'antibodies',
    'ot_rooms',
    'general_beds',
    'available_nurses_count',
    'ecg_machines',
    'ct_scan',
    'endoscopy',
    'bp_machines',
    'ultrasonography',
    'xray_machines',
)

LIST_FIELDS = ('medicines', 'instruments', 'other_equipment')

STAFF_FIELDS = ('doctors', 'nurses')


def normalize_key(name: str) -> str:
    """Join key for merge/dedup matching: trimmed and lower-cased"""
    return name.strip().lower()


def coerce_count(value: Any) -> int:
    """Turn an untrusted count into a non-negative int (0 for anything unusable)"""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return 0
        try:
            value = int(value)
        except ValueError:
            try:
                value = float(value)
            except ValueError:
                return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return 0
        return max(int(value), 0)
    return 0


def _coerce_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ', '.join(str(v) for v in value if isinstance(v, (str, int, float)) and not isinstance(v, bool))
    return ''


def _display_name(entry: Any):
    if not isinstance(entry, dict):
        return None
    name = entry.get('name')
    if not isinstance(name, str) or not name.strip():
        return None
    return name


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


@dataclass
class StaffEntry:
    name: str
    available_days: str = ''
    time: str = ''

    @property
    def key(self) -> str:
        return normalize_key(self.name)

    def to_dict(self) -> Dict[str, str]:
        return {'name': self.name, 'available_days': self.available_days, 'time': self.time}


@dataclass
class CountedItem:
    """A named inventory line (medicine, instrument, equipment) with a count"""
    name: str
    count: int = 0

    @property
    def key(self) -> str:
        return normalize_key(self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'count': self.count}


@dataclass
class Inventory:
    saline: int = 0
    injections: int = 0
    antibodies: int = 0
    ot_rooms: int = 0
    general_beds: int = 0
    available_nurses_count: int = 0
    ecg_machines: int = 0
    ct_scan: int = 0
    endoscopy: int = 0
    bp_machines: int = 0
    ultrasonography: int = 0
    xray_machines: int = 0
    medicines: List[CountedItem] = field(default_factory=list)
    instruments: List[CountedItem] = field(default_factory=list)
    other_equipment: List[CountedItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Serialized in the same field order the extraction prompt uses"""
        return {
            'medicines': [m.to_dict() for m in self.medicines],
            'saline': self.saline,
            'injections': self.injections,
            'antibodies': self.antibodies,
            'ot_rooms': self.ot_rooms,
            'general_beds': self.general_beds,
            'available_nurses_count': self.available_nurses_count,
            'instruments': [i.to_dict() for i in self.instruments],
            'ecg_machines': self.ecg_machines,
            'ct_scan': self.ct_scan,
            'endoscopy': self.endoscopy,
            'bp_machines': self.bp_machines,
            'ultrasonography': self.ultrasonography,
            'xray_machines': self.xray_machines,
            'other_equipment': [e.to_dict() for e in self.other_equipment],
        }


@dataclass
class ResourcePayload:
    """Canonical structured content of one resource report"""
    doctors: List[StaffEntry] = field(default_factory=list)
    nurses: List[StaffEntry] = field(default_factory=list)
    inventory: Inventory = field(default_factory=Inventory)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'doctors': [d.to_dict() for d in self.doctors],
            'nurses': [n.to_dict() for n in self.nurses],
            'inventory': self.inventory.to_dict(),
        }

    @classmethod
    def from_stored(cls, data: Any) -> 'ResourcePayload':
        """Rebuild from a persisted dict; missing or damaged data yields an empty payload"""
        if not isinstance(data, dict):
            return cls()
        return normalize_extraction(data)


def normalize_staff(entries: Any) -> List[StaffEntry]:
    staff = []
    for entry in _as_list(entries):
        name = _display_name(entry)
        if name is None:
            continue
        staff.append(StaffEntry(
            name=name,
            available_days=_coerce_text(entry.get('available_days')),
            time=_coerce_text(entry.get('time')),
        ))
    return staff


def normalize_items(entries: Any) -> List[CountedItem]:
    items = []
    for entry in _as_list(entries):
        name = _display_name(entry)
        if name is None:
            continue
        items.append(CountedItem(name=name, count=coerce_count(entry.get('count'))))
    return items


def normalize_inventory(raw: Any) -> Inventory:
    if not isinstance(raw, dict):
        return Inventory()
    inventory = Inventory(**{name: coerce_count(raw.get(name)) for name in SCALAR_FIELDS})
    for name in LIST_FIELDS:
        setattr(inventory, name, normalize_items(raw.get(name)))
    return inventory


def normalize_extraction(raw: Any) -> ResourcePayload:
    """Convert raw extraction output into a ResourcePayload.

    Raises MalformedExtractionError only when ``raw`` is not a dict; every
    finer-grained shape problem is coerced away.
    """
    if not isinstance(raw, dict):
        raise MalformedExtractionError(
            f'Extraction result is not a JSON object (got {type(raw).__name__})'
        )
    return ResourcePayload(
        doctors=normalize_staff(raw.get('doctors')),
        nurses=normalize_staff(raw.get('nurses')),
        inventory=normalize_inventory(raw.get('inventory')),
    )
