"""
Allocation ledger: resource commitments against patients.

Inventory counts are never decremented in storage. They come only from
uploaded resource reports. Allocations with status ``allocated`` are projected
onto the aggregated inventory as holds when stock is checked after an
allocation, so deallocating simply drops the hold from that derived view.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Tuple

from ai_service import demand_forecaster, inventory_alert
from aggregation import aggregate_resources, apply_holds
from errors import NotFoundError, ValidationError
from models import ALLOCATION_STATUSES, Allocation, Resource, db
from normalization import LIST_FIELDS, coerce_count, normalize_key

log = logging.getLogger(__name__)

OXYGEN_KEYS = ('oxygen cylinders', 'oxygen cylinder')
MAX_FORECAST_DAYS = 90


def _check_notes(notes: Any) -> None:
    if notes is not None and not isinstance(notes, str):
        raise ValidationError('notes must be a string')


def _clean_text(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def normalize_patient_info(raw: Any) -> Dict[str, Optional[str]]:
    raw = raw if isinstance(raw, dict) else {}
    return {
        'name': _clean_text(raw.get('name')),
        'age': _clean_text(raw.get('age')),
        'gender': _clean_text(raw.get('gender')),
        'id': _clean_text(raw.get('id')),
    }


def normalize_prescription(raw: Any) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    medicines = raw.get('medicines')
    return {
        'doctorName': _clean_text(raw.get('doctorName')),
        'medicines': medicines if isinstance(medicines, list) else [],
        'diagnosis': _clean_text(raw.get('diagnosis')),
    }


def normalize_allocated_resources(raw: Any) -> Dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    beds = raw.get('beds') if isinstance(raw.get('beds'), dict) else {}
    oxygen = raw.get('oxygenCylinders') if isinstance(raw.get('oxygenCylinders'), dict) else {}
    dialysis = raw.get('dialysis') if isinstance(raw.get('dialysis'), dict) else {}

    services = []
    other = raw.get('otherServices')
    for entry in other if isinstance(other, list) else []:
        # bare service names count as one unit
        if isinstance(entry, str) and entry.strip():
            services.append({'name': entry.strip(), 'quantity': 1})
        elif isinstance(entry, dict) and _clean_text(entry.get('name')):
            services.append({'name': _clean_text(entry.get('name')),
                             'quantity': coerce_count(entry.get('quantity'))})

    return {
        'beds': {
            'bedType': (_clean_text(beds.get('bedType')) or 'general').lower(),
            'quantity': coerce_count(beds.get('quantity')),
        },
        'oxygenCylinders': {'quantity': coerce_count(oxygen.get('quantity'))},
        'dialysis': {
            'sessions': coerce_count(dialysis.get('sessions')),
            'frequency': _clean_text(dialysis.get('frequency')) or 'none',
        },
        'otherServices': services,
    }


class AllocationLedger:
    """Create, update and inspect allocations for one owner at a time"""

    def __init__(self, alerts=inventory_alert, forecaster=demand_forecaster):
        self.alerts = alerts
        self.forecaster = forecaster

    # ---------------- LOOKUPS ----------------
    def get(self, owner_id: str, allocation_id: int) -> Allocation:
        allocation = Allocation.query.filter_by(id=allocation_id, user_id=owner_id).first()
        if allocation is None:
            raise NotFoundError('Allocation not found')
        return allocation

    def list(self, owner_id: str, status: Optional[str] = None, limit: int = 50, page: int = 1):
        """Return (allocations, total) newest first"""
        query = Allocation.query.filter_by(user_id=owner_id)
        if status is not None:
            if status not in ALLOCATION_STATUSES:
                raise ValidationError(f'Invalid status: {status}')
            query = query.filter_by(status=status)
        total = query.count()
        allocations = (query.order_by(Allocation.created_at.desc(), Allocation.id.desc())
                       .limit(limit).offset((page - 1) * limit).all())
        return allocations, total

    # ---------------- MUTATIONS ----------------
    def create(self, owner_id: str, document_id: Optional[int], patient_info: Any,
               prescription_details: Any = None, allocated_resources: Any = None,
               notes: Optional[str] = None):
        """Record an allocation; returns (allocation, low_stock_alerts)"""
        _check_notes(notes)
        patient = normalize_patient_info(patient_info)
        if not patient['name']:
            raise ValidationError('patient name required')

        if document_id is not None:
            owned = Resource.query.filter_by(id=document_id, user_id=owner_id).first()
            if owned is None:
                raise NotFoundError('Resource not found')

        allocation = Allocation(
            user_id=owner_id,
            document_id=document_id,
            patient_info=patient,
            prescription_details=normalize_prescription(prescription_details),
            allocated_resources=normalize_allocated_resources(allocated_resources),
            status='allocated',
            notes=notes or '',
        )
        db.session.add(allocation)
        db.session.commit()
        log.info('Allocation %s created for patient %s', allocation.id, patient['name'])

        alerts = self.check_stock(owner_id, include_holds=True)['lowStockItems']
        return allocation, alerts

    def update_status(self, owner_id: str, allocation_id: int, new_status: Any,
                      notes: Optional[str] = None) -> Allocation:
        if new_status not in ALLOCATION_STATUSES:
            raise ValidationError(f'Invalid status: {new_status}')
        _check_notes(notes)
        allocation = self.get(owner_id, allocation_id)
        allocation.status = new_status
        if notes is not None:
            allocation.notes = notes
        db.session.commit()
        return allocation

    def deallocate(self, owner_id: str, allocation_id: int) -> Allocation:
        allocation = self.get(owner_id, allocation_id)
        allocation.status = 'deallocated'
        db.session.commit()
        log.info('Allocation %s deallocated', allocation.id)
        return allocation

    # ---------------- STOCK ----------------
    def snapshot(self, owner_id: str):
        records = (Resource.query
                   .filter_by(user_id=owner_id, processing_status='completed')
                   .order_by(Resource.created_at.desc(), Resource.id.desc())
                   .all())
        return aggregate_resources(records)

    def holds(self, owner_id: str, inventory) -> Tuple[Dict[str, int], Dict[str, int]]:
        """Quantities held by live allocations as (scalar holds, list item holds)"""
        oxygen_key = next((item.key for list_field in LIST_FIELDS
                           for item in getattr(inventory, list_field)
                           if item.key in OXYGEN_KEYS), None)
        held = defaultdict(int)
        held_items = defaultdict(int)
        for allocation in Allocation.query.filter_by(user_id=owner_id, status='allocated').all():
            resources = allocation.allocated_resources or {}
            beds = resources.get('beds') or {}
            if beds.get('bedType') == 'general':
                held['general_beds'] += beds.get('quantity', 0)
            if oxygen_key is not None:
                held_items[oxygen_key] += (resources.get('oxygenCylinders') or {}).get('quantity', 0)
            for service in resources.get('otherServices') or []:
                held_items[normalize_key(service['name'])] += service.get('quantity', 0)
        return dict(held), dict(held_items)

    def check_stock(self, owner_id: str, include_holds: bool = False) -> Dict[str, Any]:
        inventory = self.snapshot(owner_id).inventory
        if include_holds:
            inventory = apply_holds(inventory, *self.holds(owner_id, inventory))
        return {
            'lowStockItems': self.alerts.check_alerts(inventory),
            'inventory': inventory.to_dict(),
            'threshold': self.alerts.threshold,
        }

    # ---------------- FORECAST ----------------
    def forecast(self, owner_id: str, days: int = 7) -> Dict[str, Any]:
        if not 1 <= days <= MAX_FORECAST_DAYS:
            raise ValidationError(f'days must be between 1 and {MAX_FORECAST_DAYS}')
        history = []
        for allocation in Allocation.query.filter_by(user_id=owner_id).all():
            resources = allocation.allocated_resources or {}
            history.append({
                'date': allocation.created_at,
                'beds': (resources.get('beds') or {}).get('quantity', 0),
                'oxygen_cylinders': (resources.get('oxygenCylinders') or {}).get('quantity', 0),
                'dialysis_sessions': (resources.get('dialysis') or {}).get('sessions', 0),
            })
        return self.forecaster.forecast(history, days=days)


ledger = AllocationLedger()
