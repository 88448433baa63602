import itertools
from datetime import datetime
from types import SimpleNamespace

from aggregation import AggregatedSnapshot, aggregate_resources, apply_holds, merge_into
from normalization import LIST_FIELDS, SCALAR_FIELDS, normalize_extraction


def record(resource_data, status='completed', record_id=1, file_name='report.pdf'):
    stamp = datetime(2025, 3, 1, 10, record_id % 60)
    return SimpleNamespace(
        id=record_id,
        file_name=file_name,
        processing_status=status,
        resource_data=resource_data,
        created_at=stamp,
        updated_at=stamp,
    )


RECORDS = [
    record({
        'doctors': [{'name': 'Dr. A. Rao', 'available_days': 'Mon', 'time': '9-1'}],
        'nurses': [{'name': 'Asha'}],
        'inventory': {
            'general_beds': 3, 'saline': 10,
            'medicines': [{'name': 'Paracetamol', 'count': 10}],
            'instruments': [{'name': 'Scalpel', 'count': 4}],
        },
    }, record_id=1),
    record({
        'doctors': [{'name': ' dr. a. rao ', 'available_days': 'Tue', 'time': '2-6'},
                    {'name': 'Dr. K. Iyer'}],
        'inventory': {
            'general_beds': 5, 'ct_scan': 1,
            'medicines': [{'name': 'paracetamol', 'count': 5}, {'name': 'Insulin', 'count': 2}],
            'other_equipment': [{'name': 'Oxygen Cylinders', 'count': 7}],
        },
    }, record_id=2),
    record({
        'nurses': [{'name': 'ASHA '}, {'name': 'Meena'}],
        'inventory': {'saline': None, 'injections': '8', 'instruments': [{'name': 'scalpel', 'count': 1}]},
    }, record_id=3),
]


def counts(snapshot):
    """Everything numeric in a snapshot, keyed so it is independent of display casing"""
    inv = snapshot.inventory
    out = {name: getattr(inv, name) for name in SCALAR_FIELDS}
    for list_field in LIST_FIELDS:
        out[list_field] = sorted((item.key, item.count) for item in getattr(inv, list_field))
    out['doctors'] = sorted(d.key for d in snapshot.doctors)
    out['nurses'] = sorted(n.key for n in snapshot.nurses)
    return out


def test_empty_input_gives_zero_snapshot():
    data = aggregate_resources([]).to_dict()

    assert data['doctors'] == [] and data['nurses'] == [] and data['resources'] == []
    assert all(data['inventory'][name] == 0 for name in SCALAR_FIELDS)
    assert all(data['inventory'][name] == [] for name in LIST_FIELDS)


def test_scalar_fields_are_summed():
    snapshot = aggregate_resources(RECORDS)

    assert snapshot.inventory.general_beds == 8
    assert snapshot.inventory.saline == 10
    assert snapshot.inventory.injections == 8
    assert snapshot.inventory.ct_scan == 1


def test_duplicate_doctor_is_suppressed_first_seen_wins():
    snapshot = aggregate_resources(RECORDS)

    assert [d.name for d in snapshot.doctors] == ['Dr. A. Rao', 'Dr. K. Iyer']
    assert snapshot.doctors[0].available_days == 'Mon'
    assert [n.name for n in snapshot.nurses] == ['Asha', 'Meena']


def test_medicines_merge_by_normalized_name():
    snapshot = aggregate_resources(RECORDS)
    medicines = snapshot.to_dict()['inventory']['medicines']

    assert medicines == [{'name': 'Paracetamol', 'count': 15}, {'name': 'Insulin', 'count': 2}]
    assert snapshot.to_dict()['inventory']['instruments'] == [{'name': 'Scalpel', 'count': 5}]


def test_aggregation_is_idempotent():
    assert aggregate_resources(RECORDS).to_dict() == aggregate_resources(RECORDS).to_dict()


def test_counts_do_not_depend_on_record_order():
    expected = counts(aggregate_resources(RECORDS))
    for permutation in itertools.permutations(RECORDS):
        assert counts(aggregate_resources(permutation)) == expected


def test_failed_and_processing_records_contribute_nothing():
    leftover = {'inventory': {'general_beds': 50, 'medicines': [{'name': 'Paracetamol', 'count': 99}]},
                'doctors': [{'name': 'Dr. Ghost'}]}
    records = RECORDS + [
        record(leftover, status='failed', record_id=4),
        record(leftover, status='processing', record_id=5),
    ]
    snapshot = aggregate_resources(records)

    assert counts(snapshot) == counts(aggregate_resources(RECORDS))
    assert [r['id'] for r in snapshot.resources] == [1, 2, 3]


def test_resource_summaries_follow_input_order():
    snapshot = aggregate_resources(list(reversed(RECORDS)))

    assert [r['id'] for r in snapshot.resources] == [3, 2, 1]
    assert snapshot.resources[0]['fileName'] == 'report.pdf'
    assert snapshot.resources[0]['createdAt'] == RECORDS[2].created_at.isoformat()


def test_incremental_merge_matches_full_recompute():
    snapshot = aggregate_resources(RECORDS[:2])
    merge_into(snapshot, RECORDS[2])

    assert snapshot.to_dict() == aggregate_resources(RECORDS).to_dict()


def test_source_records_are_not_mutated():
    data = {'inventory': {'medicines': [{'name': 'Paracetamol', 'count': 10}]}}
    rec = record(data)
    aggregate_resources([rec, record(data, record_id=2)])

    assert data == {'inventory': {'medicines': [{'name': 'Paracetamol', 'count': 10}]}}


def test_missing_payload_on_completed_record_counts_as_empty():
    snapshot = aggregate_resources([record(None)])

    assert counts(snapshot) == counts(AggregatedSnapshot())
    assert len(snapshot.resources) == 1


def test_apply_holds_returns_reduced_copy():
    inventory = normalize_extraction({'inventory': {
        'general_beds': 4,
        'other_equipment': [{'name': 'Oxygen Cylinders', 'count': 7}],
    }}).inventory

    view = apply_holds(inventory, {'general_beds': 6}, {'oxygen cylinders': 3, 'unknown thing': 2})

    assert view.general_beds == 0
    assert view.other_equipment[0].count == 4
    assert inventory.general_beds == 4
    assert inventory.other_equipment[0].count == 7


def test_item_holds_never_reduce_scalar_fields():
    inventory = normalize_extraction({'inventory': {
        'saline': 20, 'general_beds': 5,
        'medicines': [{'name': 'Saline', 'count': 30}],
    }}).inventory

    view = apply_holds(inventory, {}, {'saline': 18, 'general_beds': 2})

    assert view.saline == 20
    assert view.general_beds == 5
    assert view.medicines[0].count == 12
