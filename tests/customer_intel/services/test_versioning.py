"""Tests for snapshot versioning and diffs."""
from datetime import timedelta

import pytest

from customer_intel.errors import SnapshotNotFound, SnapshotUnavailable
from customer_intel.models.diff import Diff
from customer_intel.models.run import Run
from customer_intel.models.snapshot import Snapshot
from customer_intel.services.versioning import (
    VersioningService,
    cap_oversized_strings,
    count_field_changes,
    diff_snapshots,
    diff_values,
    format_diff_display,
)


def _step(payload, citation_ids=()):
    return {'payload': payload, 'citations': [{'source_id': i} for i in citation_ids], 'status': 'completed'}


class TestDiffValues:
    """Tests for the pure structural diff."""

    def test_identical_objects(self):
        assert diff_values({'a': 1, 'b': [1, 2]}, {'a': 1, 'b': [1, 2]}) == ({}, {}, {})

    def test_nested_change_mirrors_payload_shape(self):
        added, changed, removed = diff_values({'a': {'b': {'c': 1}}}, {'a': {'b': {'c': 2}}})
        assert changed == {'a': {'b': {'c': {'from': 1, 'to': 2}}}}
        assert added == {} and removed == {}

    def test_added_and_removed_keys(self):
        added, changed, removed = diff_values({'old': 1, 'keep': 1}, {'new': 2, 'keep': 1})
        assert added == {'new': 2}
        assert removed == {'old': 1}
        assert changed == {}

    def test_nested_added_key(self):
        added, _, _ = diff_values({'org': {'ceo': 'A'}}, {'org': {'ceo': 'A', 'cfo': 'B'}})
        assert added == {'org': {'cfo': 'B'}}

    def test_arrays_compared_as_whole_values(self):
        _, changed, _ = diff_values({'tags': [1, 2, 3]}, {'tags': [1, 2, 4]})
        assert changed == {'tags': {'from': [1, 2, 3], 'to': [1, 2, 4]}}

    def test_strict_json_equality(self):
        _, changed, _ = diff_values({'flag': 1}, {'flag': True})
        assert changed == {'flag': {'from': 1, 'to': True}}

    def test_type_change_object_to_scalar(self):
        _, changed, _ = diff_values({'x': {'a': 1}}, {'x': 'flat'})
        assert changed == {'x': {'from': {'a': 1}, 'to': 'flat'}}


class TestDiffSnapshots:

    def test_self_diff_is_empty(self):
        data = {'nb_results': {'NB1': _step({'summary': 's'}, [1])}}
        assert diff_snapshots(data, data) == []

    def test_citation_set_difference(self):
        old = {'nb_results': {'NB1': _step({'summary': 's'}, [1, 2])}}
        new = {'nb_results': {'NB1': _step({'summary': 's'}, [2, 3, 4])}}

        [entry] = diff_snapshots(old, new)

        assert entry['nb_code'] == 'NB1'
        assert entry['citations'] == {'added': [3, 4], 'removed': [1]}
        assert entry['changed'] == {}

    def test_step_present_only_in_new_snapshot(self):
        old = {'nb_results': {}}
        new = {'nb_results': {'NB2': _step({'summary': 'fresh'}, [5])}}

        [entry] = diff_snapshots(old, new)

        assert entry['added'] == {'summary': 'fresh'}
        assert entry['citations'] == {'added': [5], 'removed': []}

    def test_step_missing_from_new_snapshot(self):
        old = {'nb_results': {'NB2': _step({'summary': 'gone'}, [5])}}
        [entry] = diff_snapshots(old, {'nb_results': {}})
        assert entry['removed'] == {'summary': 'gone'}
        assert entry['citations']['removed'] == [5]

    def test_entries_follow_protocol_order(self):
        old = {'nb_results': {code: _step({'v': 1}) for code in ('NB10', 'NB2', 'NB1')}}
        new = {'nb_results': {code: _step({'v': 2}) for code in ('NB10', 'NB2', 'NB1')}}
        assert [e['nb_code'] for e in diff_snapshots(old, new)] == ['NB1', 'NB2', 'NB10']

    def test_count_field_changes(self):
        diff = {'nb_diffs': [{'added': {'a': 1}, 'changed': {'b': {}, 'c': {}}, 'removed': {}}]}
        assert count_field_changes(diff) == 3


class TestFormatDiffDisplay:

    def test_no_differences(self):
        text = format_diff_display({'from_snapshot_id': 1, 'to_snapshot_id': 2, 'nb_diffs': []})
        assert '=== SNAPSHOT DIFF ===' in text
        assert 'No differences found.' in text

    def test_renders_sections(self):
        diff = {
            'from_snapshot_id': 1,
            'to_snapshot_id': 2,
            'timestamp': '2026-01-01T00:00:00',
            'nb_diffs': [{
                'nb_code': 'NB3',
                'added': {'board': ['A']},
                'changed': {'leadership': {'ceo': {'from': 'Ann', 'to': 'Bob'}}},
                'removed': {'legacy': 'x'},
                'citations': {'added': [3], 'removed': [1]},
            }],
        }
        text = format_diff_display(diff)
        assert '--- NB3 ---' in text
        assert '  + board: ["A"]' in text
        assert '  ~ leadership.ceo:' in text
        assert 'FROM: Ann' in text
        assert 'TO:   Bob' in text
        assert '  - legacy: x' in text
        assert 'CITATIONS ADDED: 3' in text
        assert 'CITATIONS REMOVED: 1' in text


class TestCapOversizedStrings:

    def test_small_values_untouched(self):
        value = {'a': 'short', 'b': [1, 'x']}
        assert cap_oversized_strings(value, 100) == (value, [])

    def test_truncates_with_marker_and_path(self):
        capped, paths = cap_oversized_strings({'outer': {'text': 'x' * 50}}, 10)
        assert capped['outer']['text'] == 'x' * 10 + '...[truncated 40 bytes]'
        assert paths == ['outer.text']

    def test_list_paths(self):
        _, paths = cap_oversized_strings({'items': ['ok', 'y' * 20]}, 5)
        assert paths == ['items[1]']


class TestSnapshots:

    def test_create_snapshot_captures_run(self, versioning, make_company, make_completed_run):
        company_id = make_company()
        run_id = make_completed_run(company_id, citations={'NB1': [1, 2]})

        snapshot_id = versioning.create_snapshot(run_id)
        data = versioning.get_snapshot(snapshot_id)

        assert data['run_id'] == run_id
        assert data['company_id'] == company_id
        assert len(data['nb_results']) == 15
        assert set(data['sources']) == {'1', '2'}
        assert set(data['citations']) == {'1', '2'}
        assert data['metadata']['company_name'] == 'Acme Corp'
        assert data['metadata']['tokens_used'] == 15000
        assert data['metadata']['truncated_fields'] == []

    def test_snapshot_requires_completed_results(self, versioning, make_company, make_run):
        run_id = make_run(make_company(), status='failed')
        with pytest.raises(SnapshotUnavailable):
            versioning.create_snapshot(run_id)

    def test_snapshot_records_telemetry(self, versioning, telemetry, make_company, make_completed_run):
        run_id = make_completed_run(make_company())
        versioning.create_snapshot(run_id)
        keys = [m['metric_key'] for m in telemetry.get_metrics(run_id)]
        assert 'snapshot_creation_duration_ms' in keys
        assert 'snapshot_size_kb' in keys

    def test_oversized_fields_are_truncated(self, store, telemetry, make_company, make_completed_run,
                                            payload_for):
        versioning = VersioningService(store, telemetry=telemetry, max_field_bytes=64)
        run_id = make_completed_run(make_company(), codes=['NB1'],
                                    payloads={'NB1': payload_for('NB1', summary='z' * 500)})

        data = versioning.get_snapshot(versioning.create_snapshot(run_id))

        assert data['nb_results']['NB1']['payload']['summary'].endswith('...[truncated 436 bytes]')
        assert 'nb_results.NB1.payload.summary' in data['metadata']['truncated_fields']

    def test_get_snapshot_unknown(self, versioning):
        with pytest.raises(SnapshotNotFound):
            versioning.get_snapshot(404)

    def test_snapshot_nb_codes(self, versioning, make_company, make_snapshot):
        snapshot_id = make_snapshot(make_company(), codes=['NB12', 'NB1', 'NB3'])
        assert versioning.get_snapshot_nb_codes(snapshot_id) == ['NB1', 'NB3', 'NB12']

    def test_second_snapshot_is_auto_diffed(self, versioning, telemetry, count_rows, make_company,
                                            make_completed_run, payload_for):
        company_id = make_company()
        first = versioning.create_snapshot(make_completed_run(
            company_id, codes=['NB1'], payloads={'NB1': payload_for('NB1', summary='Revenue up')}))
        run_id = make_completed_run(
            company_id, codes=['NB1'], payloads={'NB1': payload_for('NB1', summary='Revenue down')})
        second = versioning.create_snapshot(run_id)

        assert count_rows(Diff) == 1
        diff = versioning.get_diff(second)
        assert diff['from_snapshot_id'] == first
        assert diff['nb_diffs'][0]['changed'] == {'summary': {'from': 'Revenue up', 'to': 'Revenue down'}}
        [metric] = telemetry.get_metrics(run_id, prefix='diff_field_changes')
        assert metric['metric_value'] == 1

    def test_first_snapshot_has_no_predecessor_diff(self, versioning, make_company, make_snapshot):
        assert versioning.get_diff(make_snapshot(make_company())) is None


class TestDiffCache:

    def test_self_diff_is_empty(self, versioning, make_company, make_snapshot):
        snapshot_id = make_snapshot(make_company())
        assert versioning.compute_diff(snapshot_id, snapshot_id)['nb_diffs'] == []

    def test_get_or_create_is_idempotent(self, versioning, count_rows, make_company, make_snapshot):
        company_id = make_company()
        a = make_snapshot(company_id)
        b = make_snapshot(company_id)
        before = count_rows(Diff)

        first_id, first = versioning.get_or_create_diff(b, a)
        second_id, second = versioning.get_or_create_diff(b, a)

        assert first_id == second_id
        assert first == second
        assert count_rows(Diff) == before + 1

    def test_compute_diff_overwrites_existing_pair(self, versioning, count_rows, make_company,
                                                   make_snapshot):
        company_id = make_company()
        a, b = make_snapshot(company_id), make_snapshot(company_id)
        versioning.compute_diff(a, b)
        versioning.compute_diff(a, b)
        assert count_rows(Diff) == 1

    def test_citation_changes_between_snapshots(self, versioning, make_company, make_snapshot):
        company_id = make_company()
        a = make_snapshot(company_id, codes=['NB1'], citations={'NB1': [1, 2]})
        b = make_snapshot(company_id, codes=['NB1'], citations={'NB1': [2, 3, 4]})

        _, diff = versioning.get_or_create_diff(a, b)

        assert diff['nb_diffs'][0]['citations'] == {'added': [3, 4], 'removed': [1]}


class TestReuseLookup:

    def test_snapshot_29_days_old_is_reusable(self, versioning, make_company, make_snapshot):
        company_id = make_company()
        snapshot_id = make_snapshot(company_id, age_days=29)
        assert versioning.get_reusable_snapshot(company_id, 30) == snapshot_id

    def test_snapshot_31_days_old_is_stale(self, versioning, make_company, make_snapshot):
        company_id = make_company()
        make_snapshot(company_id, age_days=31)
        assert versioning.get_reusable_snapshot(company_id, 30) is None

    def test_freshness_boundary_is_inclusive(self, store, versioning, make_company, make_snapshot):
        company_id = make_company()
        snapshot_id = make_snapshot(company_id)
        session = store.session()
        try:
            created = session.get(Snapshot, snapshot_id).created_at
        finally:
            session.close()
        assert versioning.get_reusable_snapshot(company_id, 30, now=created + timedelta(days=30)) == snapshot_id
        assert versioning.get_reusable_snapshot(
            company_id, 30, now=created + timedelta(days=30, seconds=1)) is None

    def test_failed_run_snapshot_is_not_reusable(self, store, versioning, make_company, make_snapshot):
        company_id = make_company()
        snapshot_id = make_snapshot(company_id)
        run_id = versioning.get_snapshot(snapshot_id)['run_id']
        with store.session_scope() as session:
            session.get(Run, run_id).status = 'failed'

        assert versioning.get_reusable_snapshot(company_id) is None

    def test_newest_fresh_snapshot_wins(self, versioning, make_company, make_snapshot):
        company_id = make_company()
        make_snapshot(company_id, age_days=10)
        newest = make_snapshot(company_id, age_days=2)
        assert versioning.get_reusable_snapshot(company_id) == newest

    def test_other_company_snapshots_ignored(self, versioning, make_company, make_snapshot):
        make_snapshot(make_company())
        other = make_company(name='Globex Inc')
        assert versioning.get_reusable_snapshot(other) is None


class TestHistory:

    def test_history_newest_first(self, versioning, make_company, make_snapshot):
        company_id = make_company()
        older = make_snapshot(company_id, age_days=5, user_id='analyst')
        newer = make_snapshot(company_id)

        history = versioning.get_history(company_id)

        assert [h['snapshot_id'] for h in history] == [newer, older]
        assert history[1]['run_by'] == 'analyst'
        assert history[0]['status'] == 'completed'
        assert history[0]['duration'] == 600

    def test_history_limit(self, versioning, make_company, make_snapshot):
        company_id = make_company()
        for _ in range(3):
            make_snapshot(company_id)
        assert len(versioning.get_history(company_id, limit=2)) == 2
