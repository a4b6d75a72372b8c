"""Tests for cost estimation, reuse savings and guardrails."""
from datetime import timedelta
from unittest.mock import patch

import pytest

from customer_intel.config import NB_CODES
from customer_intel.database import utcnow
from customer_intel.services.cost import CostService, calculate_variance, format_duration

# gpt-4, all 15 steps, one company: 31570 input tokens (with 10% source
# overhead) at $0.03/1K plus 15250 output tokens at $0.06/1K.
FULL_COST = 1.8621
FULL_TOKENS = 46820


class TestEstimate:

    def test_full_run_estimate(self, cost_service, make_company):
        estimate = cost_service.estimate_cost(make_company())

        assert estimate['total_cost'] == pytest.approx(FULL_COST)
        assert estimate['input_tokens'] == 31570
        assert estimate['output_tokens'] == 15250
        assert estimate['total_tokens'] == FULL_TOKENS
        assert len(estimate['breakdown']) == 15
        assert estimate['warnings'] == []
        assert estimate['can_proceed'] is True
        assert estimate['reuse_savings'] == 0.0
        assert estimate['reused_snapshot_id'] is None
        assert estimate['is_comparison'] is False

    def test_steps_priced_per_token_kind(self, cost_service, make_company):
        with patch.object(cost_service, 'calculate_token_cost', return_value=0.01) as priced:
            estimate = cost_service.estimate_cost(make_company(), nb_codes=['NB1', 'NB2'])

        assert estimate['total_cost'] == pytest.approx(0.04)
        kinds = [c.args[1] for c in priced.call_args_list]
        assert kinds == ['input', 'output', 'input', 'output']
        assert {c.args[2] for c in priced.call_args_list} == {'gpt-4'}
        assert estimate['provider'] == 'gpt-4'

    def test_breakdown_lists_step_costs(self, cost_service, make_company):
        estimate = cost_service.estimate_cost(make_company())
        nb1 = estimate['breakdown'][0]
        assert nb1['nb_code'] == 'NB1'
        assert nb1['input_tokens'] == 1650
        assert nb1['output_tokens'] == 800
        assert nb1['cost'] == pytest.approx(0.0975)

    def test_partial_estimate(self, cost_service, make_company):
        estimate = cost_service.estimate_cost(make_company(), nb_codes=['NB1', 'NB2'])
        assert [b['nb_code'] for b in estimate['breakdown']] == ['NB1', 'NB2']
        assert estimate['total_cost'] == pytest.approx(0.0975 + 0.1194)

    def test_comparison_doubles_cost(self, cost_service, make_company):
        company_id = make_company()
        target_id = make_company(name='Globex Inc')

        estimate = cost_service.estimate_cost(company_id, target_id)

        assert estimate['is_comparison'] is True
        assert estimate['total_cost'] == pytest.approx(2 * FULL_COST)
        assert {b['role'] for b in estimate['breakdown']} == {'customer', 'target'}
        assert len(estimate['breakdown']) == 30

    def test_unknown_provider_uses_fallback_price(self, store, make_company):
        service = CostService(store, provider='mystery-model', hard_limit=50, warning_threshold=10)
        estimate = service.estimate_cost(make_company())
        assert estimate['pricing'] == {'input': 0.02, 'output': 0.02}
        assert estimate['total_cost'] == pytest.approx((31570 + 15250) / 1000 * 0.02)


class TestReuse:

    def test_fresh_snapshot_is_reused(self, cost_service, make_company, make_snapshot):
        company_id = make_company()
        snapshot_id = make_snapshot(company_id)

        estimate = cost_service.estimate_cost(company_id)

        assert estimate['reused_snapshot_id'] == snapshot_id
        assert estimate['reused_nbs'] == NB_CODES
        assert estimate['total_cost'] == 0.0
        assert estimate['reuse_savings'] == pytest.approx(FULL_COST)

    def test_force_refresh_minus_reuse_equals_savings(self, cost_service, make_company, make_snapshot):
        company_id = make_company()
        make_snapshot(company_id, codes=['NB1', 'NB2', 'NB3', 'NB4', 'NB5'])

        reuse = cost_service.estimate_cost(company_id)
        forced = cost_service.estimate_cost(company_id, force_refresh=True)

        assert forced['total_cost'] > reuse['total_cost']
        assert forced['reuse_savings'] == 0.0
        assert forced['reused_nbs'] == []
        assert forced['total_cost'] - reuse['total_cost'] == pytest.approx(reuse['reuse_savings'], abs=1e-6)
        assert reuse['reused_nbs'] == ['NB1', 'NB2', 'NB3', 'NB4', 'NB5']

    def test_stale_snapshot_not_reused(self, cost_service, make_company, make_snapshot):
        company_id = make_company()
        make_snapshot(company_id, age_days=31)
        estimate = cost_service.estimate_cost(company_id)
        assert estimate['reused_snapshot_id'] is None
        assert estimate['total_cost'] == pytest.approx(FULL_COST)

    def test_comparison_with_fresh_primary_costs_about_half(self, cost_service, make_company,
                                                             make_snapshot):
        company_id = make_company()
        target_id = make_company(name='Globex Inc')
        make_snapshot(company_id)

        reuse = cost_service.estimate_cost(company_id, target_id)
        full = cost_service.estimate_cost(company_id, target_id, force_refresh=True)

        assert reuse['total_cost'] / full['total_cost'] < 0.6
        assert reuse['reused_target_snapshot_id'] is None
        assert all(b['role'] == 'target' for b in reuse['breakdown'])

    def test_target_snapshot_reuse_reported_separately(self, cost_service, make_company, make_snapshot):
        company_id = make_company()
        target_id = make_company(name='Globex Inc')
        target_snapshot = make_snapshot(target_id, codes=['NB1'])

        estimate = cost_service.estimate_cost(company_id, target_id)

        assert estimate['reused_target_snapshot_id'] == target_snapshot
        assert estimate['reused_target_nbs'] == ['NB1']
        assert estimate['reused_nbs'] == []


class TestGuardrails:

    def test_warning_threshold(self, store, make_company):
        service = CostService(store, provider='gpt-4', warning_threshold=1.0, hard_limit=50.0)
        estimate = service.estimate_cost(make_company())

        [warning] = estimate['warnings']
        assert warning['type'] == 'cost_warning'
        assert warning['exceeded_by'] == pytest.approx(FULL_COST - 1.0)
        assert estimate['can_proceed'] is True

    def test_hard_limit_blocks(self, store, make_company):
        service = CostService(store, provider='gpt-4', warning_threshold=0.5, hard_limit=1.0)
        estimate = service.estimate_cost(make_company())

        types = [w['type'] for w in estimate['warnings']]
        assert types == ['cost_warning', 'cost_limit']
        assert estimate['warnings'][1]['block_run'] is True
        assert estimate['can_proceed'] is False
        assert service.can_proceed(estimate) is False

    def test_estimate_at_limit_can_proceed(self, store, make_company):
        service = CostService(store, provider='gpt-4', warning_threshold=10, hard_limit=FULL_COST)
        assert service.estimate_cost(make_company())['can_proceed'] is True

    def test_estimate_defers_to_can_proceed(self, cost_service, make_company):
        with patch.object(cost_service, 'can_proceed', return_value=False) as gate:
            estimate = cost_service.estimate_cost(make_company())

        assert estimate['can_proceed'] is False
        assert gate.call_args.args[0]['total_cost'] == pytest.approx(FULL_COST)


class TestCalibration:

    def test_no_history_means_no_adjustment(self, cost_service):
        assert cost_service.get_calibration_factors() == {'input': 1.0, 'output': 1.0, 'sample_size': 0}

    def test_underestimates_scale_future_estimates(self, cost_service, make_company, make_run):
        company_id = make_company()
        make_run(company_id, status='completed', estimated_tokens=1000, actual_tokens=1500,
                 completed_at=utcnow())

        factors = cost_service.get_calibration_factors()
        estimate = cost_service.estimate_cost(company_id)

        assert factors == {'input': 1.5, 'output': 1.5, 'sample_size': 1}
        assert estimate['total_cost'] == pytest.approx(FULL_COST * 1.5, rel=1e-3)

    def test_factor_is_clamped(self, cost_service, make_company, make_run):
        company_id = make_company()
        make_run(company_id, status='completed', estimated_tokens=1000, actual_tokens=500,
                 completed_at=utcnow())
        assert cost_service.get_calibration_factors()['input'] == 1.0

        make_run(company_id, status='completed', estimated_tokens=100, actual_tokens=100000,
                 completed_at=utcnow())
        assert cost_service.get_calibration_factors()['input'] == 2.0

    def test_old_runs_ignored(self, cost_service, make_company, make_run):
        make_run(make_company(), status='completed', estimated_tokens=1000, actual_tokens=1900,
                 completed_at=utcnow() - timedelta(days=45))
        assert cost_service.get_calibration_factors()['sample_size'] == 0


class TestActuals:

    def test_record_actuals(self, store, cost_service, telemetry, make_company, make_completed_run):
        run_id = make_completed_run(make_company(), estimated_cost=0.75, estimated_tokens=12000)

        actuals = cost_service.record_actuals(run_id)

        assert actuals['actual_tokens'] == 15000
        assert actuals['actual_cost'] == pytest.approx(0.9)
        assert actuals['variance_pct'] == 20.0
        assert store.load_run(run_id)['actual_cost'] == pytest.approx(0.9)
        [metric] = telemetry.get_metrics(run_id, prefix='actual_cost')
        assert metric['payload']['variance_pct'] == 20.0

    def test_run_cost_report(self, cost_service, make_company, make_completed_run):
        run_id = make_completed_run(make_company(), codes=['NB1', 'NB2'], estimated_cost=0.1,
                                    actual_cost=0.12, estimated_tokens=2000, actual_tokens=2000)

        report = cost_service.get_run_cost_report(run_id)

        assert [b['nb_code'] for b in report['breakdown']] == ['NB1', 'NB2']
        assert report['variance_pct'] == 20.0
        assert report['token_variance_pct'] == 0.0
        assert report['duration'] == 600
        assert report['duration_formatted'] == '10m 0s'

    def test_cost_history_summary(self, cost_service, make_company, make_run):
        company_id = make_company()
        make_run(company_id, status='completed', estimated_cost=1.0, actual_cost=1.5, completed_at=utcnow())
        make_run(company_id, status='completed', estimated_cost=2.0, actual_cost=1.0, completed_at=utcnow())
        make_run(company_id, status='failed', actual_cost=9.0)

        history = cost_service.get_cost_history(company_id)

        assert history['summary']['count'] == 2
        assert history['summary']['total_cost'] == pytest.approx(2.5)
        assert history['summary']['avg_variance_pct'] == 0.0


class TestHelpers:

    @pytest.mark.parametrize('estimated,actual,expected', [
        (1.0, 1.2, 20.0),
        (2.0, 1.0, -50.0),
        (0, 0, 0.0),
        (0, 0.5, 100.0),
        (None, 1.0, 100.0),
        (3.0, 3.0, 0.0),
    ])
    def test_calculate_variance(self, estimated, actual, expected):
        assert calculate_variance(estimated, actual) == expected

    @pytest.mark.parametrize('seconds,expected', [
        (45, '45s'),
        (200, '3m 20s'),
        (3900, '1h 5m'),
        (None, ''),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_calculate_token_cost(self, cost_service):
        assert cost_service.calculate_token_cost(1000) == pytest.approx(0.06)
        assert cost_service.calculate_token_cost(1000, kind='input') == pytest.approx(0.03)
