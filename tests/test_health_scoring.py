"""
Unit Tests for RFM Health Scoring

Tests:
- Composite range and label bands
- Recency monotonicity
- Degradation on empty or malformed histories
- Population-relative and fallback monetary scoring
- Churn risk and recommended actions
"""

from datetime import timedelta

import pytest

from crm_intelligence.core.models import HealthLabel, HealthScore, Order, PopulationStats
from crm_intelligence.scoring.health import (
    CHURN_CEILING,
    HealthScorer,
    churn_risk,
    health_distribution,
    label_for,
    recency_points,
    recommended_actions,
)
from tests.conftest import NOW, days_ago, make_orders


class TestLabelBands:
    """Test composite -> label mapping"""

    def test_every_integer_has_exactly_one_label(self):
        """Test bands partition 0-100 with no gaps"""
        labels = [label_for(score) for score in range(101)]

        assert all(isinstance(label, HealthLabel) for label in labels)
        assert labels.count(HealthLabel.LOST) == 20
        assert labels.count(HealthLabel.AT_RISK) == 20
        assert labels.count(HealthLabel.PROMISING) == 20
        assert labels.count(HealthLabel.LOYAL) == 20
        assert labels.count(HealthLabel.CHAMPION) == 21

    @pytest.mark.parametrize("score,label", [
        (0, HealthLabel.LOST),
        (19, HealthLabel.LOST),
        (20, HealthLabel.AT_RISK),
        (39, HealthLabel.AT_RISK),
        (40, HealthLabel.PROMISING),
        (60, HealthLabel.LOYAL),
        (79, HealthLabel.LOYAL),
        (80, HealthLabel.CHAMPION),
        (100, HealthLabel.CHAMPION),
    ])
    def test_boundaries_inclusive_on_lower_bound(self, score, label):
        assert label_for(score) == label


class TestHealthScorer:
    """Test the scoring engine"""

    def test_no_orders_scores_lowest(self, scorer):
        """Test zero orders -> 0/0/0 Lost"""
        score = scorer.score([], reference_time=NOW)

        assert (score.recency, score.frequency, score.monetary) == (0, 0, 0)
        assert score.composite == 0
        assert score.label == HealthLabel.LOST

    def test_none_history_scores_lowest(self, scorer):
        assert scorer.score(None, reference_time=NOW) == HealthScore.lowest()

    def test_malformed_orders_are_skipped(self, scorer):
        """Test malformed entries never raise"""
        orders = [
            "not an order",
            Order(id="bad-total", customer_id="x", created_at=days_ago(1), total=float("nan")),
            Order(id="bad-date", customer_id="x", created_at="yesterday", total=10.0),
        ]

        assert scorer.score(orders, reference_time=NOW) == HealthScore.lowest()

    def test_only_cancelled_orders_score_lowest(self, scorer):
        orders = [Order(id="c1", customer_id="x", created_at=days_ago(1), total=500.0, status="cancelled")]

        assert scorer.score(orders, reference_time=NOW) == HealthScore.lowest()

    def test_orders_after_reference_time_ignored(self, scorer):
        future = [Order(id="f1", customer_id="x", created_at=NOW + timedelta(days=1), total=100.0)]

        assert scorer.score(future, reference_time=NOW) == HealthScore.lowest()

    def test_composite_is_sum_of_components(self, scorer):
        orders = make_orders("x", [3, 40, 90], 120.0)
        score = scorer.score(orders, reference_time=NOW, population=PopulationStats(average_spend=200.0))

        assert score.composite == score.recency + score.frequency + score.monetary
        assert 0 <= score.composite <= 100

    def test_reference_scenario(self, scorer):
        """Test $500 over 10 orders in 5 months, last 3 days ago, average spend $300"""
        days = [150 - i * (147 / 9) for i in range(10)]
        orders = make_orders("x", days, 50.0)

        score = scorer.score(orders, reference_time=NOW, population=PopulationStats(average_spend=300.0))

        assert score.recency == 33, "Last order within 7 days"
        assert score.frequency == 22, "2 orders/month against a 1.5 benchmark"
        assert score.monetary == 22, "Spend is 1.67x the population average"
        assert score.composite == 77
        assert score.label == HealthLabel.LOYAL

    def test_single_new_order_not_penalized_to_zero(self, scorer):
        """Test one-month lifetime floor"""
        orders = make_orders("x", [2], 80.0)

        score = scorer.score(orders, reference_time=NOW)

        assert score.frequency > 0

    def test_monetary_falls_back_without_population_average(self, scorer):
        orders = make_orders("x", [10], 600.0)

        with_zero = scorer.score(orders, reference_time=NOW, population=PopulationStats(average_spend=0.0))
        without = scorer.score(orders, reference_time=NOW, population=None)

        assert with_zero.monetary == without.monetary == 28, "600 / 300 fallback = 2.0x"

    def test_recency_non_increasing(self, scorer):
        """Test recency never rises as the last order gets older"""
        previous = 33
        for elapsed in range(0, 400, 3):
            points = scorer.score(make_orders("x", [elapsed], 50.0), reference_time=NOW).recency
            assert points <= previous
            assert 0 <= points <= 33
            previous = points

    def test_recency_points_none_is_zero(self):
        assert recency_points(None) == 0

    def test_naive_datetimes_treated_as_utc(self, scorer):
        naive = [Order(id="n1", customer_id="x", created_at=days_ago(3).replace(tzinfo=None), total=50.0)]

        assert scorer.score(naive, reference_time=NOW).recency == 33


class TestPopulation:
    """Test scores over the shared fixture population"""

    @pytest.mark.asyncio
    async def test_fixture_population_labels(self, repository, scorer):
        population = await repository.get_population_stats()
        assert population.average_spend == pytest.approx(363.75)

        labels = {}
        for customer in await repository.list_customers():
            orders = await repository.list_orders(customer.id)
            labels[customer.id] = scorer.score(orders, reference_time=NOW, population=population)

        assert labels["alice"].composite == 100
        assert labels["bob"].composite == 45
        assert labels["bob"].label == HealthLabel.PROMISING
        assert labels["carol"].label == HealthLabel.LOST
        assert labels["dan"].composite == 8, "Cancelled order ignored"
        assert labels["erin"] == HealthScore.lowest()

    def test_distribution_counts_every_label(self):
        scores = [HealthScore.from_components(33, 33, 34), HealthScore.lowest(), HealthScore.lowest()]

        distribution = health_distribution(scores)

        assert distribution[HealthLabel.CHAMPION] == 1
        assert distribution[HealthLabel.LOST] == 2
        assert distribution[HealthLabel.LOYAL] == 0
        assert set(distribution) == set(HealthLabel)


class TestHealthReport:
    """Test churn risk and recommended actions"""

    def test_churn_risk_bands(self):
        assert churn_risk(None, 0, 1.0) == CHURN_CEILING
        # 3 orders over 3 months -> 30-day expected gap
        assert churn_risk(25, 3, 3.0) == 0.05
        assert churn_risk(55, 3, 3.0) == 0.35
        assert churn_risk(200, 3, 3.0) == CHURN_CEILING

    def test_report_for_empty_history(self, scorer):
        report = scorer.report([], reference_time=NOW)

        assert report.score.label == HealthLabel.LOST
        assert report.churn_risk == CHURN_CEILING
        assert "Offer a first-order discount" in report.recommended_actions

    def test_report_fields(self, scorer):
        report = scorer.report(make_orders("x", [95, 120], 40.0), reference_time=NOW)

        assert report.order_count == 2
        assert report.lifetime_spend == 80.0
        assert report.days_since_last_order == 95
        assert report.to_dict()["score"]["label"] == report.score.label.value

    def test_at_risk_actions_mention_elapsed_days(self):
        actions = recommended_actions(HealthLabel.AT_RISK, 64, 4)

        assert any("64 days" in action for action in actions)

    def test_lost_actions_differ_for_past_buyers(self):
        assert recommended_actions(HealthLabel.LOST, 300, 2) != recommended_actions(HealthLabel.LOST, None, 0)
