"""
Unit Tests for Segment Rules

Tests:
- Comparison operators and type mismatches
- And/Or/Not identities
- Versioned serialization and legacy upgrade
- Materialization over the fixture population
"""

import pytest

from crm_intelligence.core.models import HealthLabel
from crm_intelligence.segmentation.rules import (
    And,
    Comparison,
    Not,
    Operator,
    Or,
    RuleField,
    RuleParseError,
    dump_rule,
    load_rule,
    matches,
)
from crm_intelligence.segmentation.segments import PRESET_SEGMENTS, CustomerSnapshot, evaluate, matching_segment_names
from tests.conftest import NOW

ATTRIBUTES = {
    RuleField.HEALTH_LABEL: "Loyal",
    RuleField.HEALTH_SCORE: 72,
    RuleField.TOTAL_SPENT: 640.5,
    RuleField.TOTAL_ORDERS: 7,
    RuleField.DAYS_SINCE_LAST_ORDER: 12,
    RuleField.STATUS: "active",
    RuleField.TAGS: ("newsletter", "Wholesale"),
}


def cmp(field, op, value):
    return Comparison(field, op, value)


class TestComparisons:
    """Test individual comparison semantics"""

    @pytest.mark.parametrize("rule,expected", [
        (cmp(RuleField.HEALTH_SCORE, Operator.GTE, 72), True),
        (cmp(RuleField.HEALTH_SCORE, Operator.GT, 72), False),
        (cmp(RuleField.TOTAL_SPENT, Operator.LT, 1000), True),
        (cmp(RuleField.TOTAL_ORDERS, Operator.LTE, 6), False),
        (cmp(RuleField.TOTAL_ORDERS, Operator.EQ, 7), True),
        (cmp(RuleField.TOTAL_ORDERS, Operator.NEQ, 7), False),
        (cmp(RuleField.HEALTH_LABEL, Operator.EQ, "loyal"), True),
        (cmp(RuleField.HEALTH_LABEL, Operator.IN, ("Champion", "Loyal")), True),
        (cmp(RuleField.TAGS, Operator.CONTAINS, "wholesale"), True),
        (cmp(RuleField.TAGS, Operator.CONTAINS, "vip"), False),
        (cmp(RuleField.STATUS, Operator.CONTAINS, "act"), True),
    ])
    def test_operator(self, rule, expected):
        assert matches(ATTRIBUTES, rule) is expected

    def test_contains_on_numeric_field_is_false(self):
        """Test type mismatch evaluates false instead of raising"""
        assert matches(ATTRIBUTES, cmp(RuleField.HEALTH_SCORE, Operator.CONTAINS, "7")) is False

    def test_ordering_on_string_is_false(self):
        assert matches(ATTRIBUTES, cmp(RuleField.HEALTH_LABEL, Operator.GT, 5)) is False

    def test_missing_value_is_false(self):
        """Test customer with no orders never matches a days-since comparison"""
        attributes = dict(ATTRIBUTES, **{RuleField.DAYS_SINCE_LAST_ORDER: None})

        assert matches(attributes, cmp(RuleField.DAYS_SINCE_LAST_ORDER, Operator.GTE, 0)) is False
        assert matches(attributes, cmp(RuleField.DAYS_SINCE_LAST_ORDER, Operator.NEQ, 5)) is False

    def test_mixed_type_equality_is_false(self):
        assert matches(ATTRIBUTES, cmp(RuleField.TOTAL_ORDERS, Operator.EQ, "7")) is False


class TestCombinators:
    """Test And/Or/Not"""

    def test_empty_and_is_true(self):
        assert matches(ATTRIBUTES, And()) is True

    def test_empty_or_is_false(self):
        assert matches(ATTRIBUTES, Or()) is False

    def test_not_inverts(self):
        rule = Not(cmp(RuleField.TAGS, Operator.CONTAINS, "wholesale"))

        assert matches(ATTRIBUTES, rule) is False

    def test_nested_tree(self):
        rule = And((
            Or((cmp(RuleField.HEALTH_LABEL, Operator.EQ, "Champion"), cmp(RuleField.TOTAL_SPENT, Operator.GTE, 500))),
            Not(cmp(RuleField.STATUS, Operator.EQ, "inactive")),
        ))

        assert matches(ATTRIBUTES, rule) is True

    def test_evaluation_is_repeatable(self):
        """Test same rule and snapshot give the same answer twice"""
        rule = Or((cmp(RuleField.HEALTH_SCORE, Operator.LT, 10), cmp(RuleField.TAGS, Operator.CONTAINS, "newsletter")))

        assert matches(ATTRIBUTES, rule) == matches(ATTRIBUTES, rule)


class TestSerialization:
    """Test versioned rule documents"""

    def test_dump_and_load(self):
        rule = And((
            cmp(RuleField.HEALTH_SCORE, Operator.GTE, 80),
            Not(cmp(RuleField.TAGS, Operator.IN, ("wholesale", "staff"))),
        ))

        document = dump_rule(rule)

        assert document["version"] == 1
        assert document["rule"]["children"][1]["child"]["value"] == ["wholesale", "staff"]
        assert load_rule(document) == rule

    def test_legacy_rows_upgraded(self):
        """Test flat string-valued rows load as an implicit And"""
        legacy = {"rules": [
            {"field": "total_spent", "operator": "gte", "value": "500"},
            {"field": "health_label", "operator": "eq", "value": "Champion"},
        ]}

        rule = load_rule(legacy)

        assert rule == And((
            cmp(RuleField.TOTAL_SPENT, Operator.GTE, 500),
            cmp(RuleField.HEALTH_LABEL, Operator.EQ, "Champion"),
        ))

    def test_legacy_bare_list(self):
        rule = load_rule([{"field": "total_orders", "operator": "gt", "value": "2.5"}])

        assert rule == And((cmp(RuleField.TOTAL_ORDERS, Operator.GT, 2.5),))

    @pytest.mark.parametrize("document", [
        {"version": 7, "rule": {"type": "and"}},
        {"version": 1, "rule": {"type": "xor", "children": []}},
        {"version": 1, "rule": {"type": "comparison", "field": "password", "operator": "eq", "value": 1}},
        {"version": 1, "rule": {"type": "comparison", "field": "status", "operator": "like", "value": "a"}},
        {"version": 1, "rule": {"type": "comparison", "field": "tags", "operator": "in", "value": [["a"]]}},
        {"version": 1, "rule": {"type": "comparison", "field": "status", "operator": "eq", "value": None}},
        {"rules": [{"field": "total_spent", "operator": "gte", "value": "lots"}]},
        "not a document",
    ])
    def test_invalid_documents_rejected(self, document):
        with pytest.raises(RuleParseError):
            load_rule(document)

    def test_depth_limit(self):
        node = {"type": "and", "children": []}
        for _ in range(40):
            node = {"type": "not", "child": node}

        with pytest.raises(RuleParseError):
            load_rule({"version": 1, "rule": node})

    def test_parse_error_is_bad_request(self):
        with pytest.raises(RuleParseError) as exc_info:
            load_rule({"version": 1, "rule": {"type": "nope"}})

        assert exc_info.value.error_code == "BAD_REQUEST"
        assert exc_info.value.details["field"] == "rule.type"


class TestMaterialization:
    """Test segment evaluation over the fixture population"""

    @pytest.mark.asyncio
    async def test_evaluate_returns_member_ids(self, repository, scorer):
        snapshots = await self._snapshots(repository, scorer)

        lost = evaluate(snapshots, cmp(RuleField.HEALTH_LABEL, Operator.EQ, HealthLabel.LOST.value))

        assert lost == {"carol", "dan", "erin"}

    @pytest.mark.asyncio
    async def test_presets(self, repository, scorer):
        snapshots = {s.customer.id: s for s in await self._snapshots(repository, scorer)}

        assert matching_segment_names(snapshots["alice"], PRESET_SEGMENTS) == [
            "VIP Customers", "Champions", "Repeat Buyers", "High Value",
        ]
        assert matching_segment_names(snapshots["erin"], PRESET_SEGMENTS) == ["New Customers"]
        assert "At Risk" in matching_segment_names(snapshots["dan"], PRESET_SEGMENTS)

    @pytest.mark.asyncio
    async def test_tag_and_status_rules(self, repository, scorer):
        snapshots = await self._snapshots(repository, scorer)

        assert evaluate(snapshots, cmp(RuleField.TAGS, Operator.CONTAINS, "Wholesale")) == {"carol"}
        assert evaluate(snapshots, Not(cmp(RuleField.STATUS, Operator.EQ, "active"))) == {"dan"}

    async def _snapshots(self, repository, scorer):
        population = await repository.get_population_stats()
        result = []
        for customer in await repository.list_customers():
            orders = await repository.list_orders(customer.id)
            result.append(CustomerSnapshot(customer, scorer.score(orders, NOW, population), NOW))
        return result
