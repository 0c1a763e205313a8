import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.errors import RuleValidationError
from engine.rules import (
    compile_pattern,
    evaluate,
    evaluate_all,
    evaluate_any,
    flatten_lead,
    parse_condition,
)


class TestFlatten:
    """Test flattening lead records to dotted paths."""

    def test_nested_paths_and_intermediate_maps(self):
        record = flatten_lead({
            "email": "jane@acme.io",
            "fields": {"title": "CEO", "enrichment": {"companySize": "enterprise"}},
            "utm": {"source": "google-ads"},
        })

        assert record["email"] == "jane@acme.io"
        assert record["fields.title"] == "CEO"
        assert record["utm.source"] == "google-ads"
        assert record["fields.enrichment.companySize"] == "enterprise"
        assert record["fields.enrichment"] == {"companySize": "enterprise"}

    def test_circular_structure_does_not_loop(self):
        fields = {"title": "CTO"}
        fields["self"] = fields

        record = flatten_lead({"fields": fields})

        assert record["fields.title"] == "CTO"
        assert "fields.self" in record
        assert "fields.self.title" not in record

    def test_depth_limit(self):
        deep = {"level": 0}
        node = deep
        for i in range(1, 20):
            node["next"] = {"level": i}
            node = node["next"]

        record = flatten_lead({"fields": deep}, max_depth=3)

        assert "fields.next.level" in record
        assert not any(path.count(".") > 3 for path in record)

    def test_empty_record(self):
        assert flatten_lead({}) == {}


class TestOperators:
    """Test each condition operator."""

    def setup_method(self):
        self.record = flatten_lead({
            "email": "Jane.Doe@Gmail.com",
            "company": "Acme Corp",
            "score": 72,
            "fields": {"title": "Co-founder & CEO", "employees": "250", "verified": True, "note": ""},
            "utm": {"source": "google-ads"},
            "tags": ["enterprise", "technology"],
        })

    def test_string_operators_are_case_insensitive(self):
        assert evaluate({"field": "fields.title", "op": "contains", "value": "ceo"}, self.record)
        assert evaluate({"field": "email", "op": "ends_with", "value": "@GMAIL.COM"}, self.record)
        assert evaluate({"field": "company", "op": "starts_with", "value": "acme"}, self.record)
        assert evaluate({"field": "company", "op": "not_contains", "value": "globex"}, self.record)

    def test_equals_and_not_equals(self):
        assert evaluate({"field": "utm.source", "op": "equals", "value": "google-ads"}, self.record)
        assert evaluate({"field": "utm.source", "op": "not_equals", "value": "linkedin"}, self.record)
        assert evaluate({"field": "score", "op": "equals", "value": 72}, self.record)

    def test_numeric_comparisons_accept_numeric_strings(self):
        assert evaluate({"field": "fields.employees", "op": "greater_than", "value": 100}, self.record)
        assert evaluate({"field": "score", "op": "greater_equal", "value": "72"}, self.record)
        assert evaluate({"field": "score", "op": "less_than", "value": 80}, self.record)
        assert not evaluate({"field": "score", "op": "less_equal", "value": 71}, self.record)

    def test_booleans_never_compare_numerically(self):
        assert not evaluate({"field": "fields.verified", "op": "greater_than", "value": 0}, self.record)

    def test_non_numeric_value_does_not_match_comparison(self):
        assert not evaluate({"field": "company", "op": "greater_than", "value": 5}, self.record)

    def test_regex_is_case_insensitive_search(self):
        assert evaluate({"field": "email", "op": "regex", "value": r"@gmail\.com$"}, self.record)
        assert not evaluate({"field": "email", "op": "regex", "value": r"^admin@"}, self.record)

    def test_membership(self):
        assert evaluate({"field": "utm.source", "op": "in", "value": ["google-ads", "linkedin"]}, self.record)
        assert evaluate({"field": "utm.source", "op": "not_in", "value": ["organic"]}, self.record)

    def test_contains_on_list_value(self):
        assert evaluate({"field": "tags", "op": "contains", "value": "Technology"}, self.record)
        assert not evaluate({"field": "tags", "op": "contains", "value": "tech"}, self.record)

    def test_missing_field(self):
        assert not evaluate({"field": "fields.budget", "op": "exists"}, self.record)
        assert evaluate({"field": "fields.budget", "op": "not_exists"}, self.record)
        assert not evaluate({"field": "fields.budget", "op": "not_equals", "value": "x"}, self.record)
        assert not evaluate({"field": "fields.budget", "op": "not_in", "value": ["x"]}, self.record)

    def test_empty_string_counts_as_missing(self):
        assert not evaluate({"field": "fields.note", "op": "exists"}, self.record)
        assert evaluate({"field": "fields.note", "op": "not_exists"}, self.record)


class TestMalformedConditions:
    """Malformed conditions are rejected at parse time and never match at evaluation time."""

    def test_unknown_operator(self):
        record = {"email": "a@b.co"}
        assert evaluate({"field": "email", "op": "sounds_like", "value": "a"}, record) is False
        with pytest.raises(RuleValidationError):
            parse_condition({"field": "email", "op": "sounds_like", "value": "a"})

    def test_invalid_regex(self):
        assert evaluate({"field": "email", "op": "regex", "value": "(["}, {"email": "a@b.co"}) is False
        with pytest.raises(RuleValidationError):
            parse_condition({"field": "email", "op": "regex", "value": "(["})

    def test_membership_needs_list(self):
        with pytest.raises(RuleValidationError):
            parse_condition({"field": "utm.source", "op": "in", "value": "google-ads"})

    def test_comparison_needs_number(self):
        with pytest.raises(RuleValidationError):
            parse_condition({"field": "score", "op": "greater_than", "value": "lots"})

    def test_missing_field_name(self):
        with pytest.raises(RuleValidationError):
            parse_condition({"op": "exists"})

    def test_regex_compiled_once(self):
        assert compile_pattern(r"^vp\b") is compile_pattern(r"^vp\b")


class TestCombinators:
    """Scoring uses OR, routing uses AND."""

    def setup_method(self):
        self.record = flatten_lead({"email": "x@acme.io", "fields": {"title": "VP Sales"}})
        self.hit = {"field": "fields.title", "op": "contains", "value": "vp"}
        self.miss = {"field": "fields.title", "op": "contains", "value": "intern"}

    def test_evaluate_any(self):
        assert evaluate_any([self.miss, self.hit], self.record)
        assert not evaluate_any([self.miss], self.record)

    def test_evaluate_all(self):
        assert evaluate_all([self.hit], self.record)
        assert not evaluate_all([self.hit, self.miss], self.record)

    def test_empty_condition_lists(self):
        assert evaluate_any([], self.record) is False
        assert evaluate_all([], self.record) is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
