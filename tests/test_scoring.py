import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.defaults import default_scoring_config, default_scoring_rules
from engine.models import BandThresholds, NormalizedLead, ScoreBand, ScoringConfig
from engine.scoring import ScoringEngine, job_role_signal, urgency_signal


class TestScoringEngine:
    """Test the scoring engine against the default team configuration."""

    def setup_method(self):
        self.engine = ScoringEngine()
        self.config = default_scoring_config()
        self.rules = default_scoring_rules()

    def test_executive_paid_search_lead_is_high(self):
        lead = NormalizedLead(
            email="jane@acme-analytics.io",
            company="Acme Analytics",
            fields={"title": "CEO"},
            utm={"source": "google-ads"},
        )

        result = self.engine.score(lead, self.config, self.rules)

        assert result.score >= 80
        assert result.band is ScoreBand.HIGH
        assert "Executive-level contact" in result.tags
        assert result.trace[-1].step == "final"
        assert result.trace[-1].result == "HIGH"

    def test_competitor_lead_is_low(self):
        lead = NormalizedLead(
            email="pm@typeform.com",
            domain="typeform.com",
            company="Typeform",
            fields={"title": "Product Manager"},
        )

        result = self.engine.score(lead, self.config, self.rules)

        assert result.score <= 20
        assert result.band is ScoreBand.LOW
        assert "competitor" in result.tags
        assert "Competitor domain" in result.tags

    def test_negative_and_enrichment_tags(self):
        lead = NormalizedLead(
            email="bob@gmail.com",
            domain="jotform.com",
            company="Jotform",
            fields={"enrichment": {"companySize": "enterprise", "industry": "Technology"}},
        )

        result = self.engine.score(lead, self.config, self.rules)

        for tag in ("competitor", "free_email", "enterprise", "technology", "enriched"):
            assert tag in result.tags

    def test_list_valued_enrichment_tag_is_ignored(self):
        lead = NormalizedLead(email="jane@acme.io", fields={"industry": ["technology", "finance"]})

        result = self.engine.score(lead, self.config, self.rules)

        assert "enriched" not in result.tags
        assert all(entry.step != "enrichment" for entry in result.trace)

    def test_object_valued_enrichment_tag_is_ignored(self):
        lead = NormalizedLead(
            email="jane@acme.io",
            fields={"enrichment": {"companySize": {"employees": 500}, "industry": "Technology"}},
        )

        result = self.engine.score(lead, self.config, self.rules)

        assert "technology" in result.tags
        assert "enriched" in result.tags

    def test_invalid_domain_penalty(self):
        lead = NormalizedLead(email="not-an-email", company="Acme")

        result = self.engine.score(lead, self.config, [])

        assert "invalid_domain" in result.tags
        assert result.score == 0

    def test_spam_indicators(self):
        lead = NormalizedLead(email="x@acme.io", name="Click here for free money", fields={"title": "CEO"})

        result = self.engine.score(lead, self.config, [])

        assert "spam" in result.tags
        assert any(entry.step == "negative" and entry.rule == "spam" for entry in result.trace)

    def test_no_config(self):
        result = self.engine.score(NormalizedLead(email="a@acme.io"), None, self.rules)

        assert result.score == 0
        assert result.band is ScoreBand.LOW
        assert result.tags == ["no_config"]

    def test_missing_lead(self):
        result = self.engine.score(None, self.config, self.rules)

        assert result.score == 0
        assert result.band is ScoreBand.LOW
        assert result.tags == ["invalid_data"]

    def test_dict_lead_is_accepted(self):
        result = self.engine.score(
            {"email": "jane@acme.io", "fields": {"title": "CEO"}, "utm": {"source": "google-ads"}},
            self.config,
            self.rules,
        )

        assert result.band is ScoreBand.HIGH

    def test_scoring_is_deterministic(self):
        lead = NormalizedLead(
            email="sam@globex.com",
            company="Globex Corp",
            fields={"title": "Director of IT", "timeline": "this month"},
            utm={"source": "linkedin"},
        )

        first = self.engine.score(lead, self.config, self.rules)
        second = self.engine.score(lead, self.config, self.rules)

        assert first.to_dict() == second.to_dict()

    def test_trace_totals_replay_score(self):
        lead = NormalizedLead(
            email="sam@globex.com",
            company="Globex Corp",
            fields={"title": "Director of IT", "urgency": "medium"},
            utm={"source": "organic"},
        )

        result = self.engine.score(lead, self.config, self.rules)
        replayed = sum(entry.delta for entry in result.trace if entry.delta is not None)

        assert result.score == max(0, min(100, int(replayed + 0.5)))


class TestBands:
    """Test score band resolution."""

    def setup_method(self):
        self.config = default_scoring_config()

    def test_band_boundaries(self):
        assert ScoringEngine.determine_band(-10, self.config)[0] is ScoreBand.LOW
        assert ScoringEngine.determine_band(49, self.config)[0] is ScoreBand.LOW
        assert ScoringEngine.determine_band(50, self.config)[0] is ScoreBand.MEDIUM
        assert ScoringEngine.determine_band(75, self.config)[0] is ScoreBand.HIGH
        assert ScoringEngine.determine_band(150, self.config)[0] is ScoreBand.HIGH

    def test_every_score_maps_to_one_band(self):
        for score in range(0, 101):
            band, reason = ScoringEngine.determine_band(score, self.config)
            assert band in (ScoreBand.HIGH, ScoreBand.MEDIUM, ScoreBand.LOW)
            assert reason is None

    def test_misconfigured_bands_default_to_low(self):
        config = self.config.model_copy(update={"bands": BandThresholds(high=40, medium=60, low=0)})
        lead = NormalizedLead(email="jane@acme.io", fields={"title": "CEO"}, utm={"source": "google-ads"})

        result = ScoringEngine().score(lead, config, default_scoring_rules())

        assert result.band is ScoreBand.LOW
        assert result.trace[-1].reason == "band_config_invalid"

    def test_partition_check(self):
        assert BandThresholds(high=75, medium=50, low=0).is_partition()
        assert not BandThresholds(high=75, medium=50, low=10).is_partition()
        assert not BandThresholds(high=50, medium=50, low=0).is_partition()
        assert not BandThresholds(high=120, medium=50, low=0).is_partition()


class TestScoringRules:
    """Test rule evaluation inside the scoring engine."""

    def setup_method(self):
        self.engine = ScoringEngine()
        self.config = ScoringConfig()

    def test_malformed_rule_is_skipped(self):
        rules = [
            {
                "id": "bad",
                "order": 1,
                "type": "IF_THEN",
                "definition": {"if": [{"field": "email", "op": "bogus"}], "then": {"adjust": 50, "reason": "bad"}},
            },
            {
                "id": "has-company",
                "order": 2,
                "type": "IF_THEN",
                "definition": {"if": [{"field": "company", "op": "exists"}], "then": {"adjust": 10, "reason": "company"}},
            },
        ]

        result = self.engine.score(NormalizedLead(email="a@acme.io", company="Acme"), self.config, rules)

        assert result.score == 10
        assert [entry.rule for entry in result.trace if entry.step == "rule"] == ["has-company"]

    def test_disabled_rule_is_ignored(self):
        rules = [{
            "id": "off",
            "enabled": False,
            "type": "IF_THEN",
            "definition": {"if": [{"field": "company", "op": "exists"}], "then": {"adjust": 40, "reason": "off"}},
        }]

        result = self.engine.score(NormalizedLead(company="Acme"), self.config, rules)

        assert result.score == 0

    def test_rules_apply_in_ascending_order(self):
        rules = [
            {
                "id": "second",
                "order": 2,
                "type": "IF_THEN",
                "definition": {"if": [{"field": "company", "op": "exists"}], "then": {"adjust": 5, "reason": "b"}},
            },
            {
                "id": "first",
                "order": 1,
                "type": "IF_THEN",
                "definition": {"if": [{"field": "company", "op": "exists"}], "then": {"adjust": 5, "reason": "a"}},
            },
        ]

        result = self.engine.score(NormalizedLead(company="Acme"), self.config, rules)

        assert [entry.rule for entry in result.trace if entry.step == "rule"] == ["first", "second"]

    def test_weight_rule_lookup_is_case_insensitive(self):
        rules = [{
            "id": "source",
            "type": "WEIGHT",
            "definition": {"field": "utm.source", "weights": {"linkedin": 15}},
        }]

        result = self.engine.score(NormalizedLead(email="a@acme.io", utm={"source": "LinkedIn"}), self.config, rules)

        assert result.score == 15

    def test_unmatched_weight_adds_nothing(self):
        rules = [{
            "id": "source",
            "type": "WEIGHT",
            "definition": {"field": "utm.source", "weights": {"linkedin": 15}},
        }]

        result = self.engine.score(NormalizedLead(email="a@acme.io", utm={"source": "tiktok"}), self.config, rules)

        assert result.score == 0
        assert not [entry for entry in result.trace if entry.step == "rule"]

    def test_score_is_clamped_and_rounded_half_up(self):
        config = ScoringConfig.model_validate({"weights": {"jobRole": 45}})
        lead = NormalizedLead(email="a@acme.io", fields={"title": "Director of Sales"})

        assert self.engine.score(lead, config, []).score == 32

        rules = [{
            "id": "huge",
            "type": "IF_THEN",
            "definition": {"if": [{"field": "email", "op": "exists"}], "then": {"adjust": 500, "reason": "huge"}},
        }]
        assert self.engine.score(lead, config, rules).score == 100

    def test_penalties_are_sign_insensitive(self):
        lead = NormalizedLead(email="x@gmail.com", fields={"title": "CEO"})
        positive = ScoringConfig.model_validate({"weights": {"jobRole": 45}, "negative": {"freeEmail": 10}})
        negative = ScoringConfig.model_validate({"weights": {"jobRole": 45}, "negative": {"freeEmail": -10}})

        assert self.engine.score(lead, positive, []).score == 35
        assert self.engine.score(lead, negative, []).score == 35


class TestSignals:
    """Test category signal extraction."""

    def test_job_role_tiers(self):
        assert job_role_signal({"title": "Chief Revenue Officer"})[0] == 1.0
        assert job_role_signal({"title": "Vice President, Sales"})[0] == 0.8
        assert job_role_signal({"title": "Director of Marketing"})[0] == 0.7
        assert job_role_signal({"title": "Product Manager"})[0] == 0.5
        assert job_role_signal({"title": "Software Engineer"})[0] == 0.3
        assert job_role_signal({"title": "Marketing Intern"})[0] == 0.0
        assert job_role_signal({})[0] == 0.0

    def test_founders_outrank_their_second_title(self):
        assert job_role_signal({"title": "Founder & VP Engineering"})[0] == 1.0
        assert job_role_signal({"title": "Co-founder, Head of Growth"})[0] == 1.0
        assert job_role_signal({"title": "President"})[0] == 1.0
        assert job_role_signal({"title": "Senior Vice President"})[0] == 0.8

    def test_product_owner_is_not_an_executive(self):
        assert job_role_signal({"title": "Product Owner"})[0] == 0.3
        assert job_role_signal({"title": "Business Owner"})[0] == 1.0
        assert job_role_signal({"title": "Owner"})[0] == 1.0

    def test_urgency_from_level_or_timeline(self):
        assert urgency_signal({"urgency": "High"})[0] == 1.0
        assert urgency_signal({"timeline": "We need this ASAP"})[0] == 1.0
        assert urgency_signal({"timeline": "sometime this quarter"})[0] == 0.5
        assert urgency_signal({})[0] == 0.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
