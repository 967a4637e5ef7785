"""Tests for turning free text into marketplace filters."""

import pytest

from marketplace_assistant.domain.models import FilterIntent, FilterSpec
from marketplace_assistant.services.filter_intelligence import (
    FilterIntelligenceEngine,
    current_filter_spec,
    validate_filters,
)


@pytest.fixture
def engine():
    return FilterIntelligenceEngine(threshold=0.6)


class TestExtraction:
    def test_numeric_constraints(self, engine):
        decision = engine.extract("alice", "DA above 50 and spam below 3")

        assert decision.filters.to_params() == {"daMin": 50, "spamMax": 3}
        assert decision.confidence == pytest.approx(0.8)
        assert decision.should_update is True
        assert decision.intent == FilterIntent.ACTION
        assert decision.changed_fields == ["daMin", "spamMax"]

    def test_conceptual_question_has_no_signals(self, engine):
        decision = engine.extract("alice", "what is domain authority?")

        assert decision.confidence == 0.0
        assert decision.should_update is False
        assert decision.intent == FilterIntent.INFORMATIONAL
        assert decision.filters.is_empty()

    def test_numeric_evidence_overrides_keyword(self, engine):
        decision = engine.extract("alice", "show me good quality sites with DA above 70")

        assert decision.filters.da_min == 70
        assert decision.filters.dr_min == 50
        assert decision.filters.spam_max == 2
        assert decision.confidence == pytest.approx(0.95)
        assert "overrides keyword" in decision.reasoning

    def test_cheap_keyword_loses_to_explicit_price(self, engine):
        decision = engine.extract("alice", "cheap sites under $300")

        assert decision.filters.to_params() == {"priceMax": 300.0}

    def test_keyword_alone(self, engine):
        decision = engine.extract("alice", "find me some cheap sites")

        assert decision.filters.price_max == 500
        assert decision.should_update is True

    def test_out_of_range_value_is_clamped_and_reported(self, engine):
        decision = engine.extract("alice", "DA above 150")

        assert decision.filters.da_min == 100
        assert len(decision.validation_errors) == 1
        assert "clamped to 100" in decision.validation_errors[0]
        assert decision.confidence == pytest.approx(0.4)
        assert decision.should_update is False

    def test_range_between(self, engine):
        decision = engine.extract("alice", "show sites with DA between 30 and 60")

        assert (decision.filters.da_min, decision.filters.da_max) == (30, 60)

    def test_traffic_with_thousands_suffix(self, engine):
        decision = engine.extract("alice", "I need 10k+ traffic")

        assert decision.filters.traffic_min == 10000

    def test_unknown_niche_is_an_error(self, engine):
        decision = engine.extract("alice", "crypto niche")

        assert decision.validation_errors
        assert "crypto" in decision.validation_errors[0]
        assert decision.filters.niche is None
        assert decision.should_update is False

    def test_capitalized_us_is_a_country_but_pronoun_is_not(self, engine):
        assert engine.extract("alice", "show publishers in the US").filters.country == "us"
        assert engine.extract("alice", "show us tech sites").filters.country is None

    def test_explicit_request_is_trusted_more_than_bare_mention(self, engine):
        bare = engine.extract("alice", "tech")
        asked = engine.extract("alice", "show tech sites")

        assert asked.confidence > bare.confidence
        assert asked.filters.niche == bare.filters.niche == "tech"


class TestAgainstCurrentFilters:
    def test_reset_clears_active_filters(self, engine):
        decision = engine.extract("alice", "clear all filters", current_filters={"daMin": 50, "niche": "tech"})

        assert decision.intent == FilterIntent.RESET
        assert decision.confidence == pytest.approx(0.9)
        assert decision.filters.is_empty()
        assert decision.should_update is True
        assert decision.changed_fields == ["daMin", "niche"]

    def test_reset_without_filters_changes_nothing(self, engine):
        decision = engine.extract("alice", "reset filters")

        assert decision.should_update is False
        assert decision.validation_warnings

    def test_new_constraints_merge_into_current(self, engine):
        decision = engine.extract("alice", "show tech sites", current_filters={"daMin": 50})

        assert decision.filters.to_params() == {"daMin": 50, "niche": "tech"}
        assert decision.changed_fields == ["niche"]

    def test_instead_replaces_current(self, engine):
        decision = engine.extract("alice", "show tech sites instead", current_filters={"daMin": 50})

        assert decision.filters.to_params() == {"niche": "tech"}
        assert decision.changed_fields == ["daMin", "niche"]
        assert decision.should_update is True

    def test_refinement_scores_above_contradiction(self, engine):
        current = FilterSpec(da_min=50)
        refine = engine.extract("alice", "show DA above 70", current_filters=current)
        contradict = engine.extract("alice", "show DA above 30", current_filters=current)

        assert refine.confidence > contradict.confidence
        assert "contradicts current daMin" in contradict.reasoning

    def test_repeating_a_current_value_warns_and_changes_nothing(self, engine):
        decision = engine.extract("alice", "show DA above 50", current_filters={"daMin": 50})

        assert decision.changed_fields == []
        assert decision.should_update is False
        assert "daMin is already 50" in decision.validation_warnings

    def test_invalid_current_filters_are_ignored(self, engine):
        decision = engine.extract("alice", "show tech sites", current_filters={"daMin": 500})

        assert decision.filters.to_params() == {"niche": "tech"}


class TestValidateFilters:
    def test_accepts_wire_and_python_names(self):
        spec, errors = validate_filters({"daMin": "55", "spam_max": 3, "niche": "Tech"})

        assert errors == []
        assert spec.to_params() == {"daMin": 55, "spamMax": 3, "niche": "tech"}

    def test_rejects_out_of_range_without_clamping(self):
        spec, errors = validate_filters({"daMin": 150})

        assert spec.da_min is None
        assert errors == ["daMin 150 is outside 0-100"]

    def test_rejects_crossed_range(self):
        spec, errors = validate_filters({"daMin": 70, "daMax": 40, "spamMax": 2})

        assert spec.to_params() == {"spamMax": 2}
        assert "cannot exceed" in errors[0]

    @pytest.mark.parametrize(
        "params",
        [
            {"niche": "crypto"},
            {"colour": "blue"},
            {"daMin": "lots"},
            {"daMin": 10.5},
            {"availability": "maybe"},
        ],
    )
    def test_rejections(self, params):
        spec, errors = validate_filters(params)

        assert spec.is_empty()
        assert len(errors) == 1

    def test_blank_values_are_skipped(self):
        spec, errors = validate_filters({"niche": "", "country": None, "availability": "true"})

        assert errors == []
        assert spec.to_params() == {"availability": True}


class TestCurrentFilterSpec:
    def test_missing_filters_are_empty(self):
        assert current_filter_spec(None) == FilterSpec()

    def test_spec_passes_through(self):
        spec = FilterSpec(niche="tech")

        assert current_filter_spec(spec) is spec

    def test_invalid_entries_are_dropped(self):
        assert current_filter_spec({"daMin": 500, "niche": "tech"}).to_params() == {"niche": "tech"}
