"""
Tests for the surrogate refiner.

The refiner may only ever return something at least as fit as its input.
"""
import pytest

from services.session_generation.constants import OptimizationMethod, PhaseType
from services.session_generation.fitness import FitnessEvaluator
from services.session_generation.scoring_model import (
    ModelOutput,
    ScoringModel,
    Suggestion,
    SuggestionKind,
    WeightedScoringModel,
)
from services.session_generation.surrogate import SurrogateRefiner


class ScriptedModel(ScoringModel):
    """Returns fixed suggestions; success drops with every break phase."""

    def __init__(self, suggestions):
        self.suggestions = suggestions

    def predict_success(self, features, context):
        breaks = sum(1 for p in context["phases"] if p["type"] == PhaseType.BREAK)
        return ModelOutput(value=max(0.0, 0.9 - 0.3 * breaks), confidence=0.8)

    def predict_duration(self, features, context):
        return ModelOutput(value=float(context["estimated_duration"]), confidence=0.8)

    def recommend(self, features, context):
        return list(self.suggestions)


def refine(model, template, request, analysis, clock, **kwargs):
    refiner = SurrogateRefiner(model, FitnessEvaluator(model), clock, **kwargs)
    return refiner.refine(template, request, analysis)


class TestSafeRefinement:

    def test_output_never_worse_than_input(self, model, base_template, dev_request, analysis, clock):
        outcome = refine(model, base_template, dev_request, analysis, clock)

        assert outcome.output_fitness >= outcome.input_fitness
        if not outcome.accepted:
            assert outcome.template is base_template

    def test_harmful_suggestion_rejected(self, base_template, dev_request, analysis, clock):
        model = ScriptedModel([
            Suggestion(kind=SuggestionKind.ADD_BREAK, confidence=0.9, predicted_delta=0.1, phase_index=2, magnitude=5),
        ])
        outcome = refine(model, base_template, dev_request, analysis, clock)

        assert outcome.accepted is False
        assert outcome.skipped_reason == "fitness_decreased"
        assert outcome.template is base_template
        assert outcome.output_fitness == outcome.input_fitness

    def test_violating_suggestion_discarded(self, base_template, dev_request, analysis, clock):
        # Doubling the 41-minute focus phase pushes 90 minutes past the 105 ceiling
        model = ScriptedModel([
            Suggestion(kind=SuggestionKind.EXTEND_PHASE, confidence=0.9, predicted_delta=0.2, phase_index=1, magnitude=1.0),
        ])
        outcome = refine(model, base_template, dev_request, analysis, clock)

        assert outcome.accepted is False
        assert outcome.skipped_reason == "no_applicable_suggestions"

    def test_non_positive_delta_ignored(self, base_template, dev_request, analysis, clock):
        model = ScriptedModel([
            Suggestion(kind=SuggestionKind.INTERACTIVE_SWAP, confidence=0.9, predicted_delta=0.0, phase_index=3),
            Suggestion(kind=SuggestionKind.INTERACTIVE_SWAP, confidence=0.9, predicted_delta=-0.1, phase_index=3),
        ])
        outcome = refine(model, base_template, dev_request, analysis, clock)

        assert outcome.skipped_reason == "no_applicable_suggestions"


class TestAcceptedRefinement:

    def test_adds_missing_required_resource(self, model, base_template, request_factory, analysis, clock):
        request = request_factory(constraints={"required_resources": ["style_guide"]})
        outcome = refine(model, base_template, request, analysis, clock)

        assert outcome.accepted is True
        assert "add_resource" in outcome.applied
        assert "style_guide" in outcome.template.resource_names()
        assert outcome.output_fitness > outcome.input_fitness

        record = outcome.template.optimization_history[-1]
        assert record.method == OptimizationMethod.SURROGATE
        assert record.improvement == pytest.approx(outcome.improvement)

    def test_top_k_by_confidence(self, base_template, request_factory, analysis, clock):
        request = request_factory(constraints={"required_resources": ["style_guide", "linter"]})
        model = ScriptedModel([
            Suggestion(kind=SuggestionKind.ADD_RESOURCE, confidence=0.5, predicted_delta=0.05, resource="linter"),
            Suggestion(kind=SuggestionKind.ADD_RESOURCE, confidence=0.9, predicted_delta=0.05, resource="style_guide"),
        ])
        outcome = refine(model, base_template, request, analysis, clock, max_suggestions=1)

        assert outcome.accepted is True
        names = outcome.template.resource_names()
        assert "style_guide" in names
        assert "linter" not in names


class TestSkipped:

    def test_no_model(self, evaluator, base_template, dev_request, analysis, clock):
        outcome = SurrogateRefiner(None, evaluator, clock).refine(base_template, dev_request, analysis)

        assert outcome.skipped_reason == "no_model"
        assert outcome.template is base_template

    def test_model_unavailable(self, down_model, base_template, dev_request, analysis, clock):
        outcome = refine(down_model, base_template, dev_request, analysis, clock)

        assert outcome.skipped_reason == "model_unavailable"
        assert outcome.template is base_template


class TestApply:

    def test_add_break_keeps_total_duration(self, base_template, clock):
        refiner = SurrogateRefiner(WeightedScoringModel(), FitnessEvaluator(None), clock)
        suggestion = Suggestion(kind=SuggestionKind.ADD_BREAK, confidence=0.5, predicted_delta=0.01, phase_index=2, magnitude=5)

        result = refiner.apply(base_template, suggestion)

        assert len(result.phases) == len(base_template.phases) + 1
        assert result.estimated_duration == base_template.estimated_duration
        assert len({p.id for p in result.phases}) == len(result.phases)

    def test_resize_rejects_bad_index(self, base_template, clock):
        refiner = SurrogateRefiner(WeightedScoringModel(), FitnessEvaluator(None), clock)
        suggestion = Suggestion(kind=SuggestionKind.EXTEND_PHASE, confidence=0.5, predicted_delta=0.01, phase_index=40, magnitude=0.1)

        assert refiner.apply(base_template, suggestion) is None
