"""
Tests for the genetic optimizer.

Covers the elitism monotonicity invariant, budget handling, seeded
reproducibility and the structural operators.
"""
import asyncio
import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from services.session_generation.constants import MAX_PHASES, OptimizationMethod
from services.session_generation.genetic import GeneticConfig, GeneticOptimizer, SearchState
from services.session_generation.templates import duration_window


def run_search(optimizer, template, request, analysis, seed=99, **kwargs):
    return asyncio.run(optimizer.evolve(template, request, analysis, random.Random(seed), **kwargs))


class TestMonotonicity:
    """The elite is force-inserted, so the best fitness never drops."""

    def test_population_best_never_decreases(self, evaluator, clock, base_template, dev_request, analysis):
        seen = []

        def callback(state):
            seen.append(state.population_best)
            return True

        config = GeneticConfig(population_size=12, generations=15, convergence_patience=100)
        run_search(GeneticOptimizer(evaluator, config, clock), base_template, dev_request, analysis, callback=callback)

        assert len(seen) == 15
        assert all(later >= earlier for earlier, later in zip(seen, seen[1:]))

    def test_history_never_decreases(self, evaluator, clock, base_template, dev_request, analysis):
        result = run_search(GeneticOptimizer(evaluator, GeneticConfig(), clock), base_template, dev_request, analysis)

        assert all(b >= a for a, b in zip(result.history, result.history[1:]))
        assert result.best.fitness >= result.baseline_fitness
        assert result.improvement >= 0

    @pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
    def test_monotone_across_seeds(self, evaluator, clock, base_template, dev_request, analysis, seed):
        seen = []
        config = GeneticConfig(population_size=8, generations=8, mutation_rate=0.9, convergence_patience=100)
        run_search(
            GeneticOptimizer(evaluator, config, clock), base_template, dev_request, analysis,
            seed=seed, callback=lambda s: seen.append(s.population_best),
        )

        assert all(b >= a for a, b in zip(seen, seen[1:]))


class TestTermination:

    def test_converges_without_improvement(self, evaluator, clock, base_template, dev_request, analysis):
        config = GeneticConfig(population_size=6, generations=50, convergence_patience=3, convergence_epsilon=1.0)
        result = run_search(GeneticOptimizer(evaluator, config, clock), base_template, dev_request, analysis)

        assert result.state == SearchState.CONVERGED
        assert result.generations_run == 3

    def test_runs_all_generations(self, evaluator, clock, base_template, dev_request, analysis):
        config = GeneticConfig(population_size=6, generations=4, convergence_patience=100)
        result = run_search(GeneticOptimizer(evaluator, config, clock), base_template, dev_request, analysis)

        assert result.state == SearchState.CONVERGED
        assert result.generations_run == 4
        assert len(result.history) == 5

    def test_past_deadline_exhausts_budget(self, evaluator, clock, base_template, dev_request, analysis):
        clock.advance(10)
        result = run_search(
            GeneticOptimizer(evaluator, GeneticConfig(), clock), base_template, dev_request, analysis,
            deadline=5.0,
        )

        assert result.state == SearchState.BUDGET_EXHAUSTED
        assert result.timed_out is True
        assert result.generations_run == 0
        low, high = duration_window(dev_request)
        assert low <= result.best.template.estimated_duration <= high

    def test_callback_can_stop_search(self, evaluator, clock, base_template, dev_request, analysis):
        result = run_search(
            GeneticOptimizer(evaluator, GeneticConfig(convergence_patience=100), clock),
            base_template, dev_request, analysis,
            callback=lambda state: False,
        )

        assert result.generations_run == 1


class TestResult:

    def test_appends_one_genetic_record(self, evaluator, clock, base_template, dev_request, analysis):
        result = run_search(GeneticOptimizer(evaluator, GeneticConfig(), clock), base_template, dev_request, analysis)
        history = result.best.template.optimization_history

        assert len(history) == 1
        assert history[0].method == OptimizationMethod.GENETIC
        assert history[0].parameters["generations_run"] == result.generations_run
        assert history[0].improvement == pytest.approx(result.improvement)

    def test_best_stays_in_duration_window(self, evaluator, clock, base_template, dev_request, analysis):
        config = GeneticConfig(population_size=10, generations=10, mutation_rate=1.0)
        result = run_search(GeneticOptimizer(evaluator, config, clock), base_template, dev_request, analysis)

        low, high = duration_window(dev_request)
        template = result.best.template
        assert low <= template.estimated_duration <= high
        assert sum(p.duration for p in template.phases) == template.estimated_duration

    def test_same_seed_same_result(self, evaluator, clock, base_template, dev_request, analysis):
        optimizer = GeneticOptimizer(evaluator, GeneticConfig(), clock)
        first = run_search(optimizer, base_template, dev_request, analysis, seed=5)
        second = run_search(optimizer, base_template, dev_request, analysis, seed=5)

        assert first.best.template == second.best.template
        assert first.history == second.history

    def test_thread_pool_matches_inline(self, evaluator, clock, base_template, dev_request, analysis):
        inline = run_search(GeneticOptimizer(evaluator, GeneticConfig(), clock), base_template, dev_request, analysis)
        with ThreadPoolExecutor(max_workers=4) as pool:
            pooled = run_search(
                GeneticOptimizer(evaluator, GeneticConfig(), clock, executor=pool),
                base_template, dev_request, analysis,
            )

        assert pooled.best.template == inline.best.template
        assert pooled.history == inline.history


class TestOperators:

    def test_crossover_renumbers_phase_ids(self, base_template):
        a, b = GeneticOptimizer._crossover(base_template, base_template, random.Random(3))

        for child in (a, b):
            ids = [p.id for p in child.phases]
            assert len(ids) == len(set(ids))
            assert len(child.phases) <= MAX_PHASES
            assert child.estimated_duration == sum(p.duration for p in child.phases)

    def test_swap_keeps_phase_multiset(self, base_template, dev_request):
        swapped = GeneticOptimizer._swap_phases(base_template, dev_request, random.Random(0))

        assert sorted(p.type for p in swapped.phases) == sorted(p.type for p in base_template.phases)
        assert swapped.estimated_duration == base_template.estimated_duration

    def test_toggle_never_removes_required_resource(self, base_template, request_factory):
        request = request_factory(constraints={"required_resources": ["editor"]})

        for seed in range(20):
            toggled = GeneticOptimizer._toggle_resource(base_template, request, random.Random(seed))
            assert "editor" in toggled.resource_names()
