"""
Genetic Optimizer

Evolves a population of candidate templates toward higher fitness.

Lifecycle of one search:
    SEEDING -> EVOLVING (generation 1..G) -> CONVERGED | BUDGET_EXHAUSTED

Per generation:
1. Roulette-select parents by fitness
2. Single-point crossover on the phase list (else clone)
3. Mutate: perturb one phase duration, swap two phases, add/remove a resource
4. Repair every child into the request's duration window
5. Evaluate the offspring (optionally on a thread pool)
6. Force-insert the elite in place of the worst child

The elite guarantees the best fitness never decreases from one generation to
the next. All randomness comes from the `random.Random` handed to `evolve`.

Usage:
    optimizer = GeneticOptimizer(evaluator, GeneticConfig.from_settings())
    result = await optimizer.evolve(baseline, request, analysis, rng, deadline=...)
"""

import asyncio
import logging
import random
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from core.clock import Clock, SystemClock
from core.config import settings

from .config import ConfigService
from .constants import (
    DEFAULT_RESOURCES_BY_TYPE,
    GENETIC_DEFAULTS,
    MAX_PHASES,
    MIN_PHASE_MINUTES,
    MUTATION_DURATION_RANGE,
    OptimizationMethod,
    ResourceType,
)
from .context_analyzer import ContextAnalysis
from .fitness import FitnessEvaluator, record_feedback
from .schemas import GenerationRequest, OptimizationRecord, Resource, SessionTemplate
from .templates import duration_window, fit_to_window, with_phases

logger = logging.getLogger(__name__)


class SearchState(str, Enum):
    SEEDING = "seeding"
    EVOLVING = "evolving"
    CONVERGED = "converged"
    BUDGET_EXHAUSTED = "budget_exhausted"


@dataclass
class GeneticConfig:
    population_size: int = GENETIC_DEFAULTS["population_size"]
    generations: int = GENETIC_DEFAULTS["generations"]
    crossover_rate: float = GENETIC_DEFAULTS["crossover_rate"]
    mutation_rate: float = GENETIC_DEFAULTS["mutation_rate"]
    elitism: int = GENETIC_DEFAULTS["elitism"]
    convergence_epsilon: float = GENETIC_DEFAULTS["convergence_epsilon"]
    convergence_patience: int = GENETIC_DEFAULTS["convergence_patience"]

    @classmethod
    def from_settings(cls) -> "GeneticConfig":
        """Environment settings win; elitism comes from the rules file."""
        rules = ConfigService.get_genetic_rules()
        return cls(
            population_size=settings.GENERATION_POPULATION_SIZE,
            generations=settings.GENERATION_GENERATIONS,
            crossover_rate=settings.GENERATION_CROSSOVER_RATE,
            mutation_rate=settings.GENERATION_MUTATION_RATE,
            elitism=int(rules.get("elitism", GENETIC_DEFAULTS["elitism"])),
            convergence_epsilon=settings.GENERATION_CONVERGENCE_EPSILON,
            convergence_patience=settings.GENERATION_CONVERGENCE_PATIENCE,
        )


@dataclass(frozen=True)
class Individual:
    """A candidate template and its fitness. Never changed once scored."""
    template: SessionTemplate
    fitness: float


@dataclass
class EvolutionState:
    """Snapshot handed to the progress callback after every generation."""
    generation: int
    state: SearchState
    best_fitness: float
    population_best: float
    fitness_history: List[float]
    elapsed: float


# Return False to stop the search early.
EvolutionCallback = Callable[[EvolutionState], bool]


@dataclass
class GeneticResult:
    best: Individual
    baseline_fitness: float
    state: SearchState
    generations_run: int
    history: List[float] = field(default_factory=list)

    @property
    def timed_out(self) -> bool:
        return self.state == SearchState.BUDGET_EXHAUSTED

    @property
    def improvement(self) -> float:
        return round(self.best.fitness - self.baseline_fitness, 9)


class GeneticOptimizer:
    """
    Population search over session templates.
    """

    def __init__(
        self,
        evaluator: FitnessEvaluator,
        config: Optional[GeneticConfig] = None,
        clock: Optional[Clock] = None,
        executor: Optional[Executor] = None,
    ):
        self.evaluator = evaluator
        self.config = config or GeneticConfig()
        self.clock = clock or SystemClock()
        self.executor = executor

    async def evolve(
        self,
        baseline: SessionTemplate,
        request: GenerationRequest,
        analysis: ContextAnalysis,
        rng: random.Random,
        deadline: Optional[float] = None,
        callback: Optional[EvolutionCallback] = None,
    ) -> GeneticResult:
        """
        Run the search and return the best individual found.

        `deadline` is a clock.monotonic() value; once passed, the search stops
        at the next generation boundary as BUDGET_EXHAUSTED. Cancellation of
        the surrounding task lands on the same boundaries.
        """
        start = self.clock.monotonic()
        low, high = duration_window(request)
        size = max(2, self.config.population_size)

        # ========== Seeding ==========
        seed_templates = [fit_to_window(baseline, low, high)]
        while len(seed_templates) < size:
            seed_templates.append(self._mutate(seed_templates[0], request, rng, low, high))
        population = await self._evaluate(seed_templates, request, analysis)

        baseline_fitness = population[0].fitness
        best = self._best(population)
        history = [best.fitness]
        state = SearchState.EVOLVING
        stale = 0
        generation = 0
        logger.debug(f"Seeded population of {size}, best fitness {best.fitness:.4f}")

        # ========== Evolving ==========
        for generation in range(1, self.config.generations + 1):
            await asyncio.sleep(0)
            if deadline is not None and self.clock.monotonic() >= deadline:
                state = SearchState.BUDGET_EXHAUSTED
                generation -= 1
                logger.info(f"Search budget exhausted after {generation} generations")
                break

            elite = sorted(population, key=lambda i: i.fitness, reverse=True)[:max(1, self.config.elitism)]
            children = self._breed(population, request, rng, low, high)
            offspring = await self._evaluate(children, request, analysis)
            population = self._insert_elite(offspring, elite)

            generation_best = self._best(population)
            if generation_best.fitness - best.fitness > self.config.convergence_epsilon:
                stale = 0
            else:
                stale += 1
            if generation_best.fitness > best.fitness:
                best = generation_best
            history.append(best.fitness)

            if callback is not None:
                keep_going = callback(EvolutionState(
                    generation=generation,
                    state=state,
                    best_fitness=best.fitness,
                    population_best=generation_best.fitness,
                    fitness_history=list(history),
                    elapsed=self.clock.monotonic() - start,
                ))
                if keep_going is False:
                    logger.info(f"Search stopped by callback at generation {generation}")
                    break

            if stale >= self.config.convergence_patience:
                state = SearchState.CONVERGED
                logger.debug(f"Converged at generation {generation}")
                break
        else:
            state = SearchState.CONVERGED

        best = Individual(
            template=best.template.with_record(self._record(best, baseline_fitness, generation, state, request, analysis)),
            fitness=best.fitness,
        )
        return GeneticResult(
            best=best,
            baseline_fitness=baseline_fitness,
            state=state,
            generations_run=generation,
            history=history,
        )

    # ========== Evaluation ==========

    async def _evaluate(
        self,
        templates: Sequence[SessionTemplate],
        request: GenerationRequest,
        analysis: ContextAnalysis,
    ) -> List[Individual]:
        if self.executor is None:
            scores = [self.evaluator.fitness(t, request, analysis) for t in templates]
        else:
            loop = asyncio.get_running_loop()
            futures = [
                loop.run_in_executor(self.executor, self.evaluator.fitness, t, request, analysis)
                for t in templates
            ]
            scores = await asyncio.gather(*futures)
        return [Individual(template=t, fitness=s) for t, s in zip(templates, scores)]

    @staticmethod
    def _best(population: Sequence[Individual]) -> Individual:
        return max(population, key=lambda i: i.fitness)

    @staticmethod
    def _insert_elite(offspring: List[Individual], elite: List[Individual]) -> List[Individual]:
        """Replace the worst children with the carried-over elite."""
        ranked = sorted(range(len(offspring)), key=lambda i: (offspring[i].fitness, i))
        population = list(offspring)
        for slot, individual in zip(ranked, elite):
            population[slot] = individual
        return population

    # ========== Operators ==========

    def _breed(self, population, request, rng, low, high) -> List[SessionTemplate]:
        children: List[SessionTemplate] = []
        weights = [i.fitness + 1e-9 for i in population]
        while len(children) < len(population):
            p1, p2 = rng.choices(population, weights=weights, k=2)
            if rng.random() < self.config.crossover_rate:
                c1, c2 = self._crossover(p1.template, p2.template, rng)
            else:
                c1, c2 = p1.template, p2.template

            for child in (c1, c2):
                if rng.random() < self.config.mutation_rate:
                    child = self._mutate(child, request, rng, low, high)
                children.append(fit_to_window(child, low, high))
        return children[:len(population)]

    @staticmethod
    def _crossover(a: SessionTemplate, b: SessionTemplate, rng: random.Random):
        """Swap phase tails at one cut point per parent."""
        pa, pb = list(a.phases), list(b.phases)
        cut_a = rng.randint(1, len(pa) - 1) if len(pa) > 1 else 1
        cut_b = rng.randint(1, len(pb) - 1) if len(pb) > 1 else 1
        first = pa[:cut_a] + pb[cut_b:]
        second = pb[:cut_b] + pa[cut_a:]

        child_a = with_phases(a, first, renumber=True) if len(first) <= MAX_PHASES else a
        child_b = with_phases(b, second, renumber=True) if len(second) <= MAX_PHASES else b
        return child_a, child_b

    def _mutate(self, template, request, rng, low, high) -> SessionTemplate:
        operators = [self._perturb_duration, self._toggle_resource]
        if len(template.phases) > 1:
            operators.append(self._swap_phases)
        mutated = rng.choice(operators)(template, request, rng)
        return fit_to_window(mutated, low, high)

    @staticmethod
    def _perturb_duration(template, request, rng) -> SessionTemplate:
        phases = list(template.phases)
        idx = rng.randrange(len(phases))
        factor = rng.uniform(*MUTATION_DURATION_RANGE)
        duration = max(MIN_PHASE_MINUTES, int(round(phases[idx].duration * factor)))
        phases[idx] = phases[idx].model_copy(update={"duration": duration})
        return with_phases(template, phases)

    @staticmethod
    def _swap_phases(template, request, rng) -> SessionTemplate:
        phases = list(template.phases)
        i, j = rng.sample(range(len(phases)), 2)
        phases[i], phases[j] = phases[j], phases[i]
        return with_phases(template, phases, renumber=True)

    @staticmethod
    def _toggle_resource(template, request, rng) -> SessionTemplate:
        phases = list(template.phases)
        removable = [
            (pi, ri)
            for pi, p in enumerate(phases)
            for ri, r in enumerate(p.resources)
            if not r.is_required and r.name not in request.constraints.required_resources
        ]
        present = set(template.resource_names())
        addable = [
            (name, ResourceType(kind))
            for name, kind in DEFAULT_RESOURCES_BY_TYPE[template.type]
            if name not in present
        ] + [
            (name, ResourceType.REFERENCE)
            for name in request.constraints.required_resources
            if name not in present
        ]

        if removable and (not addable or rng.random() < 0.5):
            pi, ri = rng.choice(removable)
            phase = phases[pi]
            resources = phase.resources[:ri] + phase.resources[ri + 1:]
            phases[pi] = phase.model_copy(update={"resources": resources})
        elif addable:
            name, kind = rng.choice(addable)
            pi = rng.randrange(len(phases))
            phase = phases[pi]
            resource = Resource(id=f"res-{name}", type=kind, name=name)
            phases[pi] = phase.model_copy(update={"resources": phase.resources + (resource,)})
        else:
            return template
        return with_phases(template, phases)

    # ========== History ==========

    def _record(self, best, baseline_fitness, generations_run, state, request, analysis) -> OptimizationRecord:
        breakdown = self.evaluator.evaluate(best.template, request, analysis)
        return OptimizationRecord(
            timestamp=self.clock.now(),
            method=OptimizationMethod.GENETIC,
            parameters={
                "population_size": self.config.population_size,
                "generations_run": generations_run,
                "crossover_rate": self.config.crossover_rate,
                "mutation_rate": self.config.mutation_rate,
                "final_state": state.value,
                "fitness": best.fitness,
            },
            improvement=round(best.fitness - baseline_fitness, 9),
            feedback=record_feedback(breakdown),
        )
