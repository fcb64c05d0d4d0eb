"""
Feedback Refiner

Biases structural choices toward what worked before for the same user and
session type.

The value table keeps, per (user_id, session_type), a running mean of
duration, phase count and difficulty over successful sessions
(success_score above the threshold). The refiner moves each dimension of
the current template halfway toward those means. With fewer than
FEEDBACK_MIN_ENTRIES entries for the pair it passes the template through.

The table is an immutable snapshot. The learning recorder builds a new one
per fold and swaps it in, so a refinement always reads one consistent state.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from core.clock import Clock, SystemClock

from .constants import (
    DIFFICULTY_ORDER,
    FEEDBACK_MIN_ENTRIES,
    FEEDBACK_STEP,
    FEEDBACK_SUCCESS_THRESHOLD,
    OptimizationMethod,
    PhaseType,
    SessionType,
)
from .context_analyzer import ContextAnalysis
from .fitness import FitnessEvaluator, record_feedback
from .schemas import GenerationRequest, LearningEntry, OptimizationRecord, SessionTemplate
from .surrogate import RefinementOutcome
from .templates import duration_window, scale_phase_durations, with_phases

logger = logging.getLogger(__name__)

TableKey = Tuple[str, SessionType]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class FeedbackStats:
    """Running means over the successful sessions of one (user, type) pair."""
    entries: int = 0
    successes: int = 0
    mean_duration: float = 0.0
    mean_phase_count: float = 0.0
    mean_difficulty: float = 0.0
    entry_ids: FrozenSet[str] = field(default_factory=frozenset)

    def with_entry(self, entry: LearningEntry, threshold: float) -> "FeedbackStats":
        if entry.entry_id in self.entry_ids:
            return self
        updated = replace(self, entries=self.entries + 1, entry_ids=self.entry_ids | {entry.entry_id})
        if entry.performance.success_score <= threshold:
            return updated

        n = updated.successes + 1
        difficulty = DIFFICULTY_ORDER.index(entry.difficulty)
        return replace(
            updated,
            successes=n,
            mean_duration=updated.mean_duration + (entry.duration - updated.mean_duration) / n,
            mean_phase_count=updated.mean_phase_count + (entry.phase_count - updated.mean_phase_count) / n,
            mean_difficulty=updated.mean_difficulty + (difficulty - updated.mean_difficulty) / n,
        )


class FeedbackTable:
    """
    Immutable value table keyed by (user_id, session_type).

    Usage:
        table = FeedbackTable().with_entries(entries)
        stats = table.get("user-1", SessionType.LEARNING)
    """

    def __init__(self, stats: Optional[Mapping[TableKey, FeedbackStats]] = None,
                 threshold: float = FEEDBACK_SUCCESS_THRESHOLD):
        self._stats = MappingProxyType(dict(stats or {}))
        self.threshold = threshold

    def get(self, user_id: str, session_type: SessionType) -> Optional[FeedbackStats]:
        return self._stats.get((user_id, session_type))

    def with_entries(self, entries: Iterable[LearningEntry]) -> "FeedbackTable":
        stats: Dict[TableKey, FeedbackStats] = dict(self._stats)
        for entry in entries:
            key = (entry.user_id, entry.session_type)
            stats[key] = stats.get(key, FeedbackStats()).with_entry(entry, self.threshold)
        return FeedbackTable(stats, self.threshold)

    def snapshot(self) -> Dict[TableKey, FeedbackStats]:
        return dict(self._stats)

    def __len__(self) -> int:
        return len(self._stats)

    def __eq__(self, other) -> bool:
        if not isinstance(other, FeedbackTable):
            return NotImplemented
        return self.snapshot() == other.snapshot()


class FeedbackRefiner:
    """
    Usage:
        refiner = FeedbackRefiner(lambda: services.feedback_table, evaluator, clock)
        outcome = refiner.refine(template, request, analysis)
    """

    def __init__(
        self,
        table_provider: Callable[[], FeedbackTable],
        evaluator: FitnessEvaluator,
        clock: Optional[Clock] = None,
        min_entries: int = FEEDBACK_MIN_ENTRIES,
        step: float = FEEDBACK_STEP,
    ):
        self.table_provider = table_provider
        self.evaluator = evaluator
        self.clock = clock or SystemClock()
        self.min_entries = min_entries
        self.step = step

    def refine(self, template: SessionTemplate, request: GenerationRequest, analysis: ContextAnalysis) -> RefinementOutcome:
        base = self.evaluator.evaluate(template, request, analysis)
        unchanged = RefinementOutcome(
            template=template,
            accepted=False,
            input_fitness=base.total,
            output_fitness=base.total,
        )

        stats = self.table_provider().get(request.user_id, request.session_type)
        if stats is None or stats.entries < self.min_entries:
            unchanged.skipped_reason = "insufficient_history"
            return unchanged
        if stats.successes == 0:
            unchanged.skipped_reason = "no_successful_history"
            return unchanged

        low, high = duration_window(request)
        duration = self._toward(template.estimated_duration, stats.mean_duration)
        duration = min(max(duration, low), high)
        phase_count = max(1, self._toward(len(template.phases), stats.mean_phase_count))
        difficulty_idx = min(
            len(DIFFICULTY_ORDER) - 1,
            max(0, self._toward(DIFFICULTY_ORDER.index(template.difficulty), stats.mean_difficulty)),
        )

        phases = list(template.phases)
        while len(phases) < phase_count:
            phases = self._split_longest(phases)
        while len(phases) > phase_count:
            phases = self._merge_shortest(phases)
        phases = scale_phase_durations(phases, duration)

        refined = with_phases(template, phases, renumber=len(phases) != len(template.phases))
        refined = refined.model_copy(update={"difficulty": DIFFICULTY_ORDER[difficulty_idx]})

        changes = {}
        if refined.estimated_duration != template.estimated_duration:
            changes["duration"] = [template.estimated_duration, refined.estimated_duration]
        if len(refined.phases) != len(template.phases):
            changes["phase_count"] = [len(template.phases), len(refined.phases)]
        if refined.difficulty != template.difficulty:
            changes["difficulty"] = [template.difficulty.value, refined.difficulty.value]
        if not changes:
            unchanged.skipped_reason = "already_aligned"
            return unchanged

        after = self.evaluator.evaluate(refined, request, analysis)
        record = OptimizationRecord(
            timestamp=self.clock.now(),
            method=OptimizationMethod.FEEDBACK,
            parameters={"changes": changes, "history_entries": stats.entries, "successful_entries": stats.successes},
            improvement=round(after.total - base.total, 9),
            feedback=record_feedback(after),
        )
        logger.debug(f"Feedback refinement for {request.user_id}: {changes}")
        return RefinementOutcome(
            template=refined.with_record(record),
            accepted=True,
            input_fitness=base.total,
            output_fitness=after.total,
            applied=sorted(changes),
        )

    def _toward(self, current: float, mean: float) -> int:
        return _round_half_up(current + self.step * (mean - current))

    @staticmethod
    def _split_longest(phases):
        idx = max(range(len(phases)), key=lambda i: (phases[i].duration, -i))
        phase = phases[idx]
        if phase.duration < 2:
            return phases + [phase.model_copy(update={"resources": ()})]
        first = phase.duration // 2
        head = phase.model_copy(update={"duration": phase.duration - first})
        tail = phase.model_copy(update={
            "duration": first,
            "name": f"{phase.name} (continued)",
            "resources": (),
        })
        return phases[:idx] + [head, tail] + phases[idx + 1:]

    @staticmethod
    def _merge_shortest(phases):
        """Fold the shortest non-focus phase into its neighbour."""
        candidates = [i for i, p in enumerate(phases) if p.type != PhaseType.FOCUS] or list(range(len(phases)))
        idx = min(candidates, key=lambda i: (phases[i].duration, i))
        removed = phases[idx]
        neighbour = idx - 1 if idx > 0 else idx + 1
        target = phases[neighbour]
        phases = list(phases)
        phases[neighbour] = target.model_copy(update={
            "duration": target.duration + removed.duration,
            "resources": target.resources + tuple(r for r in removed.resources if r not in target.resources),
        })
        del phases[idx]
        return phases
