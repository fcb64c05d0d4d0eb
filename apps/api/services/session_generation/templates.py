"""
Template helpers shared by the search and refinement stages.

Covers the structural edits every stage needs (rescaling durations,
renumbering phases, rebuilding transitions), the effective duration window a
request allows, and the seeded random source threaded through a generation.
"""

import hashlib
import json
import random
import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from .constants import (
    MAX_SESSION_MINUTES,
    MIN_PHASE_MINUTES,
    MIN_SESSION_MINUTES,
    TARGET_DURATION_TOLERANCE,
)
from .schemas import GenerationRequest, PhaseTransition, SessionPhase, SessionTemplate


def duration_window(request: GenerationRequest) -> Tuple[int, int]:
    """
    Inclusive (low, high) minutes a template may last for this request.

    Constraint bounds intersected with target +/- tolerance, clamped to the
    absolute session bounds. Request validation guarantees low <= high.
    """
    low = max(MIN_SESSION_MINUTES, request.constraints.min_duration)
    high = min(MAX_SESSION_MINUTES, request.constraints.max_duration)
    if request.target_duration is not None:
        low = max(low, request.target_duration - TARGET_DURATION_TOLERANCE)
        high = min(high, request.target_duration + TARGET_DURATION_TOLERANCE)
    return low, high


def preferred_duration(request: GenerationRequest) -> int:
    """Duration the search aims for when nothing else is known."""
    low, high = duration_window(request)
    if request.target_duration is not None:
        return request.target_duration
    if request.preferences.preferred_duration is not None:
        return min(max(request.preferences.preferred_duration, low), high)
    return min(max(int(request.context.available_time or high), low), high)


def scale_phase_durations(phases: Sequence[SessionPhase], total: int) -> List[SessionPhase]:
    """
    Rescale phase durations proportionally so they sum to exactly `total`.

    Every phase keeps at least MIN_PHASE_MINUTES; rounding residue goes to
    the longest phase.
    """
    if not phases:
        return []
    total = max(total, MIN_PHASE_MINUTES * len(phases))
    current = sum(p.duration for p in phases) or len(phases)
    scaled = [max(MIN_PHASE_MINUTES, int(round(p.duration * total / current))) for p in phases]

    residue = total - sum(scaled)
    order = sorted(range(len(scaled)), key=lambda i: (-scaled[i], i))
    idx = 0
    while residue != 0:
        i = order[idx % len(order)]
        step = 1 if residue > 0 else -1
        if scaled[i] + step >= MIN_PHASE_MINUTES:
            scaled[i] += step
            residue -= step
        idx += 1

    return [p.model_copy(update={"duration": d}) for p, d in zip(phases, scaled)]


def sequential_transitions(phases: Sequence[SessionPhase]) -> Tuple[PhaseTransition, ...]:
    return tuple(
        PhaseTransition(
            from_phase=a.id,
            to_phase=b.id,
            conditions=(f"{a.id}.complete",),
        )
        for a, b in zip(phases, phases[1:])
    )


def renumber_phases(phases: Iterable[SessionPhase]) -> List[SessionPhase]:
    """Give phases positional ids (phase-1, phase-2, ...) so ids stay unique."""
    return [p.model_copy(update={"id": f"phase-{i + 1}"}) for i, p in enumerate(phases)]


def with_phases(template: SessionTemplate, phases: Sequence[SessionPhase], renumber: bool = False) -> SessionTemplate:
    """Copy of `template` with a new phase list; duration and transitions follow."""
    phases = renumber_phases(phases) if renumber else list(phases)
    structure = template.structure.model_copy(update={
        "phases": tuple(phases),
        "transitions": sequential_transitions(phases),
    })
    return template.model_copy(update={
        "structure": structure,
        "estimated_duration": sum(p.duration for p in phases),
    })


def fit_to_window(template: SessionTemplate, low: int, high: int) -> SessionTemplate:
    """Rescale a template so its duration lands inside [low, high]."""
    total = template.estimated_duration
    if low <= total <= high:
        return template
    target = low if total < low else high
    return with_phases(template, scale_phase_durations(template.phases, target))


# =============================================================================
# RANDOMNESS
# =============================================================================

def request_fingerprint(request: GenerationRequest) -> str:
    payload = json.dumps(request.model_dump(mode="json"), sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def make_rng(seed: Optional[int], request: GenerationRequest) -> random.Random:
    """
    Random source for one generation.

    With a seed, the stream depends only on (seed, request) so an identical
    request replays identically regardless of what ran before it.
    """
    if seed is None:
        return random.Random()
    return random.Random(f"{seed}:{request_fingerprint(request)}")


def new_id(rng: random.Random, prefix: str) -> str:
    return f"{prefix}_{uuid.UUID(int=rng.getrandbits(128), version=4).hex}"


def derive_template(template: SessionTemplate, rng: random.Random, now: datetime) -> SessionTemplate:
    """
    Working copy of a catalog template for one generation.

    The copy gets its own id and starts an empty optimization history, so
    catalog entries are never modified by a search.
    """
    return template.model_copy(update={
        "id": new_id(rng, "tpl"),
        "optimization_history": (),
        "created_at": now,
        "updated_at": now,
    })
