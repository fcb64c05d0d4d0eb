"""
Template Catalog

Shared, read-mostly set of known templates, queryable by session type.

Writes never touch the live mapping: they build a new dict and swap it in
under a lock, so a reader always sees one consistent snapshot. When nothing
in the catalog beats a freshly synthesized template for the request, the
synthesized one becomes the baseline.
"""

import logging
import random
import threading
from typing import Dict, List, Optional

from pydantic import ValidationError as SchemaValidationError

from core.clock import Clock, SystemClock

from .constants import (
    DEFAULT_RESOURCES_BY_TYPE,
    PHASE_ACTIVITIES,
    PHASE_BLUEPRINTS,
    PHASE_MEASUREMENT,
    PhaseType,
    ResourceType,
    SessionType,
)
from .context_analyzer import ContextAnalysis
from .fitness import FitnessEvaluator
from .schemas import (
    Activity,
    GenerationRequest,
    Resource,
    SessionPhase,
    SessionStructure,
    SessionTemplate,
    SuccessCriteria,
)
from .templates import (
    duration_window,
    fit_to_window,
    new_id,
    preferred_duration,
    scale_phase_durations,
    sequential_transitions,
)

logger = logging.getLogger(__name__)

OBJECTIVE_PHASES = {PhaseType.FOCUS, PhaseType.PRACTICE}


class TemplateCatalog:
    """
    Usage:
        catalog = TemplateCatalog(store=store)
        catalog.load_library(ConfigService.get_template_library())
        baseline = catalog.select_baseline(request, analysis, evaluator, rng)
    """

    def __init__(self, store=None, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._templates: Dict[str, SessionTemplate] = {}

    # ========== Reads ==========

    def get(self, template_id: str) -> Optional[SessionTemplate]:
        return self._templates.get(template_id)

    def list(self, session_type: Optional[SessionType] = None) -> List[SessionTemplate]:
        snapshot = self._templates
        templates = sorted(snapshot.values(), key=lambda t: t.id)
        if session_type is None:
            return templates
        return [t for t in templates if t.type == session_type]

    def __len__(self) -> int:
        return len(self._templates)

    # ========== Writes (atomic replace) ==========

    def upsert(self, template: SessionTemplate, persist: bool = True) -> None:
        with self._lock:
            updated = dict(self._templates)
            updated[template.id] = template
            self._templates = updated
        if persist and self.store is not None:
            self.store.save_template(template)

    def remove(self, template_id: str) -> bool:
        with self._lock:
            if template_id not in self._templates:
                return False
            updated = dict(self._templates)
            del updated[template_id]
            self._templates = updated
        if self.store is not None:
            self.store.delete_template(template_id)
        return True

    def load_library(self, definitions: List[dict]) -> int:
        """Validate raw template definitions and add the valid ones."""
        loaded = {}
        for raw in definitions:
            try:
                template = SessionTemplate.model_validate(raw)
            except SchemaValidationError as e:
                logger.warning(f"Skipping invalid library template {raw.get('id')}: {e}")
                continue
            loaded[template.id] = template

        with self._lock:
            updated = dict(self._templates)
            updated.update(loaded)
            self._templates = updated
        logger.info(f"Loaded {len(loaded)} library templates")
        return len(loaded)

    def load_from_store(self) -> int:
        if self.store is None:
            return 0
        stored = {t.id: t for t in self.store.list_templates()}
        with self._lock:
            updated = dict(self._templates)
            updated.update(stored)
            self._templates = updated
        return len(stored)

    # ========== Baseline selection ==========

    def select_baseline(
        self,
        request: GenerationRequest,
        analysis: ContextAnalysis,
        evaluator: FitnessEvaluator,
        rng: random.Random,
    ) -> SessionTemplate:
        """
        Best-scoring template for the request, fitted to its duration window.

        The synthesized base template always competes, so a catalog entry only
        wins when it is a strong match.
        """
        low, high = duration_window(request)
        candidates = [fit_to_window(t, low, high) for t in self.list(request.session_type)]
        candidates.append(self.create_base_template(request, rng))

        scored = [(evaluator.fitness(t, request, analysis), i, t) for i, t in enumerate(candidates)]
        scored.sort(key=lambda item: (-item[0], item[1]))
        best_score, _, best = scored[0]
        logger.debug(f"Baseline {best.id} selected with fitness {best_score:.3f} from {len(candidates)} candidates")
        return best

    def create_base_template(self, request: GenerationRequest, rng: random.Random) -> SessionTemplate:
        """Synthesize a template from the phase blueprint of the session type."""
        blueprint = PHASE_BLUEPRINTS[request.session_type]
        total = preferred_duration(request)
        excluded = {a.lower() for a in request.constraints.excluded_activities}

        phases = []
        required_placed = False
        for i, (phase_type, share, weight) in enumerate(blueprint):
            objectives = tuple(request.objectives) if phase_type in OBJECTIVE_PHASES else (f"{phase_type.value} goals",)
            activities = tuple(
                Activity(
                    id=f"act-{i + 1}-{j + 1}",
                    type=activity_type,
                    mode=mode,
                    description=f"{activity_type.replace('_', ' ')} for {request.objectives[0]}",
                    estimated_time=max(1, int(total * share)),
                    difficulty=0.5,
                )
                for j, (activity_type, mode) in enumerate(PHASE_ACTIVITIES[phase_type])
                if activity_type not in excluded
            )

            resources = []
            if phase_type == PhaseType.FOCUS and not required_placed:
                required_placed = True
                for name, kind in DEFAULT_RESOURCES_BY_TYPE[request.session_type]:
                    resources.append(Resource(id=f"res-{name}", type=ResourceType(kind), name=name))
                for name in request.constraints.required_resources:
                    resources.append(Resource(id=f"res-{name}", type=ResourceType.REFERENCE, name=name, is_required=True))

            phases.append(SessionPhase(
                id=f"phase-{i + 1}",
                name=phase_type.value.replace("_", " ").title(),
                type=phase_type,
                duration=max(1, int(round(total * share))),
                objectives=objectives,
                activities=activities,
                resources=tuple(resources),
                success_criteria=(SuccessCriteria(
                    metric=f"{phase_type.value}_completion",
                    threshold=0.7,
                    weight=weight,
                    measurement=PHASE_MEASUREMENT[phase_type],
                ),),
            ))

        phases = scale_phase_durations(phases, total)
        now = self.clock.now()
        return SessionTemplate(
            id=new_id(rng, "tpl"),
            name=f"{request.session_type.value.title()} session: {request.objectives[0]}",
            description=f"Generated {request.session_type.value} session",
            type=request.session_type,
            estimated_duration=sum(p.duration for p in phases),
            difficulty=request.difficulty,
            required_resources=tuple(request.constraints.required_resources),
            tags=(request.session_type.value, "generated"),
            structure=SessionStructure(phases=tuple(phases), transitions=sequential_transitions(phases)),
            created_at=now,
            updated_at=now,
        )
