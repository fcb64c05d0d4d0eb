"""
Tests for the template catalog: library loading, CRUD and baseline selection.
"""
import random

from services.session_generation.catalog import TemplateCatalog
from services.session_generation.config import ConfigService
from services.session_generation.constants import PhaseType, SessionType
from services.session_generation.templates import duration_window


def library_catalog(store=None, clock=None):
    catalog = TemplateCatalog(store=store, clock=clock)
    catalog.load_library(ConfigService.get_template_library())
    return catalog


class TestLibrary:

    def test_library_loads(self, clock):
        catalog = library_catalog(clock=clock)

        assert len(catalog) == len(ConfigService.get_template_library())
        assert catalog.get("tpl_code_review_standard").estimated_duration == 45

    def test_library_phases_sum_to_duration(self, clock):
        for template in library_catalog(clock=clock).list():
            assert sum(p.duration for p in template.phases) == template.estimated_duration

    def test_invalid_definitions_skipped(self, clock):
        catalog = TemplateCatalog(clock=clock)
        valid = ConfigService.get_template_library()[0]
        loaded = catalog.load_library([valid, {"id": "tpl_broken", "name": "missing everything"}])

        assert loaded == 1
        assert catalog.get("tpl_broken") is None

    def test_list_by_type(self, clock):
        catalog = library_catalog(clock=clock)

        assert [t.id for t in catalog.list(SessionType.LEARNING)] == ["tpl_learning_fundamentals"]
        assert catalog.list(SessionType.OPTIMIZATION) == []


class TestCrud:

    def test_upsert_persists(self, store, base_template, clock):
        catalog = TemplateCatalog(store=store, clock=clock)
        catalog.upsert(base_template)

        assert catalog.get(base_template.id) == base_template
        assert store.get_template(base_template.id) == base_template

    def test_upsert_without_persist(self, store, base_template, clock):
        catalog = TemplateCatalog(store=store, clock=clock)
        catalog.upsert(base_template, persist=False)

        assert catalog.get(base_template.id) is not None
        assert store.get_template(base_template.id) is None

    def test_remove(self, store, base_template, clock):
        catalog = TemplateCatalog(store=store, clock=clock)
        catalog.upsert(base_template)

        assert catalog.remove(base_template.id) is True
        assert catalog.remove(base_template.id) is False
        assert store.get_template(base_template.id) is None

    def test_readers_keep_old_snapshot(self, base_template, clock):
        catalog = TemplateCatalog(clock=clock)
        before = catalog.list()
        catalog.upsert(base_template)

        assert before == []
        assert len(catalog.list()) == 1

    def test_load_from_store(self, store, base_template, clock):
        store.save_template(base_template)
        catalog = TemplateCatalog(store=store, clock=clock)

        assert catalog.load_from_store() == 1
        assert catalog.get(base_template.id) == base_template


class TestBaseTemplate:

    def test_blueprint_for_development(self, base_template):
        assert [p.type for p in base_template.phases] == [
            PhaseType.WARMUP, PhaseType.FOCUS, PhaseType.BREAK, PhaseType.PRACTICE, PhaseType.REVIEW,
        ]
        assert [p.duration for p in base_template.phases] == [9, 41, 4, 22, 14]
        assert base_template.estimated_duration == 90

    def test_objectives_on_focus_and_practice(self, base_template):
        for phase in base_template.phases:
            if phase.type in (PhaseType.FOCUS, PhaseType.PRACTICE):
                assert phase.objectives == ("refactoring",)

    def test_default_and_required_resources(self, request_factory, clock):
        request = request_factory(constraints={"required_resources": ["style_guide"]})
        template = TemplateCatalog(clock=clock).create_base_template(request, random.Random(1))
        focus = next(p for p in template.phases if p.type == PhaseType.FOCUS)

        assert [r.name for r in focus.resources] == ["editor", "project_docs", "style_guide"]
        assert focus.resources[-1].is_required is True
        assert template.required_resources == ("style_guide",)

    def test_excluded_activity_omitted(self, request_factory, clock):
        request = request_factory(constraints={"excluded_activities": ["context_review"]})
        template = TemplateCatalog(clock=clock).create_base_template(request, random.Random(1))

        assert "context_review" not in template.activity_types()
        assert "goal_setting" in template.activity_types()

    def test_transitions_chain_phases(self, base_template):
        transitions = base_template.structure.transitions

        assert len(transitions) == len(base_template.phases) - 1
        assert transitions[0].from_phase == base_template.phases[0].id


class TestSelectBaseline:

    def test_baseline_within_window(self, evaluator, analysis, clock, request_factory):
        catalog = library_catalog(clock=clock)
        request = request_factory(session_type="review", target_duration=60)
        baseline = catalog.select_baseline(request, analysis, evaluator, random.Random(3))
        low, high = duration_window(request)

        assert baseline.type == SessionType.REVIEW
        assert low <= baseline.estimated_duration <= high
        assert sum(p.duration for p in baseline.phases) == baseline.estimated_duration

    def test_empty_catalog_synthesizes(self, evaluator, analysis, dev_request, clock):
        baseline = TemplateCatalog(clock=clock).select_baseline(dev_request, analysis, evaluator, random.Random(3))

        assert "generated" in baseline.tags
        assert baseline.estimated_duration == 90

    def test_deterministic(self, evaluator, analysis, dev_request, clock):
        catalog = library_catalog(clock=clock)

        first = catalog.select_baseline(dev_request, analysis, evaluator, random.Random(3))
        second = catalog.select_baseline(dev_request, analysis, evaluator, random.Random(3))

        assert first == second
