"""
End-to-end tests for the generation orchestrator.

All runs use a manual clock and a fixed seed, so timings are zero and two
identical requests produce identical sessions.
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from core.clock import ManualClock
from core.exceptions import GenerationCancelled, GenerationTimeout, ValidationError
from services.session_generation.constants import OptimizationMethod
from services.session_generation.container import GenerationServices
from services.session_generation.learning import LearningSnapshot
from services.session_generation.orchestrator import (
    GenerationOrchestrator,
    GenerationStage,
    ResultStatus,
)
from services.session_generation.store import InMemorySessionStore
from services.session_generation.templates import duration_window
from tests.session_helpers import TEST_SEED, SlowModel, UnavailableModel, make_entry


def make_orchestrator(clock=None, **kwargs):
    services = GenerationServices(
        store=kwargs.pop("store", None) or InMemorySessionStore(),
        clock=clock or ManualClock(),
        seed=kwargs.pop("seed", TEST_SEED),
        eval_workers=0,
        **kwargs,
    ).bootstrap()
    return GenerationOrchestrator(services)


FEEDBACK = {
    "user_satisfaction": 0.8,
    "objective_completion": 0.9,
    "time_efficiency": 0.7,
    "resource_utilization": 0.6,
    "learning_effectiveness": 0.7,
}


def methods(session):
    return [r.method for r in session.template.optimization_history]


class TestSingleGeneration:

    def test_development_scenario(self, orchestrator, dev_request):
        session = asyncio.run(orchestrator.generate(dev_request))
        template = session.template

        assert 75 <= template.estimated_duration <= 105
        assert sum(p.duration for p in template.phases) == template.estimated_duration
        assert methods(session).count(OptimizationMethod.GENETIC) == 1
        assert session.user_id == "user-1"
        assert session.id.startswith("gen_")

    def test_metadata(self, orchestrator, dev_request):
        session = asyncio.run(orchestrator.generate(dev_request))
        metadata = session.metadata

        assert metadata.partial is False
        assert metadata.algorithms_used[0] == "context_analysis"
        assert "genetic" in metadata.algorithms_used
        assert metadata.algorithms_used[-1] == "prediction"
        assert 0.0 <= metadata.confidence_score <= 1.0
        assert metadata.generation_time == 0.0
        assert metadata.degraded_stages == ()

    def test_results_within_bounds(self, orchestrator, request_factory):
        request = request_factory(target_duration=None, constraints={"min_duration": 30, "max_duration": 60})
        session = asyncio.run(orchestrator.generate(request))
        low, high = duration_window(request)

        assert low <= session.template.estimated_duration <= high
        assert 0.0 <= session.predictions.success_probability <= 1.0
        assert len(session.alternatives) <= 3
        for alternative in session.alternatives:
            assert 0.0 <= alternative.suitability <= 1.0

    def test_template_carries_predictions(self, orchestrator, dev_request):
        session = asyncio.run(orchestrator.generate(dev_request))

        assert session.template.success_prediction == session.predictions.success_probability

    def test_accepts_raw_dict(self, orchestrator):
        session = asyncio.run(orchestrator.generate({
            "user_id": "user-9",
            "session_type": "learning",
            "target_duration": 60,
            "objectives": ["async io"],
            "optimization_level": "quick",
        }))

        assert session.template.type.value == "learning"

    def test_deterministic_with_seed(self, dev_request):
        first = make_orchestrator()
        second = make_orchestrator()
        try:
            a = asyncio.run(first.generate(dev_request))
            b = asyncio.run(second.generate(dev_request))
        finally:
            first.close()
            second.close()

        assert a.to_dict() == b.to_dict()

    def test_clock_only_moves_timestamps(self, dev_request):
        first = make_orchestrator(ManualClock())
        second = make_orchestrator(ManualClock(datetime(2026, 6, 1, tzinfo=timezone.utc)))
        try:
            a = asyncio.run(first.generate(dev_request))
            b = asyncio.run(second.generate(dev_request))
        finally:
            first.close()
            second.close()

        assert a.id == b.id
        assert a.template.phases == b.template.phases
        assert a.predictions == b.predictions
        assert a.template.optimization_history[0].timestamp != b.template.optimization_history[0].timestamp

    def test_unseeded_runs_differ(self, dev_request):
        orchestrator = make_orchestrator(seed=None)
        try:
            a = asyncio.run(orchestrator.generate(dev_request))
            b = asyncio.run(orchestrator.generate(dev_request))
        finally:
            orchestrator.close()

        assert a.id != b.id


class TestPublishing:

    def test_completed_session_published(self, orchestrator, services, dev_request):
        session = asyncio.run(orchestrator.generate(dev_request))

        assert orchestrator.get_generated_session(session.id) == session
        log = services.store.get_generation_log(session.id)
        assert log.duration == session.template.estimated_duration
        assert log.predicted_success == session.predictions.success_probability
        records = services.store.list_optimization_records(session.id)
        assert [r["method"] for r in records] == [m.value for m in methods(session)]

    def test_unknown_session_lookup(self, orchestrator):
        assert orchestrator.get_generated_session("gen_missing") is None

    def test_store_failure_does_not_fail_generation(self, orchestrator, services, dev_request):
        with patch.object(services.store, "save_generation_log", side_effect=RuntimeError("db down")):
            session = asyncio.run(orchestrator.generate(dev_request))

        assert orchestrator.get_generated_session(session.id) is not None


class TestStages:

    def test_listener_sees_every_stage_in_order(self, services, dev_request):
        seen = []
        orchestrator = GenerationOrchestrator(services, stage_listener=lambda user, stage: seen.append(stage))
        try:
            asyncio.run(orchestrator.generate(dev_request))
        finally:
            orchestrator.close()

        assert seen == [
            GenerationStage.RECEIVED,
            GenerationStage.ANALYZING_CONTEXT,
            GenerationStage.SELECTING_BASELINE,
            GenerationStage.EVOLVING,
            GenerationStage.REFINING_SURROGATE,
            GenerationStage.REFINING_FEEDBACK,
            GenerationStage.PREDICTING,
            GenerationStage.GENERATING_ALTERNATIVES,
            GenerationStage.COMPLETED,
        ]

    def test_stage_timings_recorded(self, orchestrator, dev_request):
        timings = asyncio.run(orchestrator.generate(dev_request)).metadata.stage_timings

        assert "evolving" in timings
        assert all(value == 0.0 for value in timings.values())


class TestCancellation:

    def test_newer_request_supersedes(self, orchestrator, services, request_factory):
        older = request_factory(target_duration=60)
        newer = request_factory(target_duration=120)

        async def scenario():
            first = asyncio.ensure_future(orchestrator.generate(older))
            await asyncio.sleep(0)
            second = await orchestrator.generate(newer)
            with pytest.raises(GenerationCancelled) as exc:
                await first
            return second, exc.value

        session, error = asyncio.run(scenario())

        assert error.reason == "superseded"
        assert error.error_code == "CANCELLED"
        assert 105 <= session.template.estimated_duration <= 135
        assert services.cache.get_stats()["keys"] == 1
        assert list(services.store._generation_logs) == [session.id]

    def test_explicit_cancel(self, services, dev_request):
        seen = []
        orchestrator = GenerationOrchestrator(services, stage_listener=lambda user, stage: seen.append(stage))

        async def scenario():
            task = asyncio.ensure_future(orchestrator.generate(dev_request))
            await asyncio.sleep(0)
            assert orchestrator.is_active("user-1")
            assert orchestrator.cancel("user-1") is True
            with pytest.raises(GenerationCancelled) as exc:
                await task
            return exc.value

        try:
            error = asyncio.run(scenario())
        finally:
            orchestrator.close()

        assert error.reason == "cancelled"
        assert seen[-1] == GenerationStage.CANCELLED
        assert GenerationStage.COMPLETED not in seen
        assert services.cache.get_stats()["keys"] == 0
        assert services.store._generation_logs == {}

    def test_cancel_while_evolving(self, services, dev_request):
        seen = []

        def listener(user_id, stage):
            seen.append(stage)
            if stage == GenerationStage.EVOLVING:
                orchestrator.cancel(user_id)

        orchestrator = GenerationOrchestrator(services, stage_listener=listener)
        try:
            with pytest.raises(GenerationCancelled) as exc:
                asyncio.run(orchestrator.generate(dev_request))
        finally:
            orchestrator.close()

        assert exc.value.reason == "cancelled"
        assert GenerationStage.EVOLVING in seen
        assert GenerationStage.COMPLETED not in seen
        assert seen[-1] == GenerationStage.CANCELLED
        assert services.cache.get_stats()["keys"] == 0
        assert services.store._generation_logs == {}
        assert not orchestrator.is_active(dev_request.user_id)

    def test_superseded_while_evolving(self, services, request_factory):
        seen = []
        newer = []

        def listener(user_id, stage):
            seen.append(stage)
            if stage == GenerationStage.EVOLVING and not newer:
                newer.append(asyncio.ensure_future(
                    orchestrator.generate(request_factory(target_duration=120))
                ))

        orchestrator = GenerationOrchestrator(services, stage_listener=listener)

        async def scenario():
            with pytest.raises(GenerationCancelled) as exc:
                await orchestrator.generate(request_factory(target_duration=60))
            return exc.value, await newer[0]

        try:
            error, session = asyncio.run(scenario())
        finally:
            orchestrator.close()

        assert error.reason == "superseded"
        assert seen.count(GenerationStage.COMPLETED) == 1
        assert seen.index(GenerationStage.CANCELLED) < seen.index(GenerationStage.COMPLETED)
        assert 105 <= session.template.estimated_duration <= 135
        assert services.cache.get_stats()["keys"] == 1
        assert list(services.store._generation_logs) == [session.id]

    def test_cancel_without_active_generation(self, orchestrator):
        assert orchestrator.cancel("user-1") is False

    def test_other_users_unaffected(self, orchestrator, request_factory):
        async def scenario():
            return await asyncio.gather(
                orchestrator.generate(request_factory(user_id="alice")),
                orchestrator.generate(request_factory(user_id="bob")),
            )

        alice, bob = asyncio.run(scenario())

        assert alice.user_id == "alice"
        assert bob.user_id == "bob"


class TestBudget:

    def test_exhausted_budget_returns_partial(self, dev_request):
        clock = ManualClock()
        orchestrator = make_orchestrator(clock=clock, model=SlowModel(clock))
        try:
            session = asyncio.run(orchestrator.generate(dev_request))
        finally:
            orchestrator.close()

        assert session.metadata.partial is True
        assert session.metadata.generations_run == 0
        assert session.alternatives == ()
        assert "surrogate" not in session.metadata.algorithms_used
        assert 75 <= session.template.estimated_duration <= 105
        assert 0.0 <= session.predictions.success_probability <= 1.0

    def test_hard_ceiling_raises_timeout(self, orchestrator, services, dev_request):
        with patch("services.session_generation.orchestrator.HARD_TIMEOUT_FACTOR", 0.0):
            with pytest.raises(GenerationTimeout):
                asyncio.run(orchestrator.generate(dev_request))

        assert services.cache.get_stats()["keys"] == 0


class TestDegradation:

    def test_model_unavailable(self, dev_request):
        orchestrator = make_orchestrator(model=UnavailableModel())
        try:
            session = asyncio.run(orchestrator.generate(dev_request))
        finally:
            orchestrator.close()

        assert "surrogate" in session.metadata.degraded_stages
        assert "model" in session.metadata.degraded_stages
        assert session.predictions.success_probability == 0.5
        assert 75 <= session.template.estimated_duration <= 105

    def test_failing_stage_degrades(self, orchestrator, dev_request):
        with patch(
            "services.session_generation.orchestrator.AlternativesGenerator.generate",
            side_effect=RuntimeError("boom"),
        ):
            session = asyncio.run(orchestrator.generate(dev_request))

        assert session.alternatives == ()
        assert "alternatives" in session.metadata.degraded_stages


class TestFeedbackLoop:

    def test_history_applies_feedback_refinement(self, services, dev_request):
        entries = [make_entry(str(i)) for i in range(3)]
        services.snapshots.replace(lambda s: LearningSnapshot(
            s.model_weights, s.fitness_weights, s.feedback_table.with_entries(entries), s.version + 1,
        ))
        orchestrator = GenerationOrchestrator(services)
        try:
            session = asyncio.run(orchestrator.generate(dev_request))
        finally:
            orchestrator.close()

        assert "feedback" in session.metadata.algorithms_used
        assert OptimizationMethod.FEEDBACK in methods(session)
        assert 75 <= session.template.estimated_duration <= 105

    def test_record_outcome(self, orchestrator, dev_request):
        session = asyncio.run(orchestrator.generate(dev_request))
        ack = orchestrator.record_outcome(
            session.id,
            {"success_score": 0.9, "actual_duration": 88},
            FEEDBACK,
            outcomes=["module split"],
        )

        assert ack.accepted is True
        assert ack.queued == 1

    def test_record_outcome_rejects_bad_payload(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.record_outcome("gen_1", {"success_score": 2.0}, {})

    def test_record_outcome_rejects_missing_payload(self, orchestrator):
        with pytest.raises(ValidationError) as exc:
            orchestrator.record_outcome("gen_1", None, FEEDBACK)

        assert exc.value.field == "outcome"
        assert exc.value.error_code == "VALIDATION_ERROR_OUTCOME"

    def test_generate_folds_due_outcomes(self, orchestrator, services, clock, dev_request):
        first = asyncio.run(orchestrator.generate(dev_request))
        orchestrator.record_outcome(first.id, {"success_score": 0.9, "actual_duration": 88}, FEEDBACK)
        clock.advance(services.recorder.interval_s)

        asyncio.run(orchestrator.generate(dev_request))

        assert services.recorder.pending_count == 0
        assert services.snapshots.current().revision == 1
        assert services.store.get_learning_state().folded_entries == 1

    def test_outcomes_wait_for_fold_interval(self, orchestrator, services, dev_request):
        first = asyncio.run(orchestrator.generate(dev_request))
        orchestrator.record_outcome(first.id, {"success_score": 0.9, "actual_duration": 88}, FEEDBACK)

        asyncio.run(orchestrator.generate(dev_request))

        assert services.recorder.pending_count == 1
        assert services.store.get_learning_state() is None


class TestBatch:

    def test_batch_with_invalid_item(self, orchestrator, request_factory):
        requests = [
            request_factory(user_id="alice"),
            {"user_id": "bob", "session_type": "development", "objectives": []},
            request_factory(user_id="carol", session_type="learning", target_duration=60),
            request_factory(user_id="alice", target_duration=70),
            request_factory(user_id="dave", session_type="review", target_duration=45),
        ]

        results = asyncio.run(orchestrator.batch_generate(requests, max_concurrency=2))

        assert [r.index for r in results] == [0, 1, 2, 3, 4]
        assert [r.status for r in results] == [
            ResultStatus.COMPLETED,
            ResultStatus.VALIDATION_ERROR,
            ResultStatus.COMPLETED,
            ResultStatus.COMPLETED,
            ResultStatus.COMPLETED,
        ]
        assert results[1].user_id == "bob"
        assert results[1].error_code == "VALIDATION_ERROR_OBJECTIVES"
        assert len({r.session.id for r in results if r.ok}) == 4
        assert 55 <= results[3].session.template.estimated_duration <= 85

    def test_batch_result_serializes(self, orchestrator, dev_request):
        result = asyncio.run(orchestrator.batch_generate([dev_request]))[0]
        data = result.to_dict()

        assert data["status"] == "completed"
        assert data["session"]["id"] == result.session.id

    def test_batch_releases_user_locks(self, orchestrator, request_factory):
        requests = [
            request_factory(user_id="alice"),
            request_factory(user_id="alice", target_duration=70),
            request_factory(user_id="bob"),
            {"user_id": "carol", "session_type": "development", "objectives": []},
        ]

        results = asyncio.run(orchestrator.batch_generate(requests, max_concurrency=3))

        assert [r.ok for r in results] == [True, True, True, False]
        assert orchestrator._user_locks == {}
        assert orchestrator._lock_users == {}

    def test_empty_batch(self, orchestrator):
        assert asyncio.run(orchestrator.batch_generate([])) == []

    def test_batch_timeouts_reported(self, orchestrator, dev_request):
        with patch("services.session_generation.orchestrator.HARD_TIMEOUT_FACTOR", 0.0):
            results = asyncio.run(orchestrator.batch_generate([dev_request]))

        assert results[0].status == ResultStatus.TIMEOUT
        assert results[0].error_code == "TIMEOUT"


def test_services_released_on_close(store, clock):
    services = GenerationServices(store=store, clock=clock, seed=TEST_SEED, eval_workers=0).bootstrap()
    orchestrator = GenerationOrchestrator(services)
    assert services.ref_count == 1

    orchestrator.close()

    assert services.closed is True
