from __future__ import annotations

import threading
from pathlib import Path

import pytest
from conftest import (
    CRM_FILES,
    PipelineHarness,
    RecordingApplier,
    ScriptedRunner,
    StubGenerator,
    failing,
    make_settings,
    passing,
)

from change_pipeline.collaborators.generators import TemplateCodeGenerator
from change_pipeline.collaborators.notifiers import InMemoryNotifier
from change_pipeline.coordinator import PipelineCoordinator
from change_pipeline.errors import (
    ConcurrentManualRun,
    Duplicate,
    InvalidPrompt,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
)
from change_pipeline.events import (
    TASK_CREATED,
    TASK_DELETED,
    TASK_STATUS_CHANGED,
    TASKS_CLEARED,
    TEST_COMPLETED,
    OrderedEventConsumer,
)
from change_pipeline.models import ErrorClass, RunMode, StagedFile, TaskStatus
from change_pipeline.storage.memory import InMemoryChangeStore


def _in_thread(fn, *args):
    results: list = []
    errors: list[BaseException] = []

    def _target() -> None:
        try:
            results.append(fn(*args))
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    worker = threading.Thread(target=_target)
    worker.start()
    return worker, results, errors


@pytest.mark.parametrize("prompt", ["", "   \n"])
def test_blank_prompt_is_rejected(harness: PipelineHarness, prompt: str) -> None:
    with pytest.raises(InvalidPrompt):
        harness.coordinator.submit_task(prompt)

    assert harness.store.list_tasks() == []


def test_submit_creates_task_and_publishes_event(harness: PipelineHarness) -> None:
    task = harness.coordinator.submit_task("Add login page")

    assert task.status is TaskStatus.CREATED
    assert task.version == 0
    assert harness.notifier.kinds(task.task_id) == [TASK_CREATED]


def test_duplicate_submission_inside_window(harness: PipelineHarness) -> None:
    first = harness.coordinator.submit_task("Add login page", idempotency_key="req-1")

    with pytest.raises(Duplicate) as excinfo:
        harness.coordinator.submit_task("Add login page", idempotency_key="req-1")

    assert excinfo.value.task_id == first.task_id
    assert len(harness.store.list_tasks()) == 1

    harness.clock.advance(61)
    second = harness.coordinator.submit_task("Add login page", idempotency_key="req-1")
    assert second.task_id != first.task_id


def test_submissions_without_key_are_never_deduplicated(harness: PipelineHarness) -> None:
    harness.coordinator.submit_task("Add login page")
    harness.coordinator.submit_task("Add login page")

    assert len(harness.store.list_tasks()) == 2


def test_crm_request_reaches_pending_approval(harness: PipelineHarness) -> None:
    outcome = harness.coordinator.process_task("Build CRM system")

    task = outcome.task
    assert not outcome.discarded
    assert outcome.report.success
    assert task.status is TaskStatus.PENDING_APPROVAL
    assert task.test_url == f"http://localhost:8888/api/pipeline/test/auto/{task.task_id}"
    assert task.test_attempts == 1
    assert task.error is None
    assert harness.generator.calls == [("Build CRM system", ["login", "dashboard"])]
    assert len(harness.coordinator.get_proposals(task_id=task.task_id)) == 1


def test_unfixable_request_fails_with_fallback_artifact(make_harness) -> None:
    harness = make_harness(
        runner=ScriptedRunner(failing("Test timeout of 15000ms exceeded.")),
        max_test_attempts=2,
    )

    outcome = harness.coordinator.process_task("x")

    task = outcome.task
    assert task.status is TaskStatus.FAILED
    assert task.test_url == f"http://localhost:8888/api/pipeline/test/fallback/{task.task_id}"
    assert task.test_attempts == 2
    assert task.error_class is ErrorClass.TIMEOUT
    assert task.error and task.error.startswith("timeout:")
    assert harness.sleeps == [2.0]
    assert harness.coordinator.get_proposals(task_id=task.task_id) == []


def test_stage_uses_generator_and_snapshots_originals(make_harness) -> None:
    applier = RecordingApplier(originals={"frontend/src/pages/Crm.jsx": "old crm page"})
    harness = make_harness(applier=applier)
    task = harness.coordinator.submit_task("Build CRM system")

    staged = harness.coordinator.stage_task(task.task_id)

    assert staged.status is TaskStatus.STAGED
    assert staged.staged_files == CRM_FILES
    assert staged.original_content == {"frontend/src/pages/Crm.jsx": "old crm page"}
    assert staged.new_content["backend/src/routes/crmRoutes.js"] == CRM_FILES[1].content
    assert staged.test_instructions == "Open /crm and verify the CRM heading."


def test_stage_is_idempotent(harness: PipelineHarness) -> None:
    first = harness.staged_task()
    second = harness.coordinator.stage_task(first.task_id, CRM_FILES)

    assert second.version == first.version
    assert harness.generator.calls == []


def test_stage_with_empty_generation_is_rejected(make_harness) -> None:
    harness = make_harness(generator=StubGenerator(files=[]))
    task = harness.coordinator.submit_task("Add login page")

    with pytest.raises(PreconditionFailed):
        harness.coordinator.stage_task(task.task_id)

    assert harness.coordinator.get_task(task.task_id).status is TaskStatus.CREATED


def test_stage_after_delete_is_an_invalid_transition(harness: PipelineHarness) -> None:
    task = harness.coordinator.submit_task("Add login page")
    harness.coordinator.delete_task(task.task_id)

    with pytest.raises(InvalidTransition):
        harness.coordinator.stage_task(task.task_id, CRM_FILES)


def test_run_test_requires_staged_files(harness: PipelineHarness) -> None:
    task = harness.coordinator.submit_task("Add login page")

    with pytest.raises(PreconditionFailed):
        harness.coordinator.run_test(task.task_id)

    assert harness.runner.calls == []


def test_run_test_of_unknown_task(harness: PipelineHarness) -> None:
    with pytest.raises(NotFound):
        harness.coordinator.run_test("missing")


def test_failed_retest_never_moves_status_backward(make_harness) -> None:
    harness = make_harness(runner=ScriptedRunner(passing(), failing("TypeError: boom")))
    task = harness.pending_task()

    outcome = harness.coordinator.run_test(task.task_id)

    assert not outcome.report.success
    assert outcome.task.status is TaskStatus.PENDING_APPROVAL
    assert outcome.task.error_class is ErrorClass.UNKNOWN
    assert len(harness.coordinator.get_proposals(task_id=task.task_id)) == 1


def test_successful_retest_keeps_the_existing_proposals(harness: PipelineHarness) -> None:
    task = harness.pending_task()
    before = harness.coordinator.get_proposals(task_id=task.task_id)

    outcome = harness.coordinator.run_test(task.task_id)

    assert outcome.task.status is TaskStatus.PENDING_APPROVAL
    assert harness.coordinator.get_proposals(task_id=task.task_id) == before


def test_regenerated_files_replace_the_staged_set(make_harness) -> None:
    regenerated = [StagedFile(path="frontend/src/pages/Login.jsx", content="login")]
    harness = make_harness(
        runner=ScriptedRunner(failing("No staged files found"), passing()),
        generator=StubGenerator(files=regenerated),
    )
    task = harness.coordinator.submit_task("Add login page")
    harness.coordinator.stage_task(task.task_id, CRM_FILES)

    outcome = harness.coordinator.run_test(task.task_id)

    assert outcome.task.status is TaskStatus.PENDING_APPROVAL
    assert outcome.task.staged_files == regenerated


def test_delete_during_automatic_run_discards_result(harness: PipelineHarness) -> None:
    task = harness.staged_task()
    release = harness.runner.block_until_released()

    worker, results, errors = _in_thread(harness.coordinator.run_test, task.task_id)
    assert harness.runner.started.wait(timeout=5)
    deleted = harness.coordinator.delete_task(task.task_id)
    release.set()
    worker.join(timeout=10)

    assert errors == []
    [outcome] = results
    assert deleted.status is TaskStatus.DELETED
    assert outcome.discarded
    assert outcome.report.success
    assert harness.coordinator.get_task(task.task_id).status is TaskStatus.DELETED
    assert harness.coordinator.get_proposals(task_id=task.task_id) == []
    assert TEST_COMPLETED not in harness.notifier.kinds(task.task_id)


def test_delete_during_manual_run_cancels_it(harness: PipelineHarness) -> None:
    task = harness.staged_task()
    release = harness.runner.block_until_released()

    worker, results, errors = _in_thread(harness.coordinator.run_test, task.task_id, RunMode.MANUAL)
    assert harness.runner.started.wait(timeout=5)
    harness.coordinator.delete_task(task.task_id)
    worker.join(timeout=10)
    release.set()

    assert errors == []
    [outcome] = results
    assert outcome.discarded
    assert outcome.report.cancelled
    assert not harness.coordinator.manual_runs.is_active(task.task_id)
    event = [item for item in harness.notifier.events if item.kind == TASK_DELETED][-1]
    assert event.payload == {"cancelled_manual_run": True}


def test_cancelled_manual_run_fails_the_task(harness: PipelineHarness) -> None:
    task = harness.staged_task()
    release = harness.runner.block_until_released()

    worker, results, errors = _in_thread(harness.coordinator.run_test, task.task_id, RunMode.MANUAL)
    assert harness.runner.started.wait(timeout=5)
    harness.coordinator.cancel_test(task.task_id)
    worker.join(timeout=10)
    release.set()

    assert errors == []
    [outcome] = results
    assert outcome.report.cancelled
    assert outcome.task.status is TaskStatus.FAILED
    assert outcome.task.error == "Manual test run cancelled"


def test_second_manual_run_is_refused(harness: PipelineHarness) -> None:
    task = harness.staged_task()
    release = harness.runner.block_until_released()

    worker, results, errors = _in_thread(harness.coordinator.run_test, task.task_id, RunMode.MANUAL)
    assert harness.runner.started.wait(timeout=5)
    try:
        with pytest.raises(ConcurrentManualRun):
            harness.coordinator.run_test(task.task_id, RunMode.MANUAL)
    finally:
        release.set()
        worker.join(timeout=10)

    assert errors == []
    assert results[0].task.status is TaskStatus.PENDING_APPROVAL


def test_cancel_without_active_run(harness: PipelineHarness) -> None:
    task = harness.staged_task()

    with pytest.raises(PreconditionFailed):
        harness.coordinator.cancel_test(task.task_id)


def test_runner_crash_outside_the_loop_marks_task_failed(harness: PipelineHarness, monkeypatch) -> None:
    task = harness.staged_task()

    def _explode(*args, **kwargs):
        raise RuntimeError("graph blew up")

    monkeypatch.setattr(harness.coordinator.orchestrator, "run_tests", _explode)

    with pytest.raises(RuntimeError):
        harness.coordinator.run_test(task.task_id)

    stored = harness.coordinator.get_task(task.task_id)
    assert stored.status is TaskStatus.FAILED
    assert stored.error == "Test run aborted: graph blew up"


def test_clear_all_tasks_purges_everything(harness: PipelineHarness) -> None:
    harness.coordinator.submit_task("Add login page")
    harness.pending_task()

    removed = harness.coordinator.clear_all_tasks()

    assert removed == 2
    assert harness.coordinator.get_tasks(include_deleted=True) == []
    assert harness.coordinator.get_proposals() == []
    assert harness.notifier.kinds("*") == [TASKS_CLEARED]


def test_get_tasks_hides_deleted_by_default(harness: PipelineHarness) -> None:
    kept = harness.coordinator.submit_task("Add login page")
    gone = harness.coordinator.submit_task("Add dashboard")
    harness.coordinator.delete_task(gone.task_id)

    assert [task.task_id for task in harness.coordinator.get_tasks()] == [kept.task_id]
    assert len(harness.coordinator.get_tasks(include_deleted=True)) == 2


def test_events_are_ordered_and_follow_the_lifecycle(harness: PipelineHarness) -> None:
    task = harness.pending_task()
    consumer = OrderedEventConsumer()

    accepted = [consumer.offer(event) for event in harness.notifier.events]
    replayed = consumer.offer(harness.notifier.events[0])

    assert all(accepted)
    assert not replayed
    ids = [event.event_id for event in consumer.accepted]
    assert ids == sorted(ids) and len(set(ids)) == len(ids)
    transitions = [
        (event.payload["from"], event.payload["to"])
        for event in consumer.accepted
        if event.subject_id == task.task_id and event.kind == TASK_STATUS_CHANGED
    ]
    assert transitions == [
        ("created", "staged"),
        ("staged", "testing"),
        ("testing", "tested"),
        ("tested", "pending_approval"),
    ]


def test_process_task_with_template_generator(tmp_path: Path) -> None:
    runner = ScriptedRunner(passing())
    coordinator = PipelineCoordinator(
        store=InMemoryChangeStore(),
        generator=TemplateCodeGenerator(),
        runner=runner,
        applier=RecordingApplier(),
        notifier=InMemoryNotifier(),
        settings=make_settings(tmp_path),
        sleep=lambda _: None,
    )

    outcome = coordinator.process_task("Build CRM system")

    assert outcome.task.status is TaskStatus.PENDING_APPROVAL
    assert [item.path for item in outcome.task.staged_files] == [
        "frontend/src/pages/Login.jsx",
        "frontend/src/pages/Dashboard.jsx",
        "backend/src/routes/generatedRoutes.js",
    ]
    assert "frontend/src/pages/Dashboard.jsx" in runner.calls[0]["files"]


def test_delete_right_before_a_manual_run_starts_cancels_it(harness: PipelineHarness, monkeypatch) -> None:
    task = harness.staged_task()
    run_tests = harness.coordinator.orchestrator.run_tests
    deleted = []

    def _delete_first(*args, **kwargs):
        deleted.append(harness.coordinator.delete_task(task.task_id))
        return run_tests(*args, **kwargs)

    monkeypatch.setattr(harness.coordinator.orchestrator, "run_tests", _delete_first)

    outcome = harness.coordinator.run_test(task.task_id, RunMode.MANUAL)

    assert deleted[0].status is TaskStatus.DELETED
    assert harness.runner.calls == []
    assert outcome.report.cancelled
    assert outcome.discarded
    assert not harness.coordinator.manual_runs.is_active(task.task_id)
    event = [item for item in harness.notifier.events if item.kind == TASK_DELETED][-1]
    assert event.payload == {"cancelled_manual_run": True}


def test_manual_request_landing_before_the_browser_starts_is_concurrent(
    harness: PipelineHarness, monkeypatch
) -> None:
    task = harness.staged_task()
    run_tests = harness.coordinator.orchestrator.run_tests
    refused = []

    def _second_request_first(*args, **kwargs):
        with pytest.raises(ConcurrentManualRun) as excinfo:
            harness.coordinator.run_test(task.task_id, RunMode.MANUAL)
        refused.append(excinfo.value)
        return run_tests(*args, **kwargs)

    monkeypatch.setattr(harness.coordinator.orchestrator, "run_tests", _second_request_first)

    outcome = harness.coordinator.run_test(task.task_id, RunMode.MANUAL)

    assert len(refused) == 1
    assert outcome.task.status is TaskStatus.PENDING_APPROVAL
    assert len(harness.runner.calls) == 1


def test_refused_manual_run_releases_the_slot(harness: PipelineHarness) -> None:
    task = harness.coordinator.submit_task("Build CRM system")

    with pytest.raises(PreconditionFailed):
        harness.coordinator.run_test(task.task_id, RunMode.MANUAL)

    assert not harness.coordinator.manual_runs.is_active(task.task_id)
