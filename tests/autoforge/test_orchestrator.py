"""Tests for the orchestration loop.

Most tests drive ``tick()`` synchronously with a scripted executor so each
recovery branch is deterministic; one test runs the real executor against
the fake Docker client, and two exercise the background loop thread.
"""

import threading
import time

import pytest

from autoforge.error_classifier import RecoveryPolicy
from autoforge.events import EventType
from autoforge.exceptions import (
    CommandTimeoutError,
    CoordinationError,
    LockTimeoutError,
    SecurityViolationError,
    SubtaskExhaustedError,
)
from autoforge.executor import SubtaskResult
from autoforge.file_lock import ProjectFileLock
from autoforge.models import ProjectState, ProjectStatus
from autoforge.orchestrator import Orchestrator, SystemHealth
from tests.fakes import FakeCodeGenerator, FakeDockerClient, FakePlanner, make_analysis, make_subtask


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ScriptedExecutor:
    """Plays back per-subtask outcomes: an exception, or files to add."""

    def __init__(self, outcomes=None):
        self.outcomes = {key: list(value) for key, value in (outcomes or {}).items()}
        self.calls = []

    def execute_subtask(self, subtask, project_files, params=None, project_name=None):
        self.calls.append({"subtask_id": subtask.id, "params": dict(params or {}), "project": project_name})
        queue = self.outcomes.get(subtask.id) or [{f"{subtask.id}.py": "ok\n"}]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        artifacts = dict(project_files)
        artifacts.update(item)
        return SubtaskResult(subtask.id, artifacts, dict(item), {"exit_code": 0}, [])


class KeyedPlanner:
    """Answers by request text."""

    def __init__(self, analyses):
        self.analyses = analyses
        self.calls = []

    def analyze(self, request, context):
        self.calls.append(request)
        return self.analyses[request]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_orchestrator(settings, store, sandbox_manager, clock):
    created = []

    def factory(planner, executor=None, start=True):
        orchestrator = Orchestrator(
            settings,
            store,
            sandbox_manager,
            planner,
            FakeCodeGenerator(),
            task_executor=executor or ScriptedExecutor(),
            clock=clock,
        )
        if start:
            orchestrator.start(run_loop=False)
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.shutdown()


class TestSubmitRequest:
    """Request validation and refusal."""

    def test_refused_when_not_running(self, make_orchestrator):
        orchestrator = make_orchestrator(FakePlanner(make_analysis()), start=False)

        result = orchestrator.submit_request("build it", "demo")

        assert result.success is False
        assert result.code == "SYSTEM_NOT_OPERATIONAL"
        assert orchestrator.queued_projects() == []

    @pytest.mark.parametrize(
        "name", ["", "   ", None, "x" * 200, "bad\x00name", "a_checkpoint_x", "a checkpoint x"]
    )
    def test_invalid_project_name(self, make_orchestrator, name):
        result = make_orchestrator(FakePlanner(make_analysis())).submit_request("build it", name)
        assert result.code == "INVALID_PROJECT_NAME"

    def test_empty_request_text(self, make_orchestrator):
        result = make_orchestrator(FakePlanner(make_analysis())).submit_request("  ", "demo")
        assert result.code == "INVALID_REQUEST"

    def test_duplicate_request_rejected(self, make_orchestrator):
        orchestrator = make_orchestrator(FakePlanner(make_analysis()))
        assert orchestrator.submit_request("build it", "demo").success is True

        result = orchestrator.submit_request("build more", "demo")

        assert result.code == "PROJECT_ALREADY_QUEUED"
        assert orchestrator.queued_projects() == ["demo"]

    def test_tick_does_nothing_when_idle_or_stopped(self, make_orchestrator):
        orchestrator = make_orchestrator(FakePlanner(make_analysis()))
        assert orchestrator.tick() is False
        orchestrator.submit_request("build it", "demo")
        orchestrator.shutdown()
        assert orchestrator.tick() is False


class TestHappyPath:
    """Analysis followed by a full subtask pass."""

    def test_project_completes_in_one_tick(self, make_orchestrator, store):
        planner = FakePlanner(make_analysis(make_subtask("t1"), make_subtask("t2")))
        executor = ScriptedExecutor({"t1": [{"a.py": "a\n"}], "t2": [{"b.py": "b\n"}]})
        orchestrator = make_orchestrator(planner, executor)
        orchestrator.submit_request("build it", "demo", initial_files={"README.md": "hi\n"})

        assert orchestrator.tick() is True

        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert state.execution.completed_ids == ["t1", "t2"]
        assert state.execution.remaining_ids == []
        assert state.context.files == {"README.md": "hi\n", "a.py": "a\n", "b.py": "b\n"}
        assert state.execution.last_checkpoint_id.startswith("project_completed_")
        assert orchestrator.queued_projects() == []
        assert store.load("demo").status == ProjectStatus.COMPLETED_SUCCESSFULLY.value

    def test_planner_context_for_first_analysis(self, make_orchestrator):
        planner = FakePlanner(make_analysis(make_subtask("t1")))
        orchestrator = make_orchestrator(planner)
        orchestrator.submit_request("build it", "demo", initial_files={"a.py": "1"})

        orchestrator.tick()

        request, context = planner.calls[0]
        assert request == "build it"
        assert context == {"files": {"a.py": "1"}, "completed_ids": [], "is_replan": False, "failure_context": None}

    def test_every_transition_is_checkpointed(self, make_orchestrator, store):
        orchestrator = make_orchestrator(FakePlanner(make_analysis(make_subtask("t1"))))
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        ids = [info.checkpoint_id for info in store.list_checkpoints("demo")]
        stages = ["initialization_", "analysis_complete_", "subtask_t1_complete_", "project_completed_"]
        for stage in stages:
            assert any(checkpoint_id.startswith(stage) for checkpoint_id in ids), stage
        assert len(set(ids)) == len(ids)

    def test_events_published(self, make_orchestrator):
        orchestrator = make_orchestrator(FakePlanner(make_analysis(make_subtask("t1"))))
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        events = orchestrator.events.drain()
        statuses = [e.payload["status"] for e in events if e.event_type is EventType.PROJECT_STATUS_CHANGED]
        assert statuses == [
            "analysis_in_progress",
            "analysis_complete",
            "processing_tasks",
            "completed_successfully",
        ]
        task_events = [e.event_type for e in events if e.event_type is not EventType.PROJECT_STATUS_CHANGED]
        assert task_events == [EventType.TASK_STARTED, EventType.TASK_COMPLETED]
        assert all(e.project_name == "demo" for e in events)

    def test_no_subtasks_completes(self, make_orchestrator):
        orchestrator = make_orchestrator(FakePlanner(make_analysis()))
        orchestrator.submit_request("nothing to do", "demo")

        orchestrator.tick()

        assert orchestrator.get_project("demo").status == ProjectStatus.COMPLETED_SUCCESSFULLY.value

    def test_real_executor_end_to_end(self, settings):
        """from_settings wiring with the real executor and a fake Docker client."""
        client = FakeDockerClient()
        generator = FakeCodeGenerator({"main.py": "print('hi')\n"})
        orchestrator = Orchestrator.from_settings(
            settings, FakePlanner(make_analysis(make_subtask("t1"))), generator, docker_client=client
        )
        orchestrator.start(run_loop=False)
        try:
            orchestrator.submit_request("say hi", "demo")
            orchestrator.tick()
        finally:
            orchestrator.shutdown()

        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert state.context.files == {"main.py": "print('hi')\n"}
        assert client.containers.created[0].removed is True


class TestSubtaskRecovery:
    """Classified failures and the recovery branch each one takes."""

    def test_transient_failure_retries_on_next_tick(self, make_orchestrator):
        executor = ScriptedExecutor({"t1": [LockTimeoutError("busy"), {"t1.py": "ok\n"}]})
        orchestrator = make_orchestrator(FakePlanner(make_analysis(make_subtask("t1"))), executor)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()
        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.SUBTASK_PENDING_RETRY.value
        assert state.execution.subtask_attempts == {"t1": 1}
        assert state.execution.last_error.kind == "transient"
        assert state.execution.last_error.recovery_attempted == "RETRY_AS_IS"
        assert orchestrator.queued_projects() == ["demo"]

        orchestrator.tick()
        assert state.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert state.execution.subtask_attempts == {}
        assert state.execution.last_error is None

    def test_retry_waits_for_delay(self, make_orchestrator, clock):
        executor = ScriptedExecutor({"t1": [LockTimeoutError("busy"), {"t1.py": "ok\n"}]})
        orchestrator = make_orchestrator(FakePlanner(make_analysis(make_subtask("t1"))), executor)
        orchestrator.policy = RecoveryPolicy(base_delay_ms=1000)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()
        assert orchestrator.tick() is False
        assert len(executor.calls) == 1

        clock.advance(1.0)
        assert orchestrator.tick() is True
        assert orchestrator.get_project("demo").status == ProjectStatus.COMPLETED_SUCCESSFULLY.value

    def test_timeout_retry_extends_timeout(self, make_orchestrator):
        executor = ScriptedExecutor({"t1": [CommandTimeoutError("slow"), {"t1.py": "ok\n"}]})
        subtask = make_subtask("t1", timeout_ms=1000)
        orchestrator = make_orchestrator(FakePlanner(make_analysis(subtask)), executor)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()
        assert orchestrator.get_project("demo").execution.subtask_params["t1"]["timeout_ms"] == 1500
        orchestrator.tick()

        assert executor.calls[0]["params"] == {}
        assert executor.calls[1]["params"] == {"modification_hint": "timeout", "timeout_ms": 1500}
        assert orchestrator.get_project("demo").execution.subtask_params == {}

    def test_transient_retries_exhausted_halts(self, make_orchestrator):
        executor = ScriptedExecutor({"t1": [LockTimeoutError("busy")]})
        orchestrator = make_orchestrator(FakePlanner(make_analysis(make_subtask("t1"))), executor)
        orchestrator.submit_request("build it", "demo")

        for _ in range(3):
            orchestrator.tick()

        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.FAILED_SUBTASK_UNRECOVERABLE.value
        assert len(executor.calls) == 3
        assert orchestrator.queued_projects() == []

    def test_optional_subtask_skipped(self, make_orchestrator):
        executor = ScriptedExecutor({"t1": [SubtaskExhaustedError("never passes")]})
        analysis = make_analysis(make_subtask("t1", is_optional=True), make_subtask("t2"))
        orchestrator = make_orchestrator(FakePlanner(analysis), executor)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert state.execution.skipped_ids == ["t1"]
        assert state.execution.completed_ids == ["t1", "t2"]

    def test_security_violation_halts_immediately(self, make_orchestrator):
        executor = ScriptedExecutor({"t1": [SecurityViolationError("path escape")]})
        analysis = make_analysis(make_subtask("t1", is_optional=True), make_subtask("t2"))
        orchestrator = make_orchestrator(FakePlanner(analysis), executor)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.FAILED_SUBTASK_UNRECOVERABLE.value
        assert state.execution.last_error.kind == "security_violation"
        assert [call["subtask_id"] for call in executor.calls] == ["t1"]
        assert orchestrator.queued_projects() == []

    def test_missing_subtask_definition_dropped(self, make_orchestrator, store):
        state = ProjectState.new("demo", "build it")
        state.plan = "plan"
        state.metadata.status = ProjectStatus.PROCESSING_TASKS.value
        state.execution.subtasks_full = [make_subtask("t1")]
        state.execution.remaining_ids = ["ghost", "t1"]
        store.save("demo", state)
        orchestrator = make_orchestrator(FakePlanner(make_analysis()))
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        loaded = orchestrator.get_project("demo")
        assert loaded.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert loaded.execution.completed_ids == ["t1"]


class TestReplanning:
    """Re-plans keep completed work and consume project retries."""

    def test_critical_failure_sets_failed_needs_replan(self, make_orchestrator):
        """A coordination failure clears remaining work and keeps completed ids."""
        executor = ScriptedExecutor({"t2": [CoordinationError("dependency missing")]})
        planner = FakePlanner(make_analysis(make_subtask("t1"), make_subtask("t2"), make_subtask("t3")))
        orchestrator = make_orchestrator(planner, executor)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.FAILED_NEEDS_REPLAN.value
        assert state.execution.remaining_ids == []
        assert state.execution.completed_ids == ["t1"]
        assert state.execution.project_retry_attempts == 1
        assert state.execution.replan_reason.startswith("Subtask t2 failed")
        assert state.execution.last_error.recovery_attempted == "REPLAN_FROM_CHECKPOINT"
        assert orchestrator.queued_projects() == ["demo"]

    def test_replan_preserves_completed_work(self, make_orchestrator):
        executor = ScriptedExecutor({"t2": [CoordinationError("dependency missing")]})
        planner = FakePlanner(
            make_analysis(make_subtask("t1"), make_subtask("t2")),
            make_analysis(make_subtask("t1"), make_subtask("t2b")),
        )
        orchestrator = make_orchestrator(planner, executor)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()
        orchestrator.tick()

        _, context = planner.calls[1]
        assert context["is_replan"] is True
        assert context["completed_ids"] == ["t1"]
        assert context["failure_context"]["kind"] == "coordination"
        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert state.execution.completed_ids == ["t1", "t2b"]
        assert [call["subtask_id"] for call in executor.calls] == ["t1", "t2", "t2b"]

    def test_modified_retries_exhausted_escalates_to_replan(self, make_orchestrator):
        executor = ScriptedExecutor({"t1": [SubtaskExhaustedError("tests fail")]})
        orchestrator = make_orchestrator(FakePlanner(make_analysis(make_subtask("t1"))), executor)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()
        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.SUBTASK_PENDING_RETRY.value
        assert state.execution.subtask_params["t1"] == {"modification_hint": "execution"}

        orchestrator.tick()
        assert state.status == ProjectStatus.FAILED_NEEDS_REPLAN.value
        assert state.execution.project_retry_attempts == 1

    def test_project_retries_exhausted_fails_terminally(self, make_orchestrator):
        executor = ScriptedExecutor({"t1": [CoordinationError("always broken")]})
        planner = FakePlanner(make_analysis(make_subtask("t1")))
        orchestrator = make_orchestrator(planner, executor)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()
        orchestrator.tick()

        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.FAILED_TERMINAL.value
        assert len(planner.calls) == 2
        assert orchestrator.queued_projects() == []


class TestProjectLevelErrors:
    """Failures outside the subtask pass."""

    def test_unknown_planner_error_is_terminal(self, make_orchestrator, store):
        orchestrator = make_orchestrator(FakePlanner(ValueError("planner crashed")))
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.FAILED_TERMINAL.value
        assert state.execution.last_error.error_type == "ValueError"
        assert store.load("demo").status == ProjectStatus.FAILED_TERMINAL.value

    def test_transient_planner_error_retried(self, make_orchestrator):
        planner = FakePlanner(ConnectionResetError("reset by peer"), make_analysis(make_subtask("t1")))
        orchestrator = make_orchestrator(planner)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()
        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.ANALYSIS_IN_PROGRESS.value
        assert state.execution.project_retry_attempts == 1

        orchestrator.tick()
        assert state.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value

    def test_lock_held_during_first_checkpoint_is_retried(self, make_orchestrator, store):
        """A busy project lock on a new project delays it without stopping the loop."""
        store.lock_timeout_ms = 100
        orchestrator = make_orchestrator(FakePlanner(make_analysis(make_subtask("t1"))))
        orchestrator.submit_request("build it", "demo")

        holder = ProjectFileLock(store.lock_path("demo"))
        holder.acquire()
        try:
            assert orchestrator.tick() is True
        finally:
            holder.release()

        state = orchestrator.get_project("demo")
        assert orchestrator.health is SystemHealth.READY
        assert state.status == ProjectStatus.NEW.value
        assert state.execution.project_retry_attempts == 1
        assert state.execution.last_error.error_type == "LockTimeoutError"
        assert state.execution.last_checkpoint_id is None
        assert orchestrator.queued_projects() == ["demo"]
        assert store.load("demo") is None

        orchestrator.tick()

        assert state.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert store.load("demo").status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert store.list_checkpoints("demo")[0].checkpoint_id.startswith("initialization_")

    def test_duplicate_subtask_ids_trigger_replan(self, make_orchestrator):
        planner = FakePlanner(
            make_analysis(make_subtask("t1"), make_subtask("t1")),
            make_analysis(make_subtask("t1")),
        )
        orchestrator = make_orchestrator(planner)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()
        assert orchestrator.get_project("demo").status == ProjectStatus.FAILED_NEEDS_REPLAN.value

        orchestrator.tick()
        assert orchestrator.get_project("demo").status == ProjectStatus.COMPLETED_SUCCESSFULLY.value

    def test_planner_dict_result_is_validated(self, make_orchestrator):
        planner = FakePlanner({"understanding": "u", "plan": "p", "subtasks": [{"id": "t1", "runCommand": "true"}]})
        orchestrator = make_orchestrator(planner)
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        assert orchestrator.get_project("demo").status == ProjectStatus.COMPLETED_SUCCESSFULLY.value

    def test_invalid_planner_result_is_coordination_error(self, make_orchestrator):
        orchestrator = make_orchestrator(FakePlanner({"subtasks": [{"id": "t1"}]}))
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        state = orchestrator.get_project("demo")
        assert state.status == ProjectStatus.FAILED_NEEDS_REPLAN.value
        assert state.execution.last_error.kind == "coordination"


class TestProjectLoading:
    """Existing state is resumed; unreadable state is left alone."""

    def test_existing_project_resumes_without_analysis(self, make_orchestrator, store):
        state = ProjectState.new("demo", "build it")
        state.plan = "plan"
        state.metadata.status = ProjectStatus.PROCESSING_TASKS.value
        state.execution.subtasks_full = [make_subtask("t1"), make_subtask("t2")]
        state.execution.completed_ids = ["t1"]
        state.execution.remaining_ids = ["t2"]
        store.save("demo", state)
        planner = FakePlanner(make_analysis())
        executor = ScriptedExecutor()
        orchestrator = make_orchestrator(planner, executor)
        orchestrator.submit_request("continue", "demo")

        orchestrator.tick()

        assert planner.calls == []
        assert [call["subtask_id"] for call in executor.calls] == ["t2"]
        loaded = orchestrator.get_project("demo")
        assert loaded.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert loaded.conversation.current_request == "continue"
        assert loaded.conversation.original_request == "build it"

    def test_corrupt_project_fails_without_overwriting(self, make_orchestrator, store):
        store.project_path("demo").write_text("{oops", encoding="utf-8")
        orchestrator = make_orchestrator(FakePlanner(make_analysis()))
        orchestrator.submit_request("build it", "demo")

        orchestrator.tick()

        assert orchestrator.get_project("demo").status == ProjectStatus.FAILED_TERMINAL.value
        assert orchestrator.get_project("demo").execution.last_error.kind == "serialization"
        assert store.project_path("demo").read_text(encoding="utf-8") == "{oops"
        assert orchestrator.queued_projects() == []

    def test_force_reanalysis_resets_finished_project(self, make_orchestrator):
        planner = FakePlanner(make_analysis(make_subtask("t1")), make_analysis(make_subtask("t9")))
        executor = ScriptedExecutor()
        orchestrator = make_orchestrator(planner, executor)
        orchestrator.submit_request("build it", "demo")
        orchestrator.tick()

        orchestrator.submit_request("rebuild it", "demo", force_reanalysis=True)
        orchestrator.tick()

        state = orchestrator.get_project("demo")
        assert len(planner.calls) == 2
        assert planner.calls[1][0] == "rebuild it"
        assert state.execution.completed_ids == ["t9"]
        assert state.status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        assert "t1.py" in state.context.files

    def test_restore_project_from_checkpoint(self, make_orchestrator, store):
        orchestrator = make_orchestrator(FakePlanner(make_analysis(make_subtask("t1"), make_subtask("t2"))))
        orchestrator.submit_request("build it", "demo")
        orchestrator.tick()
        checkpoint_id = next(
            info.checkpoint_id
            for info in store.list_checkpoints("demo")
            if info.checkpoint_id.startswith("analysis_complete_")
        )

        restored = orchestrator.restore_project("demo", checkpoint_id)

        assert orchestrator.get_project("demo") is restored
        assert restored.status == ProjectStatus.ANALYSIS_COMPLETE.value
        assert restored.execution.remaining_ids == ["t1", "t2"]
        assert restored.execution.restored_from_checkpoint == checkpoint_id


class TestScheduling:
    """Round-robin interleaving across projects."""

    def test_projects_interleave(self, make_orchestrator):
        planner = KeyedPlanner(
            {"build a": make_analysis(make_subtask("a1")), "build b": make_analysis(make_subtask("b1"))}
        )
        executor = ScriptedExecutor({"a1": [LockTimeoutError("busy"), {"a.py": "a\n"}]})
        orchestrator = make_orchestrator(planner, executor)
        orchestrator.submit_request("build a", "alpha")
        orchestrator.submit_request("build b", "beta")

        orchestrator.tick()
        assert orchestrator.queued_projects() == ["beta", "alpha"]
        orchestrator.tick()
        assert orchestrator.queued_projects() == ["alpha"]
        orchestrator.tick()

        assert [call["project"] for call in executor.calls] == ["alpha", "beta", "alpha"]
        assert orchestrator.queued_projects() == []

    def test_system_status(self, make_orchestrator):
        orchestrator = make_orchestrator(FakePlanner(make_analysis()))
        orchestrator.submit_request("build it", "demo")

        status = orchestrator.get_system_status()

        assert status["health"] == "ready"
        assert status["running"] is True
        assert status["queued"] == ["demo"]
        assert status["dropped_events"] == 0

    def test_system_status_while_projects_register(self, make_orchestrator):
        """Status snapshots stay consistent while another thread adds projects."""
        orchestrator = make_orchestrator(FakePlanner(make_analysis()))
        errors = []

        def register():
            for i in range(2000):
                orchestrator._register_project(f"p{i}", ProjectState.new(f"p{i}", "build it"))

        writer = threading.Thread(target=register)
        writer.start()
        try:
            while writer.is_alive():
                try:
                    orchestrator.get_system_status()
                except RuntimeError as e:
                    errors.append(e)
        finally:
            writer.join(5)

        assert errors == []
        assert len(orchestrator.get_system_status()["active_projects"]) == 2000

    def test_system_status_does_not_wait_for_tick(self, make_orchestrator):
        orchestrator = make_orchestrator(FakePlanner(make_analysis()))
        orchestrator.submit_request("build it", "demo")
        orchestrator.tick()
        held = threading.Event()
        release = threading.Event()

        def hold_tick_lock():
            with orchestrator._tick_lock:
                held.set()
                release.wait(5)

        holder = threading.Thread(target=hold_tick_lock)
        holder.start()
        try:
            assert held.wait(5)
            status = orchestrator.get_system_status()
            assert status["active_projects"] == {"demo": ProjectStatus.COMPLETED_SUCCESSFULLY.value}
        finally:
            release.set()
            holder.join(5)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestBackgroundLoop:
    """The loop thread, shutdown and emergency stop."""

    def test_loop_processes_requests_until_shutdown(self, settings, store, sandbox_manager):
        settings.system.main_loop_interval_ms = 10
        orchestrator = Orchestrator(
            settings,
            store,
            sandbox_manager,
            FakePlanner(make_analysis(make_subtask("t1"))),
            FakeCodeGenerator(),
            task_executor=ScriptedExecutor(),
        )
        orchestrator.start()
        orchestrator.submit_request("build it", "demo")

        completed = _wait_for(
            lambda: orchestrator.get_project("demo") is not None
            and orchestrator.get_project("demo").status == ProjectStatus.COMPLETED_SUCCESSFULLY.value
        )
        orchestrator.shutdown(timeout=5)

        assert completed
        assert orchestrator.is_running is False
        assert orchestrator.submit_request("again", "demo").code == "SYSTEM_NOT_OPERATIONAL"

    def test_shutdown_destroys_sandboxes(self, make_orchestrator, sandbox_manager):
        orchestrator = make_orchestrator(FakePlanner(make_analysis()))
        sandbox_manager.create_session()

        orchestrator.shutdown()

        assert sandbox_manager.active_session_ids() == []

    def test_loop_failure_triggers_emergency_stop(self, settings, store, sandbox_manager):
        settings.system.main_loop_interval_ms = 10

        def broken_load(name):
            raise RuntimeError("disk controller on fire")

        store.load = broken_load
        orchestrator = Orchestrator(
            settings, store, sandbox_manager, FakePlanner(make_analysis()), FakeCodeGenerator(),
            task_executor=ScriptedExecutor(),
        )
        orchestrator.start()
        orchestrator.submit_request("build it", "demo")

        failed = _wait_for(lambda: orchestrator.health is SystemHealth.ERROR_LOOP_FAILURE)
        orchestrator.shutdown(timeout=5)

        assert failed
        assert orchestrator.is_running is False
        assert orchestrator.last_global_error["error_type"] == "RuntimeError"
        with pytest.raises(CoordinationError):
            orchestrator.start()
