import queue
from datetime import datetime

import pytest

from ciexporter.scheduler import Scheduler, SchedulerConfig, TaskController
from ciexporter.schemas import Project, Ref, RefKind, TaskType, Wildcard
from ciexporter.store import MemoryStore


class _RecordingPuller:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def _record(self, name, arg):
        self.calls.append((name, arg))
        if self.fail:
            raise RuntimeError("failure")

    def pull_projects_from_wildcard(self, wildcard):
        self._record("wildcard", wildcard)

    def pull_refs_from_project(self, project):
        self._record("refs", project)

    def pull_ref_metrics(self, ref):
        self._record("metrics", ref)


def _scheduler(puller=None, size=100, wildcards=()):
    store = MemoryStore()
    return Scheduler(
        store,
        TaskController(size),
        puller=puller or _RecordingPuller(),
        wildcards=wildcards,
        consume=False,
    )


def test_task_controller_runs_jobs_in_order():
    tc = TaskController(10)
    seen = []
    tc.register(TaskType.PULL_METRICS, lambda value: seen.append(value))
    tc.add_job(TaskType.PULL_METRICS, "a")
    tc.add_job(TaskType.PULL_METRICS, "b")
    assert len(tc) == 2
    assert tc.run_pending() == 2
    assert seen == ["a", "b"]
    assert len(tc) == 0


def test_task_controller_unknown_and_full():
    tc = TaskController(1)
    with pytest.raises(KeyError):
        tc.add_job(TaskType.PULL_METRICS)
    tc.register(TaskType.PULL_METRICS, lambda: None)
    tc.add_job(TaskType.PULL_METRICS)
    with pytest.raises(queue.Full):
        tc.add_job(TaskType.PULL_METRICS)


def test_task_controller_survives_failing_handler():
    tc = TaskController(10)

    def boom():
        raise RuntimeError("x")

    tc.register(TaskType.PULL_METRICS, boom)
    tc.add_job(TaskType.PULL_METRICS)
    assert tc.run_pending() == 1


def test_schedule_task_deduplicates():
    s = _scheduler()
    ref = Ref(Project("foo"), RefKind.BRANCH, "main")
    assert s.schedule_task(TaskType.PULL_REF_METRICS, ref.key(), ref) is True
    assert s.schedule_task(TaskType.PULL_REF_METRICS, ref.key(), ref) is False
    assert len(s.tasks) == 1


def test_schedule_task_queue_full():
    s = _scheduler(size=1)
    assert s.schedule_task(TaskType.PULL_METRICS, "_") is True
    assert s.schedule_task(TaskType.PULL_REFS_FROM_PROJECTS, "_") is False


def test_schedule_task_without_handler():
    s = _scheduler()
    assert s.schedule_task(TaskType.GARBAGE_COLLECT_REFS, "_") is False
    assert len(s.tasks) == 0


def test_ref_metrics_handler_unqueues_even_on_error():
    puller = _RecordingPuller(fail=True)
    s = _scheduler(puller)
    ref = Ref(Project("foo"), RefKind.BRANCH, "main")
    assert s.schedule_task(TaskType.PULL_REF_METRICS, ref.key(), ref)
    assert s.tasks.run_pending() == 1
    assert puller.calls == [("metrics", ref)]
    assert s.store.queue_task(TaskType.PULL_REF_METRICS, ref.key(), "other") is True


def test_wildcard_handler_raises_and_unqueues():
    puller = _RecordingPuller(fail=True)
    s = _scheduler(puller)
    w = Wildcard(search="bar")
    s.store.queue_task(TaskType.PULL_PROJECTS_FROM_WILDCARD, "0", s.uuid)
    with pytest.raises(RuntimeError):
        s.task_handler_pull_projects_from_wildcard("0", w)
    assert s.store.queue_task(TaskType.PULL_PROJECTS_FROM_WILDCARD, "0", s.uuid) is True


def test_pull_projects_from_wildcards_schedules_each():
    puller = _RecordingPuller()
    w1, w2 = Wildcard(search="a"), Wildcard(search="b")
    s = _scheduler(puller, wildcards=[w1, w2])
    s.task_handler_pull_projects_from_wildcards()
    assert len(s.tasks) == 2
    s.tasks.run_pending()
    assert puller.calls == [("wildcard", w1), ("wildcard", w2)]
    assert s.tasks.task_scheduling_monitoring[TaskType.PULL_PROJECTS_FROM_WILDCARDS].last


def test_pull_refs_from_projects_and_metrics():
    puller = _RecordingPuller()
    s = _scheduler(puller)
    p = Project("foo")
    ref = Ref(p, RefKind.BRANCH, "main")
    s.store.set_project(p)
    s.store.set_ref(ref)
    s.task_handler_pull_refs_from_projects()
    s.task_handler_pull_metrics()
    assert s.tasks.run_pending() == 2
    assert puller.calls == [("refs", p), ("metrics", ref)]


def test_schedule_on_init():
    puller = _RecordingPuller()
    s = _scheduler(puller)
    p = Project("foo")
    s.store.set_project(p)
    s.schedule({TaskType.PULL_REFS_FROM_PROJECTS: SchedulerConfig(on_init=True)})
    assert s.tasks.run_pending() == 2
    assert puller.calls == [("refs", p)]
    s.stop()


def test_ticker_sets_next_and_disabled_interval():
    s = _scheduler()
    before = datetime.now()
    s.schedule_task_with_ticker(TaskType.PULL_METRICS, 3600)
    s.schedule_task_with_ticker(TaskType.PULL_REFS_FROM_PROJECTS, 0)
    status = s.tasks.task_scheduling_monitoring[TaskType.PULL_METRICS]
    assert status.next > before
    assert TaskType.PULL_REFS_FROM_PROJECTS not in s.tasks.task_scheduling_monitoring
    s.stop()
    assert len(s.tasks) == 0