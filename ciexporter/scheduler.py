"""Task queue and scheduling of the periodic pulls."""

from __future__ import annotations

import collections
import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, Optional

from .schemas import TaskType

log = logging.getLogger(__name__)

DEFAULT_MAXIMUM_JOBS_QUEUE_SIZE = 1000
_CONSUMER_POLL_SECONDS = 0.1


@dataclass
class SchedulerConfig:
    """When a task runs: once at start-up and/or every interval."""

    on_init: bool = False
    scheduled: bool = False
    interval_seconds: int = 0


@dataclass
class TaskSchedulingStatus:
    """Last and next scheduling time of a periodic task."""

    last: Optional[datetime] = None
    next: Optional[datetime] = None


class TaskController:
    """Bounded in-memory job queue dispatching jobs to registered handlers."""

    def __init__(self, maximum_jobs_queue_size: int = DEFAULT_MAXIMUM_JOBS_QUEUE_SIZE) -> None:
        self.buffer_size = maximum_jobs_queue_size
        self.handlers: dict = {}
        self.task_scheduling_monitoring: dict = {}
        self._jobs: collections.deque = collections.deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self.handlers

    def register(self, task_type: TaskType, handler: Callable[..., Any]) -> None:
        self.handlers[TaskType(task_type)] = handler

    def add_job(self, task_type: TaskType, *args: Any) -> None:
        """Queue a job; raise KeyError for an unknown task type, queue.Full when full."""
        task_type = TaskType(task_type)
        if task_type not in self.handlers:
            raise KeyError(f"no handler registered for task type {task_type.value}")
        with self._lock:
            if len(self._jobs) >= self.buffer_size:
                raise queue.Full("queue buffer size exhausted")
            self._jobs.append((task_type, args))

    def run_pending(self) -> int:
        """Run queued jobs, including ones they queue, until empty; return how many ran."""
        count = 0
        while True:
            with self._lock:
                if not self._jobs:
                    return count
                task_type, args = self._jobs.popleft()
            count += 1
            try:
                self.handlers[task_type](*args)
            except Exception:
                log.exception("task %s failed", task_type.value)

    def _monitor_next(self, task_type: TaskType, seconds: int) -> None:
        status = self.task_scheduling_monitoring.setdefault(task_type, TaskSchedulingStatus())
        status.next = datetime.now() + timedelta(seconds=seconds)

    def _monitor_last(self, task_type: TaskType) -> None:
        status = self.task_scheduling_monitoring.setdefault(task_type, TaskSchedulingStatus())
        status.last = datetime.now()


class Scheduler:
    """Schedules pull tasks and runs their handlers against a store and a puller.

    The puller provides pull_projects_from_wildcard, pull_refs_from_project and
    pull_ref_metrics; it may be attached after construction.
    """

    def __init__(
        self,
        store: Any,
        tasks: Optional[TaskController] = None,
        puller: Any = None,
        wildcards: Iterable[Any] = (),
        consume: bool = True,
    ) -> None:
        self.store = store
        self.tasks = tasks if tasks is not None else TaskController()
        self.puller = puller
        self.wildcards = list(wildcards)
        self.consume = consume
        self.uuid = str(uuid.uuid4())
        self._stopped = threading.Event()
        self._threads: list = []

        for task_type, handler in {
            TaskType.PULL_PROJECTS_FROM_WILDCARD: self.task_handler_pull_projects_from_wildcard,
            TaskType.PULL_PROJECTS_FROM_WILDCARDS: self.task_handler_pull_projects_from_wildcards,
            TaskType.PULL_REFS_FROM_PROJECT: self.task_handler_pull_refs_from_project,
            TaskType.PULL_REFS_FROM_PROJECTS: self.task_handler_pull_refs_from_projects,
            TaskType.PULL_REF_METRICS: self.task_handler_pull_ref_metrics,
            TaskType.PULL_METRICS: self.task_handler_pull_metrics,
        }.items():
            self.tasks.register(task_type, handler)

    def _require_puller(self) -> Any:
        if self.puller is None:
            raise RuntimeError("no puller attached to the scheduler")
        return self.puller

    def _unqueue(self, task_type: TaskType, unique_id: str) -> None:
        try:
            self.store.unqueue_task(task_type, unique_id)
        except Exception as exc:
            log.error("unqueueing task %s/%s: %s", task_type.value, unique_id, exc)

    def _start(self, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, daemon=True)
        self._threads.append(thread)
        thread.start()

    def schedule(self, schedules: Mapping[TaskType, SchedulerConfig]) -> None:
        """Run tasks configured on_init now and start tickers for scheduled ones."""
        for task_type, config in schedules.items():
            if config.on_init:
                self.schedule_task(task_type, "_")
            if config.scheduled:
                self.schedule_task_with_ticker(task_type, config.interval_seconds)
        if self.consume:
            self._start(self._consume)

    def _consume(self) -> None:
        while not self._stopped.wait(_CONSUMER_POLL_SECONDS):
            self.tasks.run_pending()

    def schedule_task(self, task_type: TaskType, unique_id: str, *args: Any) -> bool:
        """Queue a task unless it is unknown, the queue is full or it is already queued."""
        task_type = TaskType(task_type)
        if task_type not in self.tasks:
            log.warning("no handler for task %s, skipping scheduling of task..", task_type.value)
            return False
        if len(self.tasks) >= self.tasks.buffer_size:
            log.warning(
                "queue buffer size exhausted, skipping scheduling of task %s/%s..",
                task_type.value,
                unique_id,
            )
            return False
        try:
            queued = self.store.queue_task(task_type, unique_id, self.uuid)
        except Exception as exc:
            log.warning(
                "unable to declare the queueing of %s/%s, skipping scheduling of task: %s",
                task_type.value,
                unique_id,
                exc,
            )
            return False
        if not queued:
            log.debug("task %s/%s already queued, skipping", task_type.value, unique_id)
            return False
        try:
            self.tasks.add_job(task_type, *args)
        except (KeyError, queue.Full) as exc:
            self._unqueue(task_type, unique_id)
            log.warning("scheduling task %s: %s", task_type.value, exc)
            return False
        return True

    def schedule_task_with_ticker(self, task_type: TaskType, interval_seconds: int) -> None:
        """Schedule the task every interval_seconds until stop() is called."""
        task_type = TaskType(task_type)
        if interval_seconds <= 0:
            log.warning("task %s scheduling misconfigured, currently disabled", task_type.value)
            return
        log.debug("task %s scheduled every %ss", task_type.value, interval_seconds)
        self.tasks._monitor_next(task_type, interval_seconds)

        def tick() -> None:
            while not self._stopped.wait(interval_seconds):
                self.schedule_task(task_type, "_")
                self.tasks._monitor_next(task_type, interval_seconds)
            log.info("scheduling of task %s stopped", task_type.value)

        self._start(tick)

    def stop(self) -> None:
        """Stop tickers and the consumer and wait for them."""
        self._stopped.set()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads.clear()

    def task_handler_pull_projects_from_wildcard(self, wildcard_id: str, wildcard: Any) -> None:
        try:
            self._require_puller().pull_projects_from_wildcard(wildcard)
        finally:
            self._unqueue(TaskType.PULL_PROJECTS_FROM_WILDCARD, wildcard_id)

    def task_handler_pull_refs_from_project(self, project: Any) -> None:
        try:
            self._require_puller().pull_refs_from_project(project)
        except Exception as exc:
            # Not retried on purpose.
            log.warning("pulling refs from project %s: %s", project.name, exc)
        finally:
            self._unqueue(TaskType.PULL_REFS_FROM_PROJECT, project.key())

    def task_handler_pull_ref_metrics(self, ref: Any) -> None:
        try:
            self._require_puller().pull_ref_metrics(ref)
        except Exception as exc:
            log.warning("pulling ref metrics of %s/%s: %s", ref.project.name, ref.name, exc)
        finally:
            self._unqueue(TaskType.PULL_REF_METRICS, ref.key())

    def task_handler_pull_projects_from_wildcards(self) -> None:
        task_type = TaskType.PULL_PROJECTS_FROM_WILDCARDS
        try:
            log.info("scheduling projects from wildcards pull (%d wildcards)", len(self.wildcards))
            for index, wildcard in enumerate(self.wildcards):
                self.schedule_task(
                    TaskType.PULL_PROJECTS_FROM_WILDCARD, str(index), str(index), wildcard
                )
        finally:
            self.tasks._monitor_last(task_type)
            self._unqueue(task_type, "_")

    def _stored(self, method: str) -> dict:
        try:
            return getattr(self.store, method)()
        except Exception as exc:
            log.error("reading %s from the store: %s", method, exc)
            return {}

    def task_handler_pull_refs_from_projects(self) -> None:
        task_type = TaskType.PULL_REFS_FROM_PROJECTS
        try:
            projects = self._stored("projects")
            log.info("scheduling refs from projects pull (%d projects)", len(projects))
            for project in projects.values():
                self.schedule_task(TaskType.PULL_REFS_FROM_PROJECT, project.key(), project)
        finally:
            self.tasks._monitor_last(task_type)
            self._unqueue(task_type, "_")

    def task_handler_pull_metrics(self) -> None:
        task_type = TaskType.PULL_METRICS
        try:
            environments = self._stored("environments")
            refs = self._stored("refs")
            log.info(
                "scheduling metrics pull (%d environments, %d refs)", len(environments), len(refs)
            )
            if TaskType.PULL_ENVIRONMENT_METRICS in self.tasks:
                for env in environments.values():
                    self.schedule_task(TaskType.PULL_ENVIRONMENT_METRICS, env.key(), env)
            for ref in refs.values():
                self.schedule_task(TaskType.PULL_REF_METRICS, ref.key(), ref)
        finally:
            self.tasks._monitor_last(task_type)
            self._unqueue(task_type, "_")