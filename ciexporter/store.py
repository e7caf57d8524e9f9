"""In-memory state of the exporter: projects, refs, environments, metrics and queued tasks."""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any

from .schemas import Environment, Metric, Project, Ref, TaskType

log = logging.getLogger(__name__)


def metric_log_fields(metric: Metric) -> dict:
    """Return the fields describing a metric in log messages."""
    return {
        "metric-kind": metric.kind,
        "metric-labels": metric.labels,
    }


def _describe(fields: dict) -> str:
    return " ".join(f"{name}={value}" for name, value in fields.items())


def store_get_metric(store: Any, metric: Metric) -> Metric:
    """Return the stored state of a metric; on a store failure log it and return the metric."""
    try:
        return store.get_metric(metric)
    except Exception as exc:  # the store may be any backend
        log.error("reading metric from the store (%s): %s", _describe(metric_log_fields(metric)), exc)
        return metric


def store_set_metric(store: Any, metric: Metric) -> None:
    """Write a metric to the store, logging any failure."""
    try:
        store.set_metric(metric)
    except Exception as exc:
        log.error("writing metric from the store (%s): %s", _describe(metric_log_fields(metric)), exc)


def store_del_metric(store: Any, metric: Metric) -> None:
    """Delete a metric from the store, logging any failure."""
    try:
        store.del_metric(metric.key())
    except Exception as exc:
        log.error("deleting metric from the store (%s): %s", _describe(metric_log_fields(metric)), exc)


class MemoryStore:
    """Thread-safe store keeping everything in process memory.

    Objects are copied on the way in and out, so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._projects: dict = {}
        self._refs: dict = {}
        self._environments: dict = {}
        self._metrics: dict = {}
        self._tasks: dict = {}
        self._lock = threading.RLock()

    # Projects

    def set_project(self, project: Project) -> None:
        with self._lock:
            self._projects[project.key()] = copy.deepcopy(project)

    def get_project(self, project: Project) -> Project:
        """Return the stored version of the project, or the project itself if unknown."""
        with self._lock:
            stored = self._projects.get(project.key())
            return copy.deepcopy(stored) if stored is not None else project

    def project_exists(self, key: str) -> bool:
        with self._lock:
            return key in self._projects

    def projects(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._projects)

    def projects_count(self) -> int:
        with self._lock:
            return len(self._projects)

    # Refs

    def set_ref(self, ref: Ref) -> None:
        with self._lock:
            self._refs[ref.key()] = copy.deepcopy(ref)

    def get_ref(self, ref: Ref) -> Ref:
        """Return the stored version of the ref, or the ref itself if unknown."""
        with self._lock:
            stored = self._refs.get(ref.key())
            return copy.deepcopy(stored) if stored is not None else ref

    def ref_exists(self, key: str) -> bool:
        with self._lock:
            return key in self._refs

    def refs(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._refs)

    def refs_count(self) -> int:
        with self._lock:
            return len(self._refs)

    # Environments

    def set_environment(self, environment: Environment) -> None:
        with self._lock:
            self._environments[environment.key()] = copy.deepcopy(environment)

    def get_environment(self, environment: Environment) -> Environment:
        """Return the stored version of the environment, or the environment itself if unknown."""
        with self._lock:
            stored = self._environments.get(environment.key())
            return copy.deepcopy(stored) if stored is not None else environment

    def environment_exists(self, key: str) -> bool:
        with self._lock:
            return key in self._environments

    def environments(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._environments)

    def environments_count(self) -> int:
        with self._lock:
            return len(self._environments)

    # Metrics

    def set_metric(self, metric: Metric) -> None:
        with self._lock:
            self._metrics[metric.key()] = copy.deepcopy(metric)

    def get_metric(self, metric: Metric) -> Metric:
        """Return the metric carrying the stored value, if the store holds that series."""
        with self._lock:
            stored = self._metrics.get(metric.key())
            result = copy.deepcopy(metric)
            if stored is not None:
                result.value = stored.value
            return result

    def del_metric(self, key: str) -> None:
        with self._lock:
            self._metrics.pop(key, None)

    def metrics(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._metrics)

    # Task deduplication

    @staticmethod
    def _task_key(task_type: TaskType, unique_id: str) -> str:
        return f"{TaskType(task_type).value}:{unique_id}"

    def queue_task(self, task_type: TaskType, unique_id: str, owner: str) -> bool:
        """Declare a task as queued; return False if it already was."""
        key = self._task_key(task_type, unique_id)
        with self._lock:
            if key in self._tasks:
                return False
            self._tasks[key] = owner
            return True

    def unqueue_task(self, task_type: TaskType, unique_id: str) -> None:
        with self._lock:
            self._tasks.pop(self._task_key(task_type, unique_id), None)