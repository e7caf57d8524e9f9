"""Wiring of the exporter's parts and handling of GitLab webhook events."""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Iterable, Optional

from .pulling import Puller
from .scheduler import DEFAULT_MAXIMUM_JOBS_QUEUE_SIZE, Scheduler, TaskController
from .schemas import (
    Environment,
    Project,
    ProjectPullEnvironments,
    ProjectPullRefs,
    Ref,
    RefKind,
    TaskType,
    Wildcard,
    get_ref_regexp,
)

log = logging.getLogger(__name__)


def _ref_filter(refs: ProjectPullRefs, kind: Any) -> Any:
    try:
        ref_kind = RefKind(kind)
    except ValueError:
        raise ValueError(f"invalid ref kind {kind!r}") from None
    if ref_kind is RefKind.BRANCH:
        return ref_kind, refs.branches
    if ref_kind is RefKind.TAG:
        return ref_kind, refs.tags
    return ref_kind, refs.merge_requests


def is_ref_matching_project_pull_refs(refs: ProjectPullRefs, ref: Ref) -> bool:
    """Tell whether a project's ref configuration selects the ref.

    Raises ValueError for an unknown ref kind or an invalid filter expression.
    """
    ref_kind, selection = _ref_filter(refs, ref.kind)
    if not selection.enabled:
        return False
    return bool(get_ref_regexp(refs, ref_kind).search(ref.name))


def is_env_matching_project_pull_environments(
    environments: ProjectPullEnvironments, env: Environment
) -> bool:
    """Tell whether a project's environment configuration selects the environment.

    Raises ValueError for an invalid filter expression.
    """
    if not environments.enabled:
        return False
    try:
        pattern = re.compile(environments.regexp)
    except re.error as exc:
        raise ValueError(f"error parsing regexp: {exc}: `{environments.regexp}`") from None
    return bool(pattern.search(env.name))


def is_ref_matching_wildcard(wildcard: Wildcard, ref: Ref) -> bool:
    """Tell whether a wildcard could discover the ref's project and select the ref."""
    owner = wildcard.owner
    if owner.kind and owner.name not in ref.project.name:
        return False
    return is_ref_matching_project_pull_refs(wildcard.pull.refs, ref)


def is_env_matching_wildcard(wildcard: Wildcard, env: Environment) -> bool:
    """Tell whether a wildcard could discover the environment's project and select it."""
    owner = wildcard.owner
    if owner.kind and owner.name not in env.project_name:
        return False
    return is_env_matching_project_pull_environments(wildcard.pull.environments, env)


class Controller:
    """Holds the GitLab client, the store, the task queue and the puller together."""

    def __init__(
        self,
        gitlab: Any,
        store: Any,
        wildcards: Iterable[Wildcard] = (),
        maximum_jobs_queue_size: int = DEFAULT_MAXIMUM_JOBS_QUEUE_SIZE,
    ) -> None:
        self.gitlab = gitlab
        self.store = store
        self.wildcards = list(wildcards)
        self.tasks = TaskController(maximum_jobs_queue_size)
        self.scheduler = Scheduler(store, self.tasks, wildcards=self.wildcards)
        self.puller = Puller(gitlab, store, self.scheduler)
        self.scheduler.puller = self.puller

    def process_pipeline_event(self, event: dict) -> bool:
        """Handle a pipeline webhook payload; return whether a pull was scheduled."""
        attributes = event.get("object_attributes") or {}
        merge_request = event.get("merge_request") or {}
        project = event.get("project") or {}

        ref_name = attributes.get("ref") or ""
        iid = int(merge_request.get("iid") or 0)
        if iid:
            ref_kind = RefKind.MERGE_REQUEST
            ref_name = str(iid)
        elif attributes.get("tag"):
            ref_kind = RefKind.TAG
        else:
            ref_kind = RefKind.BRANCH

        ref = Ref(Project(name=project.get("path_with_namespace") or ""), ref_kind, ref_name)
        return self.trigger_ref_metrics_pull(ref)

    def _trigger_wildcards(self, ref: Ref) -> bool:
        scheduled = False
        for index, wildcard in enumerate(self.wildcards):
            try:
                matches = is_ref_matching_wildcard(wildcard, ref)
            except ValueError as exc:
                log.warning("checking if the ref matches the wildcard config: %s", exc)
                continue
            if matches:
                if self.scheduler.schedule_task(
                    TaskType.PULL_PROJECTS_FROM_WILDCARD, str(index), str(index), wildcard
                ):
                    scheduled = True
                log.info(
                    "project ref %s/%s not currently exported but matches wildcard %d, "
                    "triggering a pull of the projects from this wildcard",
                    ref.project.name,
                    ref.name,
                    index,
                )
            else:
                log.debug("project ref %s/%s not matching wildcard %d", ref.project.name, ref.name, index)
        log.info("done looking up for wildcards matching the project ref %s/%s", ref.project.name, ref.name)
        return scheduled

    def trigger_ref_metrics_pull(self, ref: Ref) -> bool:
        """Schedule a metrics pull for a ref the exporter is configured to follow.

        Unknown refs of known projects are stored first when their project's
        configuration selects them; refs of unknown projects trigger a pull of
        the wildcards that could discover them. Return whether a task was scheduled.
        """
        try:
            ref_exists = self.store.ref_exists(ref.key())
        except Exception as exc:
            log.error("reading ref %s/%s from the store: %s", ref.project.name, ref.name, exc)
            return False

        if not ref_exists:
            project: Optional[Project] = Project(name=ref.project.name)
            try:
                project_exists = self.store.project_exists(project.key())
            except Exception as exc:
                log.error("reading project %s from the store: %s", project.name, exc)
                return False

            if not project_exists and self.wildcards:
                return self._trigger_wildcards(ref)

            if not project_exists:
                log.info(
                    "ref %s/%s not configured in the exporter, ignoring pipeline webhook",
                    ref.project.name,
                    ref.name,
                )
                return False

            try:
                project = self.store.get_project(project)
            except Exception as exc:
                log.error("reading project %s from the store: %s", ref.project.name, exc)
                return False

            try:
                matches = is_ref_matching_project_pull_refs(project.pull.refs, ref)
            except ValueError as exc:
                log.error("checking if the ref matches the project config: %s", exc)
                return False

            if not matches:
                log.info(
                    "ref %s/%s not configured in the exporter, ignoring pipeline webhook",
                    ref.project.name,
                    ref.name,
                )
                return False

            ref = copy.deepcopy(ref)
            ref.project = project
            try:
                self.store.set_ref(ref)
            except Exception as exc:
                log.error("writing ref %s/%s in the store: %s", ref.project.name, ref.name, exc)
                return False

        log.info(
            "received a pipeline webhook from GitLab for ref %s/%s, triggering metrics pull",
            ref.project.name,
            ref.name,
        )
        return self.scheduler.schedule_task(TaskType.PULL_REF_METRICS, ref.key(), ref)