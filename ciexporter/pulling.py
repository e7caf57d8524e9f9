"""Pulling of refs, pipelines, jobs and test reports into the store as metrics."""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable, Optional

from .api import ApiError
from .schemas import (
    Job,
    Metric,
    MetricKind,
    Project,
    Ref,
    RefKind,
    TaskType,
    TestReport,
    TestSuite,
    Wildcard,
)
from .store import store_del_metric, store_get_metric, store_set_metric

log = logging.getLogger(__name__)

STATUSES = (
    "created",
    "waiting_for_resource",
    "preparing",
    "pending",
    "running",
    "success",
    "failed",
    "canceled",
    "skipped",
    "manual",
    "scheduled",
)

FINISHED_STATUSES = frozenset({"success", "failed", "skipped", "cancelled"})


def emit_status_metric(
    store: Any,
    kind: MetricKind,
    labels: dict,
    statuses: Iterable[str],
    status: str,
    sparse: bool,
) -> None:
    """Write one series per status: 1 for the current one, 0 (or deleted when sparse) otherwise."""
    for current in statuses:
        metric = Metric(kind=kind, labels={**labels, "status": current})
        if current == status:
            metric.value = 1.0
        elif sparse:
            store_del_metric(store, metric)
            continue
        store_set_metric(store, metric)


class Puller:
    """Fetches state from GitLab and turns it into stored refs, projects and metrics.

    The scheduler, when given, receives follow-up tasks for newly discovered objects.
    """

    def __init__(self, gitlab: Any, store: Any, scheduler: Optional[Any] = None) -> None:
        self.gitlab = gitlab
        self.store = store
        self.scheduler = scheduler

    def _schedule(self, task_type: TaskType, unique_id: str, *args: Any) -> None:
        if self.scheduler is not None:
            self.scheduler.schedule_task(task_type, unique_id, *args)

    def _set(self, kind: MetricKind, labels: dict, value: float) -> None:
        store_set_metric(self.store, Metric(kind=kind, labels=dict(labels), value=float(value)))

    # Pipelines

    def pull_ref_metrics(self, ref: Ref) -> None:
        """Refresh the latest pipeline of a ref and write its metrics."""
        # The scheduled ref may lag behind the stored state; work on the stored one.
        ref = copy.deepcopy(self.store.get_ref(ref))
        pipeline_config = ref.project.pull.pipeline

        if RefKind(ref.kind) is RefKind.MERGE_REQUEST:
            ref_name = f"refs/merge-requests/{ref.name}/head"
        else:
            ref_name = ref.name

        try:
            pipelines = self.gitlab.get_project_pipelines(
                ref.project.name, ref=ref_name, page=1, per_page=1
            )
        except ApiError as exc:
            raise ApiError(
                f"error fetching project pipelines for {ref.project.name}: {exc}",
                exc.status_code,
            ) from exc

        if not pipelines:
            log.debug(
                "could not find any pipeline for the ref %s/%s (%s)",
                ref.project.name,
                ref.name,
                ref.kind,
            )
            return

        pipeline = self.gitlab.get_ref_pipeline(ref, int(pipelines[0].get("id") or 0))

        if ref.latest_pipeline.id == 0 or pipeline != ref.latest_pipeline:
            former = ref.latest_pipeline
            ref.latest_pipeline = pipeline

            if pipeline_config.variables_enabled:
                ref.latest_pipeline.variables = (
                    self.gitlab.get_ref_pipeline_variables_as_concatenated_string(ref)
                )

            self.store.set_ref(ref)

            # A new series starts at 0 so that restarts do not look like new runs.
            run_count = store_get_metric(
                self.store,
                Metric(kind=MetricKind.RUN_COUNT, labels=ref.default_labels_values()),
            )
            if former.id != 0 and former.id != ref.latest_pipeline.id:
                run_count.value += 1
            store_set_metric(self.store, run_count)

            self._set(MetricKind.COVERAGE, ref.default_labels_values(), pipeline.coverage)
            self._set(MetricKind.ID, ref.default_labels_values(), pipeline.id)
            emit_status_metric(
                self.store,
                MetricKind.STATUS,
                ref.default_labels_values(),
                STATUSES,
                pipeline.status,
                ref.project.output_sparse_status_metrics,
            )
            self._set(
                MetricKind.DURATION_SECONDS,
                ref.default_labels_values(),
                pipeline.duration_seconds,
            )
            self._set(
                MetricKind.QUEUED_DURATION_SECONDS,
                ref.default_labels_values(),
                pipeline.queued_duration_seconds,
            )
            self._set(MetricKind.TIMESTAMP, ref.default_labels_values(), pipeline.timestamp)

            if pipeline_config.jobs_enabled:
                self.pull_ref_pipeline_jobs_metrics(ref)
        else:
            self.pull_ref_most_recent_jobs_metrics(ref)

        if (
            pipeline_config.test_reports_enabled
            and ref.latest_pipeline.status in FINISHED_STATUSES
        ):
            report = self.gitlab.get_ref_pipeline_test_report(ref)
            ref.latest_pipeline.test_report = report
            self.process_test_report_metrics(ref, report)
            for suite in report.test_suites:
                self.process_test_suite_metrics(ref, suite)

    def process_test_report_metrics(self, ref: Ref, report: TestReport) -> None:
        """Write the summary counters of a pipeline test report."""
        labels = ref.default_labels_values()
        try:
            ref = self.store.get_ref(ref)
        except Exception as exc:
            log.error("getting ref %s/%s from the store: %s", ref.project.name, ref.name, exc)
            return

        log.debug("processing test report metrics of %s/%s", ref.project.name, ref.name)
        self._set(MetricKind.TEST_REPORT_ERROR_COUNT, labels, report.error_count)
        self._set(MetricKind.TEST_REPORT_FAILED_COUNT, labels, report.failed_count)
        self._set(MetricKind.TEST_REPORT_SKIPPED_COUNT, labels, report.skipped_count)
        self._set(MetricKind.TEST_REPORT_SUCCESS_COUNT, labels, report.success_count)
        self._set(MetricKind.TEST_REPORT_TOTAL_COUNT, labels, report.total_count)
        self._set(MetricKind.TEST_REPORT_TOTAL_TIME, labels, report.total_time)

    def process_test_suite_metrics(self, ref: Ref, suite: TestSuite) -> None:
        """Write the counters of one test suite."""
        labels = ref.default_labels_values()
        labels["test_suite_name"] = suite.name
        try:
            ref = self.store.get_ref(ref)
        except Exception as exc:
            log.error(
                "getting ref %s/%s from the store (test suite %s): %s",
                ref.project.name,
                ref.name,
                suite.name,
                exc,
            )
            return

        log.debug(
            "processing test suite metrics of %s/%s (%s)", ref.project.name, ref.name, suite.name
        )
        self._set(MetricKind.TEST_SUITE_ERROR_COUNT, labels, suite.error_count)
        self._set(MetricKind.TEST_SUITE_FAILED_COUNT, labels, suite.failed_count)
        self._set(MetricKind.TEST_SUITE_SKIPPED_COUNT, labels, suite.skipped_count)
        self._set(MetricKind.TEST_SUITE_SUCCESS_COUNT, labels, suite.success_count)
        self._set(MetricKind.TEST_SUITE_TOTAL_COUNT, labels, suite.total_count)
        self._set(MetricKind.TEST_SUITE_TOTAL_TIME, labels, suite.total_time)

    # Jobs

    def pull_ref_pipeline_jobs_metrics(self, ref: Ref) -> None:
        """Write metrics for every job of the ref's latest pipeline."""
        for job in self.gitlab.list_ref_pipeline_jobs(ref):
            self._process_job_metrics(ref, job)

    def pull_ref_most_recent_jobs_metrics(self, ref: Ref) -> None:
        """Refresh the metrics of the jobs already known for the ref."""
        if not ref.project.pull.pipeline.jobs_enabled:
            return
        for job in self.gitlab.list_ref_most_recent_jobs(ref):
            self._process_job_metrics(ref, job)

    def _process_job_metrics(self, ref: Ref, job: Job) -> None:
        try:
            ref = copy.deepcopy(self.store.get_ref(ref))
        except Exception as exc:
            log.error("getting ref %s/%s from the store: %s", ref.project.name, ref.name, exc)
            return

        former: Optional[Job] = ref.latest_jobs.get(job.name)
        if former is not None and former == job:
            return

        ref.latest_jobs[job.name] = job
        self.store.set_ref(ref)

        labels = ref.default_labels_values()
        labels.update(
            {
                "stage": job.stage,
                "job_name": job.name,
                "tag_list": job.tag_list,
                "failure_reason": job.failure_reason,
                "runner_description": job.runner_description,
            }
        )

        run_count = store_get_metric(
            self.store, Metric(kind=MetricKind.JOB_RUN_COUNT, labels=dict(labels))
        )
        if former is not None and former.id != 0 and former.id != job.id:
            run_count.value += 1
        store_set_metric(self.store, run_count)

        self._set(MetricKind.JOB_ID, labels, job.id)
        self._set(MetricKind.JOB_DURATION_SECONDS, labels, job.duration_seconds)
        self._set(MetricKind.JOB_QUEUED_DURATION_SECONDS, labels, job.queued_duration_seconds)
        self._set(MetricKind.JOB_TIMESTAMP, labels, job.timestamp)
        self._set(MetricKind.JOB_ARTIFACT_SIZE_BYTES, labels, job.artifact_size)
        emit_status_metric(
            self.store,
            MetricKind.JOB_STATUS,
            labels,
            STATUSES,
            job.status,
            ref.project.output_sparse_status_metrics,
        )

    # Refs

    def get_refs(self, project: Project) -> dict:
        """Return the refs of a project selected by its configuration, keyed by ref key."""
        refs: dict = {}
        config = project.pull.refs

        def merge(found: dict) -> None:
            for key, ref in found.items():
                refs.setdefault(key, ref)

        if config.branches.enabled:
            # These settings need the pipelines API rather than the branches one.
            branches = config.branches
            if (
                not branches.exclude_deleted
                or branches.most_recent > 0
                or branches.max_age_seconds > 0
            ):
                merge(self.gitlab.get_refs_from_pipelines(project, RefKind.BRANCH))
            else:
                merge(self.gitlab.get_project_branches(project))

        if config.tags.enabled:
            tags = config.tags
            if not tags.exclude_deleted or tags.most_recent > 0 or tags.max_age_seconds > 0:
                merge(self.gitlab.get_refs_from_pipelines(project, RefKind.TAG))
            else:
                merge(self.gitlab.get_project_tags(project))

        if config.merge_requests.enabled:
            merge(self.gitlab.get_refs_from_pipelines(project, RefKind.MERGE_REQUEST))

        return refs

    def pull_refs_from_project(self, project: Project) -> None:
        """Store the refs of a project not known yet and schedule their metrics pull."""
        for ref in self.get_refs(project).values():
            if self.store.ref_exists(ref.key()):
                continue
            log.info(
                "discovered new ref %s/%s (%s)", ref.project.name, ref.name, ref.kind
            )
            self.store.set_ref(ref)
            self._schedule(TaskType.PULL_REF_METRICS, ref.key(), ref)

    # Projects

    def pull_projects_from_wildcard(self, wildcard: Wildcard) -> None:
        """Store the projects found by a wildcard that are not known yet."""
        for project in self.gitlab.list_projects(wildcard):
            if self.store.project_exists(project.key()):
                continue
            log.info(
                "discovered new project %s (wildcard search=%r, owner-kind=%r, owner-name=%r)",
                project.name,
                wildcard.search,
                wildcard.owner.kind,
                wildcard.owner.name,
            )
            try:
                self.store.set_project(project)
            except Exception as exc:
                log.error("writing project %s in the store: %s", project.name, exc)

            self._schedule(TaskType.PULL_REFS_FROM_PROJECT, project.key(), project)
            self._schedule(TaskType.PULL_ENVIRONMENTS_FROM_PROJECT, project.key(), project)