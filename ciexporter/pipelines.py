"""Pipelines, test reports and jobs of the refs a project exposes."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional

from .api import ApiError, PER_PAGE, _header_int, _project_path
from .discovery import DiscoveryClient
from .schemas import (
    Job,
    Pipeline,
    Project,
    Ref,
    RefKind,
    TestReport,
    get_ref_regexp,
    merge_request_iid_from_ref_name,
)

log = logging.getLogger(__name__)

_re_compile_error = ValueError


def _format_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class GitLabClient(DiscoveryClient):
    """Complete GitLab client: discovery plus pipelines and jobs."""

    def get_ref_pipeline(self, ref: Ref, pipeline_id: int) -> Pipeline:
        """Return the pipeline with the given id of the ref's project."""
        try:
            data, _ = self._get(f"{_project_path(ref.project.name)}/pipelines/{pipeline_id}")
        except ApiError as exc:
            raise ApiError(
                f"could not read content of pipeline {ref.project.name} - {ref.name} | {exc}",
                exc.status_code,
            ) from exc
        if not data:
            raise ApiError(
                f"could not read content of pipeline {ref.project.name} - {ref.name} | empty body"
            )
        return Pipeline.from_api(data)

    def _pipelines_page(self, project_name: str, params: dict) -> tuple:
        log.debug("listing project pipelines of %s with %s", project_name, params)
        try:
            data, response = self._get(f"{_project_path(project_name)}/pipelines", params)
        except ApiError as exc:
            raise ApiError(
                f"error listing project pipelines for project {project_name}: {exc}",
                exc.status_code,
            ) from exc
        return data or [], response

    def get_project_pipelines(
        self,
        project_name: str,
        *,
        ref: Optional[str] = None,
        scope: Optional[str] = None,
        order_by: Optional[str] = None,
        updated_after: Optional[datetime] = None,
        page: int = 1,
        per_page: int = PER_PAGE,
    ) -> list:
        """Return one page of the project's pipelines as raw API dictionaries."""
        params: dict[str, Any] = {"page": page or 1, "per_page": per_page or PER_PAGE}
        if ref is not None:
            params["ref"] = ref
        if scope is not None:
            params["scope"] = scope
        if order_by is not None:
            params["order_by"] = order_by
        if updated_after is not None:
            params["updated_after"] = _format_time(updated_after)
        pipelines, _ = self._pipelines_page(project_name, params)
        return pipelines

    def get_ref_pipeline_variables_as_concatenated_string(self, ref: Ref) -> str:
        """Return the latest pipeline's variables kept by the filter, as "k:v,k:v"."""
        if ref.latest_pipeline == Pipeline():
            log.debug("most recent pipeline not defined for %s/%s", ref.project.name, ref.name)
            return ""

        variables_regexp = ref.project.pull.pipeline.variables_regexp
        try:
            variables_filter = get_ref_regexp_pattern(variables_regexp)
        except ValueError as exc:
            raise ValueError(
                "the provided filter regex for pipeline variables is invalid "
                f"'({variables_regexp})': {exc}"
            ) from None

        pipeline_id = ref.latest_pipeline.id
        try:
            data, _ = self._get(
                f"{_project_path(ref.project.name)}/pipelines/{pipeline_id}/variables"
            )
        except ApiError as exc:
            raise ApiError(
                f"could not fetch pipeline variables for {pipeline_id}: {exc}", exc.status_code
            ) from exc

        kept = [
            f"{variable.get('key', '')}:{variable.get('value', '')}"
            for variable in data or []
            if variables_filter.search(variable.get("key") or "")
        ]
        return ",".join(kept)

    def get_refs_from_pipelines(self, project: Project, ref_kind: RefKind) -> dict:
        """Return refs of the given kind that had pipelines, keyed by ref key."""
        pattern = get_ref_regexp(project.pull.refs, ref_kind)
        ref_kind = RefKind(ref_kind)
        params: dict[str, Any] = {"page": 1, "per_page": PER_PAGE, "order_by": "updated_at"}
        existing: Optional[dict] = None
        refs_config = project.pull.refs

        if ref_kind is RefKind.MERGE_REQUEST:
            selection = refs_config.merge_requests
        elif ref_kind is RefKind.BRANCH:
            params["scope"] = "branches"
            selection = refs_config.branches
            if selection.exclude_deleted:
                existing = self.get_project_branches(project)
        else:
            params["scope"] = "tags"
            selection = refs_config.tags
            if selection.exclude_deleted:
                existing = self.get_project_tags(project)

        most_recent = selection.most_recent
        limit_to_most_recent = most_recent > 0
        if selection.max_age_seconds > 0:
            params["updated_after"] = _format_time(
                datetime.now(timezone.utc) - timedelta(seconds=selection.max_age_seconds)
            )

        refs: dict = {}
        while True:
            pipelines, response = self._pipelines_page(project.name, params)
            for pipeline in pipelines:
                ref_name = pipeline.get("ref") or ""
                if not pattern.search(ref_name):
                    if ref_kind is not RefKind.MERGE_REQUEST:
                        log.debug("discovered pipeline ref not matching regexp: %s", ref_name)
                    continue

                if ref_kind is RefKind.MERGE_REQUEST:
                    try:
                        ref_name = merge_request_iid_from_ref_name(ref_name)
                    except ValueError as exc:
                        log.warning("%s", exc)
                        continue

                ref = Ref(project, ref_kind, ref_name)
                if existing is not None and ref.key() not in existing:
                    log.debug("found deleted ref %s, ignoring", ref_name)
                    continue

                if ref.key() not in refs:
                    refs[ref.key()] = ref
                    if limit_to_most_recent:
                        most_recent -= 1
                        if most_recent <= 0:
                            return refs

            current = _header_int(response, "X-Page")
            next_page = _header_int(response, "X-Next-Page")
            if current >= next_page:
                return refs
            params["page"] = next_page

    def get_ref_pipeline_test_report(self, ref: Ref) -> TestReport:
        """Return the test report of the ref's latest pipeline."""
        if ref.latest_pipeline == Pipeline():
            log.debug("most recent pipeline not defined for %s/%s", ref.project.name, ref.name)
            return TestReport()

        pipeline_id = ref.latest_pipeline.id
        try:
            data, _ = self._get(
                f"{_project_path(ref.project.name)}/pipelines/{pipeline_id}/test_report"
            )
        except ApiError as exc:
            raise ApiError(
                f"could not fetch test report for {pipeline_id}: {exc}", exc.status_code
            ) from exc
        return TestReport.from_api(data or {})

    def list_ref_pipeline_jobs(self, ref: Ref) -> list:
        """Return the jobs of the ref's latest pipeline, child pipelines included if enabled."""
        if ref.latest_pipeline == Pipeline():
            log.debug("most recent pipeline not defined for %s/%s", ref.project.name, ref.name)
            return []

        jobs = self.list_pipeline_jobs(ref.project.name, ref.latest_pipeline.id)
        if ref.project.pull.pipeline.jobs_from_child_pipelines_enabled:
            jobs.extend(self.list_pipeline_child_jobs(ref.project.name, ref.latest_pipeline.id))
        return jobs

    def list_pipeline_jobs(self, project_name_or_id: Any, pipeline_id: int) -> list:
        """Return every job of a pipeline."""
        path = f"{_project_path(project_name_or_id)}/pipelines/{pipeline_id}/jobs"
        jobs = [Job.from_api(job) for page in self._paginate(path) for job in page]
        log.debug("found %d jobs in pipeline %s of %s", len(jobs), pipeline_id, project_name_or_id)
        return jobs

    def list_pipeline_bridges(self, project_name_or_id: Any, pipeline_id: int) -> list:
        """Return the raw trigger jobs (bridges) of a pipeline."""
        path = f"{_project_path(project_name_or_id)}/pipelines/{pipeline_id}/bridges"
        bridges = [bridge for page in self._paginate(path) for bridge in page]
        log.debug(
            "found %d bridges in pipeline %s of %s", len(bridges), pipeline_id, project_name_or_id
        )
        return bridges

    def list_pipeline_child_jobs(self, project_name_or_id: Any, parent_pipeline_id: int) -> list:
        """Return the jobs of every downstream pipeline below the given one."""
        jobs: list = []
        pending = [(str(project_name_or_id), parent_pipeline_id)]
        while pending:
            project, pipeline_id = pending.pop()
            for bridge in self.list_pipeline_bridges(project, pipeline_id):
                downstream = bridge.get("downstream_pipeline")
                # A trigger job not run yet has no downstream pipeline.
                if not downstream:
                    continue
                child = (str(downstream.get("project_id")), int(downstream.get("id") or 0))
                pending.append(child)
                jobs.extend(self.list_pipeline_jobs(*child))
        return jobs

    def _iter_project_jobs(self, project_name: str) -> Iterator[dict]:
        for page in self._paginate(f"{_project_path(project_name)}/jobs"):
            yield from page

    def list_ref_most_recent_jobs(self, ref: Ref) -> list:
        """Return the newest run of each job currently known for the ref."""
        if not ref.latest_jobs:
            log.debug("no jobs held in memory for %s/%s", ref.project.name, ref.name)
            return []

        to_refresh = dict(ref.latest_jobs)
        jobs: list = []
        for found in self._iter_project_jobs(ref.project.name):
            name = found.get("name") or ""
            if name in to_refresh:
                job_ref = found.get("ref") or ""
                try:
                    job_ref = merge_request_iid_from_ref_name(job_ref)
                except ValueError:
                    pass
                if job_ref == ref.name:
                    jobs.append(Job.from_api(found))
                    del to_refresh[name]
            if not to_refresh:
                log.debug("found all jobs to refresh for %s/%s", ref.project.name, ref.name)
                return jobs

        log.warning(
            "found some ref jobs but did not manage to refresh all jobs which were in memory "
            "(project=%s, ref=%s, not-found-jobs=%s)",
            ref.project.name,
            ref.name,
            ",".join(to_refresh),
        )
        return jobs


def get_ref_regexp_pattern(pattern: str) -> "Any":
    """Compile a filter expression, raising ValueError when it is invalid."""
    import re

    try:
        return re.compile(pattern)
    except re.error as exc:
        raise _re_compile_error(f"error parsing regexp: {exc}: `{pattern}`") from None