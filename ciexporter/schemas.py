"""Data model shared by the API client, the store and the controller."""

from __future__ import annotations

import re
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Pattern

DEFAULT_BRANCHES_REGEXP = r"^(?:main|master)$"
DEFAULT_TAGS_REGEXP = r".*"
DEFAULT_MERGE_REQUESTS_REGEXP = r".*"
DEFAULT_ENVIRONMENTS_REGEXP = r".*"
DEFAULT_VARIABLES_REGEXP = r".*"

_MERGE_REQUEST_REF = re.compile(r"^(?:(\d+)|refs/merge-requests/(\d+)/head)$")
_TIMESTAMP = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2}:\d{2})(?:\.\d+)?(Z|[+-]\d{2}:?\d{2})?$"
)


def _checksum(text: str) -> str:
    return str(zlib.crc32(text.encode("utf-8")))


def _compile_regexp(pattern: str) -> Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"error parsing regexp: {exc}: `{pattern}`") from None


def _to_float(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    return int(value)


class RefKind(str, Enum):
    """Kind of git reference a pipeline ran for."""

    BRANCH = "branch"
    TAG = "tag"
    MERGE_REQUEST = "merge-request"

    def __str__(self) -> str:
        return self.value


class MetricKind(str, Enum):
    """Every metric the exporter can produce."""

    COVERAGE = "coverage"
    DURATION_SECONDS = "duration_seconds"
    ENVIRONMENT_BEHIND_COMMITS_COUNT = "environment_behind_commits_count"
    ENVIRONMENT_BEHIND_DURATION_SECONDS = "environment_behind_duration_seconds"
    ENVIRONMENT_DEPLOYMENT_COUNT = "environment_deployment_count"
    ENVIRONMENT_DEPLOYMENT_DURATION_SECONDS = "environment_deployment_duration_seconds"
    ENVIRONMENT_DEPLOYMENT_JOB_ID = "environment_deployment_job_id"
    ENVIRONMENT_DEPLOYMENT_STATUS = "environment_deployment_status"
    ENVIRONMENT_DEPLOYMENT_TIMESTAMP = "environment_deployment_timestamp"
    ENVIRONMENT_INFORMATION = "environment_information"
    ID = "id"
    JOB_ARTIFACT_SIZE_BYTES = "job_artifact_size_bytes"
    JOB_DURATION_SECONDS = "job_duration_seconds"
    JOB_ID = "job_id"
    JOB_QUEUED_DURATION_SECONDS = "job_queued_duration_seconds"
    JOB_RUN_COUNT = "job_run_count"
    JOB_STATUS = "job_status"
    JOB_TIMESTAMP = "job_timestamp"
    QUEUED_DURATION_SECONDS = "queued_duration_seconds"
    RUN_COUNT = "run_count"
    STATUS = "status"
    TIMESTAMP = "timestamp"
    TEST_REPORT_TOTAL_TIME = "test_report_total_time"
    TEST_REPORT_TOTAL_COUNT = "test_report_total_count"
    TEST_REPORT_SUCCESS_COUNT = "test_report_success_count"
    TEST_REPORT_FAILED_COUNT = "test_report_failed_count"
    TEST_REPORT_SKIPPED_COUNT = "test_report_skipped_count"
    TEST_REPORT_ERROR_COUNT = "test_report_error_count"
    TEST_SUITE_TOTAL_TIME = "test_suite_total_time"
    TEST_SUITE_TOTAL_COUNT = "test_suite_total_count"
    TEST_SUITE_SUCCESS_COUNT = "test_suite_success_count"
    TEST_SUITE_FAILED_COUNT = "test_suite_failed_count"
    TEST_SUITE_SKIPPED_COUNT = "test_suite_skipped_count"
    TEST_SUITE_ERROR_COUNT = "test_suite_error_count"


_STATUS_KINDS = frozenset(
    {MetricKind.STATUS, MetricKind.JOB_STATUS, MetricKind.ENVIRONMENT_DEPLOYMENT_STATUS}
)
_IDENTIFYING_LABELS = (
    "project",
    "kind",
    "ref",
    "stage",
    "job_name",
    "environment",
    "test_suite_name",
)


class TaskType(str, Enum):
    """Kinds of background tasks the scheduler runs."""

    PULL_PROJECTS_FROM_WILDCARD = "PullProjectsFromWildcard"
    PULL_PROJECTS_FROM_WILDCARDS = "PullProjectsFromWildcards"
    PULL_ENVIRONMENTS_FROM_PROJECT = "PullEnvironmentsFromProject"
    PULL_ENVIRONMENTS_FROM_PROJECTS = "PullEnvironmentsFromProjects"
    PULL_ENVIRONMENT_METRICS = "PullEnvironmentMetrics"
    PULL_METRICS = "PullMetrics"
    PULL_REFS_FROM_PROJECT = "PullRefsFromProject"
    PULL_REFS_FROM_PROJECTS = "PullRefsFromProjects"
    PULL_REF_METRICS = "PullRefMetrics"
    GARBAGE_COLLECT_PROJECTS = "GarbageCollectProjects"
    GARBAGE_COLLECT_ENVIRONMENTS = "GarbageCollectEnvironments"
    GARBAGE_COLLECT_REFS = "GarbageCollectRefs"
    GARBAGE_COLLECT_METRICS = "GarbageCollectMetrics"


@dataclass
class RefFilter:
    """How refs of one kind are selected for a project."""

    enabled: bool = True
    regexp: str = r".*"
    most_recent: int = 0
    max_age_seconds: int = 0
    exclude_deleted: bool = True


@dataclass
class ProjectPullRefs:
    """Ref selection per kind."""

    branches: RefFilter = field(
        default_factory=lambda: RefFilter(regexp=DEFAULT_BRANCHES_REGEXP)
    )
    tags: RefFilter = field(default_factory=lambda: RefFilter(regexp=DEFAULT_TAGS_REGEXP))
    merge_requests: RefFilter = field(
        default_factory=lambda: RefFilter(enabled=False, regexp=DEFAULT_MERGE_REQUESTS_REGEXP)
    )


@dataclass
class ProjectPullEnvironments:
    """Environment selection for a project."""

    enabled: bool = False
    regexp: str = DEFAULT_ENVIRONMENTS_REGEXP
    exclude_stopped: bool = True


@dataclass
class ProjectPullPipeline:
    """What is fetched about each pipeline."""

    jobs_enabled: bool = False
    jobs_from_child_pipelines_enabled: bool = True
    variables_enabled: bool = False
    variables_regexp: str = DEFAULT_VARIABLES_REGEXP
    test_reports_enabled: bool = False


@dataclass
class ProjectPull:
    """Everything that is pulled for a project."""

    refs: ProjectPullRefs = field(default_factory=ProjectPullRefs)
    environments: ProjectPullEnvironments = field(default_factory=ProjectPullEnvironments)
    pipeline: ProjectPullPipeline = field(default_factory=ProjectPullPipeline)


@dataclass
class Project:
    """A GitLab project, identified by its path with namespace."""

    name: str
    pull: ProjectPull = field(default_factory=ProjectPull)
    output_sparse_status_metrics: bool = True
    topics: str = ""

    def key(self) -> str:
        return _checksum(self.name)


@dataclass
class WildcardOwner:
    """Owner a wildcard search is scoped to ("user", "group" or empty)."""

    kind: str = ""
    name: str = ""
    include_subgroups: bool = False


@dataclass
class Wildcard:
    """A search for projects, with the parameters given to every project found."""

    search: str = ""
    owner: WildcardOwner = field(default_factory=WildcardOwner)
    archived: bool = False
    pull: ProjectPull = field(default_factory=ProjectPull)
    output_sparse_status_metrics: bool = True


@dataclass
class TestSuite:
    """Summary of one suite of a pipeline test report."""

    __test__ = False

    name: str = ""
    total_time: float = 0.0
    total_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    error_count: int = 0

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "TestSuite":
        return cls(
            name=data.get("name") or "",
            total_time=_to_float(data.get("total_time")),
            total_count=_to_int(data.get("total_count")),
            success_count=_to_int(data.get("success_count")),
            failed_count=_to_int(data.get("failed_count")),
            skipped_count=_to_int(data.get("skipped_count")),
            error_count=_to_int(data.get("error_count")),
        )


@dataclass
class TestReport:
    """Summary of a pipeline test report."""

    __test__ = False

    total_time: float = 0.0
    total_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    test_suites: list = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "TestReport":
        return cls(
            total_time=_to_float(data.get("total_time")),
            total_count=_to_int(data.get("total_count")),
            success_count=_to_int(data.get("success_count")),
            failed_count=_to_int(data.get("failed_count")),
            skipped_count=_to_int(data.get("skipped_count")),
            error_count=_to_int(data.get("error_count")),
            test_suites=[TestSuite.from_api(s) for s in data.get("test_suites") or []],
        )


@dataclass
class Pipeline:
    """The latest pipeline of a ref."""

    id: int = 0
    coverage: float = 0.0
    timestamp: float = 0.0
    duration_seconds: float = 0.0
    queued_duration_seconds: float = 0.0
    status: str = ""
    variables: str = ""
    test_report: TestReport = field(default_factory=TestReport)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Pipeline":
        return cls(
            id=_to_int(data.get("id")),
            coverage=_to_float(data.get("coverage")),
            timestamp=parse_timestamp(data.get("updated_at")),
            duration_seconds=_to_float(data.get("duration")),
            queued_duration_seconds=_to_float(data.get("queued_duration")),
            status=data.get("status") or "",
        )


@dataclass
class Job:
    """A single CI job."""

    id: int = 0
    name: str = ""
    stage: str = ""
    timestamp: float = 0.0
    duration_seconds: float = 0.0
    queued_duration_seconds: float = 0.0
    status: str = ""
    tag_list: str = ""
    artifact_size: float = 0.0
    failure_reason: str = ""
    runner_description: str = ""

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Job":
        artifacts = data.get("artifacts") or []
        runner = data.get("runner") or {}
        return cls(
            id=_to_int(data.get("id")),
            name=data.get("name") or "",
            stage=data.get("stage") or "",
            timestamp=parse_timestamp(data.get("created_at")),
            duration_seconds=_to_float(data.get("duration")),
            queued_duration_seconds=_to_float(data.get("queued_duration")),
            status=data.get("status") or "",
            tag_list=",".join(data.get("tag_list") or []),
            artifact_size=float(sum(_to_float(a.get("size")) for a in artifacts)),
            failure_reason=data.get("failure_reason") or "",
            runner_description=runner.get("description") or "",
        )


@dataclass
class Ref:
    """A branch, tag or merge request of a project, with its latest state."""

    project: Project
    kind: RefKind
    name: str
    latest_pipeline: Pipeline = field(default_factory=Pipeline)
    latest_jobs: dict = field(default_factory=dict)

    def key(self) -> str:
        return _checksum(RefKind(self.kind).value + self.project.name + self.name)

    def default_labels_values(self) -> dict:
        return {
            "kind": RefKind(self.kind).value,
            "project": self.project.name,
            "ref": self.name,
            "topics": self.project.topics,
            "variables": self.latest_pipeline.variables,
        }


@dataclass
class Deployment:
    """The latest deployment made to an environment."""

    job_id: int = 0
    ref_kind: Optional[RefKind] = None
    ref_name: str = ""
    username: str = ""
    timestamp: float = 0.0
    duration_seconds: float = 0.0
    commit_short_id: str = ""
    status: str = ""


@dataclass
class Environment:
    """A deployment environment of a project."""

    project_name: str
    name: str = ""
    id: int = 0
    external_url: str = ""
    available: bool = False
    latest_deployment: Deployment = field(default_factory=Deployment)
    output_sparse_status_metrics: bool = False

    def key(self) -> str:
        return _checksum(self.project_name + self.name)


@dataclass
class Metric:
    """One metric sample: a kind, its labels and a value."""

    kind: MetricKind
    labels: dict = field(default_factory=dict)
    value: float = 0.0

    def key(self) -> str:
        """Identity of the series; descriptive labels such as variables do not count."""
        parts = [MetricKind(self.kind).value]
        parts.extend(
            f"{name}={self.labels[name]}" for name in _IDENTIFYING_LABELS if name in self.labels
        )
        if self.kind in _STATUS_KINDS:
            parts.append(f"status={self.labels.get('status', '')}")
        return _checksum("|".join(parts))


def get_ref_regexp(refs: ProjectPullRefs, kind: RefKind) -> Pattern[str]:
    """Compile the filter configured for refs of the given kind."""
    try:
        kind = RefKind(kind)
    except ValueError:
        raise ValueError(f"invalid ref kind {kind!r}") from None
    patterns = {
        RefKind.BRANCH: refs.branches.regexp,
        RefKind.TAG: refs.tags.regexp,
        RefKind.MERGE_REQUEST: refs.merge_requests.regexp,
    }
    return _compile_regexp(patterns[kind])


def merge_request_iid_from_ref_name(ref_name: str) -> str:
    """Return the merge request IID held in a ref name, or raise ValueError."""
    match = _MERGE_REQUEST_REF.match(ref_name)
    if match is None:
        raise ValueError(f"unable to extract the merge-request ID from the ref ({ref_name})")
    return match.group(1) or match.group(2)


def parse_timestamp(value: Optional[str]) -> float:
    """Convert an ISO 8601 timestamp to whole Unix seconds; empty gives 0."""
    if value in (None, ""):
        return 0.0
    match = _TIMESTAMP.match(str(value).strip())
    if match is None:
        raise ValueError(f"invalid timestamp {value!r}")
    base = datetime.strptime(f"{match.group(1)}T{match.group(2)}", "%Y-%m-%dT%H:%M:%S")
    zone = match.group(3)
    offset = timedelta(0)
    if zone not in (None, "Z"):
        digits = zone[1:].replace(":", "")
        offset = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
        if zone[0] == "-":
            offset = -offset
    return float(int(base.replace(tzinfo=timezone(offset)).timestamp()))