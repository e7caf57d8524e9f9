import json
from urllib.parse import parse_qs, urlsplit

import pytest
import responses
from responses import matchers

from ciexporter.api import ApiError, ClientConfig
from ciexporter.pipelines import GitLabClient
from ciexporter.schemas import Job, Pipeline, Project, Ref, RefKind, TestReport, TestSuite

BASE = "https://gitlab.example.com"
API = BASE + "/api/v4"

TEST_REPORT_BODY = (
    '{"total_time": 5, "total_count": 1, "success_count": 1, "failed_count": 0, '
    '"skipped_count": 0, "error_count": 0, "test_suites": [{"name": "Secure", '
    '"total_time": 5, "total_count": 1, "success_count": 1, "failed_count": 0, '
    '"skipped_count": 0, "error_count": 0, "test_cases": [{"status": "success", '
    '"name": "Security Reports can create an auto-remediation MR", '
    '"classname": "vulnerability_management_spec", "execution_time": 5, '
    '"system_output": null, "stack_trace": null}]}]}'
)


@pytest.fixture
def mocked():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture
def client():
    return GitLabClient(ClientConfig(url=BASE))


def _page_params(page="1"):
    return matchers.query_param_matcher({"page": page, "per_page": "100"})


def test_get_ref_pipeline(mocked, client):
    mocked.add(responses.GET, f"{API}/projects/foo/pipelines/1", json={"id": 1})
    ref = Ref(Project("foo"), RefKind.BRANCH, "yay")
    pipeline = client.get_ref_pipeline(ref, 1)
    assert pipeline.id == 1


def test_get_ref_pipeline_error(mocked, client):
    mocked.add(responses.GET, f"{API}/projects/foo/pipelines/2", status=404)
    ref = Ref(Project("foo"), RefKind.BRANCH, "yay")
    with pytest.raises(ApiError, match="could not read content of pipeline foo - yay"):
        client.get_ref_pipeline(ref, 2)


def test_get_project_pipelines(mocked, client):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines",
        json=[{"id": 1}, {"id": 2}],
        match=[
            matchers.query_param_matcher(
                {"page": "1", "per_page": "100", "ref": "foo", "scope": "bar"}
            )
        ],
    )
    pipelines = client.get_project_pipelines("foo", ref="foo", scope="bar")
    assert [p["id"] for p in pipelines] == [1, 2]


def test_get_project_pipelines_error(mocked, client):
    mocked.add(responses.GET, f"{API}/projects/foo/pipelines", status=500)
    with pytest.raises(ApiError, match="error listing project pipelines for project foo"):
        client.get_project_pipelines("foo")


def test_get_ref_pipeline_variables_as_concatenated_string(mocked, client):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines/1/variables",
        json=[{"key": "foo", "value": "bar"}, {"key": "bar", "value": "baz"}],
    )
    project = Project("foo")
    project.pull.pipeline.variables_enabled = True
    project.pull.pipeline.variables_regexp = "["
    ref = Ref(project, RefKind.BRANCH, "yay")

    assert client.get_ref_pipeline_variables_as_concatenated_string(ref) == ""

    ref.latest_pipeline = Pipeline(id=1)
    with pytest.raises(
        ValueError, match="the provided filter regex for pipeline variables is invalid"
    ):
        client.get_ref_pipeline_variables_as_concatenated_string(ref)

    ref.project.pull.pipeline.variables_regexp = ".*"
    assert client.get_ref_pipeline_variables_as_concatenated_string(ref) == "foo:bar,bar:baz"


def test_variables_filter_keeps_matching_keys(mocked, client):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines/1/variables",
        json=[{"key": "foo", "value": "bar"}, {"key": "bar", "value": "baz"}],
    )
    project = Project("foo")
    project.pull.pipeline.variables_regexp = "^b"
    ref = Ref(project, RefKind.BRANCH, "yay", latest_pipeline=Pipeline(id=1))
    assert client.get_ref_pipeline_variables_as_concatenated_string(ref) == "bar:baz"


def _pipelines_callback(request):
    scope = parse_qs(urlsplit(request.url).query).get("scope")
    assert parse_qs(urlsplit(request.url).query)["page"] == ["1"]
    assert parse_qs(urlsplit(request.url).query)["per_page"] == ["100"]
    if scope == ["branches"]:
        body = [{"id": 1, "ref": "keep_dev"}, {"id": 2, "ref": "keep_main"}]
    elif scope == ["tags"]:
        body = [{"id": 3, "ref": "donotkeep_0.0.1"}, {"id": 4, "ref": "keep_0.0.2"}]
    else:
        body = [
            {"id": 1, "ref": "keep_dev"},
            {"id": 2, "ref": "keep_main"},
            {"id": 3, "ref": "donotkeep_0.0.1"},
            {"id": 4, "ref": "keep_0.0.2"},
            {"id": 5, "ref": "refs/merge-requests/1234/head"},
        ]
    return 200, {"Content-Type": "application/json"}, json.dumps(body)


@pytest.fixture
def pipelines_api(mocked):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/repository/branches",
        json=[{"name": "keep_main"}],
    )
    mocked.add_callback(
        responses.GET, f"{API}/projects/foo/pipelines", callback=_pipelines_callback
    )
    return mocked


def test_get_refs_from_pipelines_branches(pipelines_api, client):
    project = Project("foo")
    project.pull.refs.branches.regexp = "["
    with pytest.raises(ValueError, match="error parsing regexp"):
        client.get_refs_from_pipelines(project, RefKind.BRANCH)

    project.pull.refs.branches.regexp = "^keep.*"
    refs = client.get_refs_from_pipelines(project, RefKind.BRANCH)
    expected = Ref(project, RefKind.BRANCH, "keep_main")
    assert refs == {expected.key(): expected}


def test_get_refs_from_pipelines_tags(pipelines_api, client):
    project = Project("foo")
    project.pull.refs.tags.regexp = "["
    with pytest.raises(ValueError, match="error parsing regexp"):
        client.get_refs_from_pipelines(project, RefKind.TAG)

    project.pull.refs.tags.regexp = "^keep"
    project.pull.refs.tags.exclude_deleted = False
    refs = client.get_refs_from_pipelines(project, RefKind.TAG)
    expected = Ref(project, RefKind.TAG, "keep_0.0.2")
    assert refs == {expected.key(): expected}


def test_get_refs_from_pipelines_merge_requests(pipelines_api, client):
    project = Project("foo")
    refs = client.get_refs_from_pipelines(project, RefKind.MERGE_REQUEST)
    expected = Ref(project, RefKind.MERGE_REQUEST, "1234")
    assert refs == {expected.key(): expected}


def test_get_refs_from_pipelines_most_recent(pipelines_api, client):
    project = Project("foo")
    project.pull.refs.branches.regexp = "^keep"
    project.pull.refs.branches.exclude_deleted = False
    project.pull.refs.branches.most_recent = 1
    refs = client.get_refs_from_pipelines(project, RefKind.BRANCH)
    expected = Ref(project, RefKind.BRANCH, "keep_dev")
    assert refs == {expected.key(): expected}


def test_get_refs_from_pipelines_invalid_kind(client):
    with pytest.raises(ValueError, match="invalid ref kind"):
        client.get_refs_from_pipelines(Project("foo"), "nope")


def test_get_ref_pipeline_test_report(mocked, client):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines/1/test_report",
        body=TEST_REPORT_BODY,
        content_type="application/json",
    )
    ref = Ref(Project("foo"), RefKind.BRANCH, "yay")
    assert client.get_ref_pipeline_test_report(ref) == TestReport()

    ref.latest_pipeline = Pipeline(id=1)
    report = client.get_ref_pipeline_test_report(ref)
    assert report == TestReport(
        total_time=5,
        total_count=1,
        success_count=1,
        failed_count=0,
        skipped_count=0,
        error_count=0,
        test_suites=[
            TestSuite(
                name="Secure",
                total_time=5,
                total_count=1,
                success_count=1,
                failed_count=0,
                skipped_count=0,
                error_count=0,
            )
        ],
    )


def _register_job_tree(mocked):
    mocked.add(responses.GET, f"{API}/projects/foo/pipelines/1/jobs", json=[{"id": 10}])
    mocked.add(responses.GET, f"{API}/projects/11/pipelines/2/jobs", json=[{"id": 20}])
    mocked.add(responses.GET, f"{API}/projects/12/pipelines/3/jobs", json=[{"id": 30}])
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines/1/bridges",
        json=[{"id": 1, "downstream_pipeline": {"id": 2, "project_id": 11}}],
    )
    mocked.add(
        responses.GET,
        f"{API}/projects/11/pipelines/2/bridges",
        json=[{"id": 1, "downstream_pipeline": {"id": 3, "project_id": 12}}],
    )
    mocked.add(responses.GET, f"{API}/projects/12/pipelines/3/bridges", json=[])


def test_list_ref_pipeline_jobs(mocked, client):
    ref = Ref(Project("foo"), RefKind.BRANCH, "yay")
    assert client.list_ref_pipeline_jobs(ref) == []

    _register_job_tree(mocked)
    ref.latest_pipeline = Pipeline(id=1)
    assert client.list_ref_pipeline_jobs(ref) == [Job(id=10), Job(id=20), Job(id=30)]

    ref.project.name = "bar"
    with pytest.raises(ApiError):
        client.list_ref_pipeline_jobs(ref)


def test_list_ref_pipeline_jobs_without_children(mocked, client):
    _register_job_tree(mocked)
    project = Project("foo")
    project.pull.pipeline.jobs_from_child_pipelines_enabled = False
    ref = Ref(project, RefKind.BRANCH, "yay", latest_pipeline=Pipeline(id=1))
    assert client.list_ref_pipeline_jobs(ref) == [Job(id=10)]


def test_list_pipeline_child_jobs_skips_pending_bridges(mocked, client):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines/1/bridges",
        json=[{"id": 1, "downstream_pipeline": None}],
    )
    assert client.list_pipeline_child_jobs("foo", 1) == []


def test_list_pipeline_jobs(mocked, client):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines/1/jobs",
        json=[{"id": 1}, {"id": 2}],
        match=[_page_params()],
    )
    mocked.add(responses.GET, f"{API}/projects/bar/pipelines/1/jobs", status=404)

    jobs = client.list_pipeline_jobs("foo", 1)
    assert [job.id for job in jobs] == [1, 2]

    with pytest.raises(ApiError):
        client.list_pipeline_jobs("bar", 1)


def test_list_pipeline_jobs_pagination(mocked, client):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines/1/jobs",
        json=[{"id": 1}],
        headers={"X-Page": "1", "X-Next-Page": "2"},
        match=[_page_params("1")],
    )
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines/1/jobs",
        json=[{"id": 2}],
        headers={"X-Page": "2", "X-Next-Page": "2"},
        match=[_page_params("2")],
    )
    assert client.list_pipeline_jobs("foo", 1) == [Job(id=1), Job(id=2)]


def test_list_pipeline_bridges(mocked, client):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/pipelines/1/bridges",
        json=[{"id": 1, "pipeline": {"id": 100}}],
        match=[_page_params()],
    )
    mocked.add(responses.GET, f"{API}/projects/bar/pipelines/1/bridges", status=404)

    bridges = client.list_pipeline_bridges("foo", 1)
    assert len(bridges) == 1
    assert bridges[0]["pipeline"]["id"] == 100

    with pytest.raises(ApiError):
        client.list_pipeline_bridges("bar", 1)


def test_list_ref_most_recent_jobs(mocked, client):
    ref = Ref(Project("foo"), RefKind.BRANCH, "yay")
    assert client.list_ref_most_recent_jobs(ref) == []

    mocked.add(
        responses.GET,
        f"{API}/projects/foo/jobs",
        json=[{"id": 3, "name": "foo", "ref": "yay"}, {"id": 4, "name": "bar", "ref": "yay"}],
        match=[_page_params()],
    )
    mocked.add(responses.GET, f"{API}/projects/bar/jobs", status=404)

    ref.latest_jobs = {"foo": Job(id=1, name="foo"), "bar": Job(id=2, name="bar")}
    jobs = client.list_ref_most_recent_jobs(ref)
    assert [job.id for job in jobs] == [3, 4]

    ref.latest_jobs["baz"] = Job(id=5, name="baz")
    jobs = client.list_ref_most_recent_jobs(ref)
    assert [job.id for job in jobs] == [3, 4]

    ref.project.name = "bar"
    with pytest.raises(ApiError):
        client.list_ref_most_recent_jobs(ref)


def test_list_ref_most_recent_jobs_merge_request(mocked, client):
    mocked.add(
        responses.GET,
        f"{API}/projects/foo/jobs",
        json=[
            {"id": 7, "name": "build", "ref": "refs/merge-requests/12/head"},
            {"id": 8, "name": "build", "ref": "main"},
        ],
    )
    ref = Ref(Project("foo"), RefKind.MERGE_REQUEST, "12")
    ref.latest_jobs = {"build": Job(id=1, name="build")}
    jobs = client.list_ref_most_recent_jobs(ref)
    assert [job.id for job in jobs] == [7]