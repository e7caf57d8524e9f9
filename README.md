# ciexporter

`ciexporter` is a library that reads CI data from a GitLab instance and keeps
it as metrics in memory. The data covers projects, refs (branches, tags and
merge requests), pipelines, jobs, environments and test reports. A scheduler
queues and runs the pulls, and a controller reacts to pipeline webhook
payloads.

## Installation

```
pip install ciexporter
```

To run the test suite as well:

```
pip install "ciexporter[test]"
pytest
```

## Modules

- `ciexporter.schemas` holds the data model. The dataclasses are `Project`,
  `Ref`, `Pipeline`, `Job`, `TestReport`, `TestSuite`, `Environment`,
  `Deployment`, `Metric`, `Wildcard` and `WildcardOwner`. The per-project
  settings are `ProjectPull`, `ProjectPullRefs`, `RefFilter`,
  `ProjectPullEnvironments` and `ProjectPullPipeline`. The enums are
  `RefKind`, `MetricKind` and `TaskType`. The module also has the helpers
  `get_ref_regexp`, `merge_request_iid_from_ref_name` and `parse_timestamp`.
  `Project.key()`, `Ref.key()`, `Environment.key()` and `Metric.key()` each
  return a stable checksum string. An object stored under one key is found
  again under the same key later.
- `ciexporter.api` provides `Client`, which is built from a `ClientConfig`
  (URL, token, user-agent version, TLS verification switch, readiness URL and
  an optional `RateLimiter`).
  - `Client` handles pagination through the `X-Page` and `X-Next-Page`
    headers.
  - It counts requests in `requests_counter` and `requests_rate`.
  - It records the `RateLimit-Limit` and `RateLimit-Remaining` headers.
  - It offers `readiness_check`, `get_project_branches`,
    `get_branch_latest_commit`, `get_project_tags`,
    `get_project_most_recent_tag_commit` and `get_commit_count_between_refs`.
  - `RateLimiter(rate, burst)` is a token bucket. Its `take()` blocks until a
    request may be made.
- `ciexporter.discovery` provides `DiscoveryClient`, which extends `Client`.
  - `list_projects(wildcard)` searches all visible projects, or the projects
    of a user or a group. It keeps only the projects whose path starts with
    the owner's name.
  - It also offers `get_project`, `get_project_environments` and
    `get_environment`. `get_environment` includes the details of the latest
    deployment.
- `ciexporter.pipelines` provides `GitLabClient`, which extends
  `DiscoveryClient`. It reads the following:
  - pipelines, through `get_ref_pipeline` and `get_project_pipelines`;
  - filtered pipeline variables, as a `key:value,...` string;
  - refs discovered from pipeline history, with most-recent, max-age and
    exclude-deleted filtering;
  - test reports;
  - jobs, including the jobs of child and downstream pipelines;
  - the newest run of each job already known for a ref.
- `ciexporter.store` provides `MemoryStore`, a thread-safe in-memory store of
  projects, refs, environments, metrics and queued-task markers. Objects are
  deep-copied on the way in and on the way out. `store_get_metric`,
  `store_set_metric` and `store_del_metric` wrap the metric operations and log
  failures instead of raising.
- `ciexporter.scheduler` provides `TaskController`, `Scheduler`,
  `SchedulerConfig` and `TaskSchedulingStatus`.
  - `TaskController` is a bounded job queue. `run_pending()` runs the queued
    jobs, including any jobs those jobs queue in turn.
  - `Scheduler.schedule_task` drops a task in three cases: the task is
    unknown, the queue is full, or the store says it is already queued.
  - `Scheduler.schedule(...)` takes a mapping from `TaskType` to
    `SchedulerConfig`. It runs the `on_init` tasks and starts a ticker thread
    for each scheduled task. It also starts a consumer thread, unless
    `consume=False`.
  - `stop()` ends the threads.
- `ciexporter.pulling` provides `Puller`, which turns API data into stored
  metrics:
  - pipeline run count, coverage, id, status, duration, queued duration and
    timestamp;
  - per-job metrics;
  - test report and test suite counters.
  It can also discover refs and projects. `emit_status_metric` writes one
  series per status. In sparse mode it deletes the series for inactive
  statuses.
- `ciexporter.controller` provides `Controller`, which wires a GitLab client,
  a store, a `TaskController`, a `Scheduler` and a `Puller` together.
  - `process_pipeline_event(payload)` handles a pipeline webhook payload.
  - `trigger_ref_metrics_pull(ref)` schedules a metrics pull when the ref, or
    its project's configuration, is followed. When the project is unknown, it
    instead schedules a pull of the matching wildcards.
  - Both return whether a task was scheduled.
  - The `is_*_matching_*` functions hold the matching rules.

## Example

```python
from ciexporter.api import ClientConfig
from ciexporter.controller import Controller
from ciexporter.pipelines import GitLabClient
from ciexporter.schemas import Project
from ciexporter.store import MemoryStore

client = GitLabClient(ClientConfig(url="https://gitlab.example.com", token="token"))
store = MemoryStore()
controller = Controller(client, store)

project = Project("group/app")
store.set_project(project)

# Discover the project's refs; each new ref gets a metrics pull queued.
controller.puller.pull_refs_from_project(project)
controller.tasks.run_pending()

for metric in store.metrics().values():
    print(metric.kind.value, metric.labels, metric.value)
```

## Errors

- Failures of the GitLab API are raised as `ciexporter.api.ApiError`. Its
  `status_code` attribute is set when the server answered.
- An invalid filter expression raises `ValueError`, with a message starting
  with "error parsing regexp".
- Malformed timestamps and merge-request ref names also raise `ValueError`.

## What it does not do

- There is no command-line program.
- There is no configuration file loading.
- There is no HTTP endpoint serving the metrics to a monitoring system. The
  metrics stay in `MemoryStore` for the caller to read.
- State lives only in process memory. It is not shared between processes and
  does not survive a restart.
- The scheduler registers handlers only for these task types:
  - pulling projects from wildcards;
  - pulling refs from projects;
  - pulling ref metrics;
  - the overall metrics pull.
- Tasks for environment pulls and for garbage collection are therefore
  dropped with a warning. Environment metrics are not computed.
- Only pipeline webhook payloads are handled. Deployment webhook payloads are
  not.