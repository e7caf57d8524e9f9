"""Project and environment discovery on top of the GitLab API client."""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Optional

from .api import ApiError, Client, _project_path
from .schemas import Environment, Project, RefKind, Wildcard, parse_timestamp

log = logging.getLogger(__name__)


def _bool_param(value: bool) -> str:
    return "true" if value else "false"


def _compile(pattern: str) -> "re.Pattern[str]":
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"error parsing regexp: {exc}: `{pattern}`") from None


class DiscoveryClient(Client):
    """GitLab client able to find projects and their environments."""

    def get_project(self, name: str) -> Optional[dict]:
        """Return the raw API description of a project."""
        log.debug("reading project %s", name)
        data, _ = self._get(_project_path(name))
        return data

    def _wildcard_listing(self, wildcard: Wildcard) -> tuple:
        owner = wildcard.owner
        params = {
            "archived": _bool_param(wildcard.archived),
            "search": wildcard.search,
            "simple": "true",
        }
        if owner.kind == "user":
            return f"users/{owner.name}/projects", params
        if owner.kind == "group":
            params["with_shared"] = "false"
            params["include_subgroups"] = _bool_param(owner.include_subgroups)
            return f"groups/{owner.name}/projects", params
        return "projects", params

    def list_projects(self, wildcard: Wildcard) -> list:
        """Return the projects found by a wildcard, carrying the wildcard's parameters."""
        log.debug(
            "listing all projects from wildcard (search=%r, owner-kind=%r, owner-name=%r)",
            wildcard.search,
            wildcard.owner.kind,
            wildcard.owner.name,
        )
        # The API returns whatever the owner can access; keep only what it owns.
        if wildcard.owner.name:
            owner_pattern = _compile(f"^{wildcard.owner.name}/")
        else:
            owner_pattern = re.compile(".*")

        path, params = self._wildcard_listing(wildcard)
        projects = []
        try:
            for page in self._paginate(path, params):
                for found in page:
                    path_with_namespace = found.get("path_with_namespace") or ""
                    if not owner_pattern.search(path_with_namespace):
                        log.debug(
                            "project path not matching owner's name, skipping (%s)",
                            path_with_namespace,
                        )
                        continue
                    projects.append(
                        Project(
                            name=path_with_namespace,
                            pull=copy.deepcopy(wildcard.pull),
                            output_sparse_status_metrics=wildcard.output_sparse_status_metrics,
                        )
                    )
        except ApiError as exc:
            raise ApiError(
                f"unable to list projects with search pattern '{wildcard.search}' "
                f"from the GitLab API : {exc}",
                exc.status_code,
            ) from exc
        return projects

    def get_project_environments(self, project: Project) -> dict:
        """Return the project's environments matching its filter, keyed by environment key."""
        pattern = _compile(project.pull.environments.regexp)
        params: dict = {}
        if project.pull.environments.exclude_stopped:
            params["states"] = "available"

        environments = {}
        for page in self._paginate(f"{_project_path(project.name)}/environments", params):
            for found in page:
                name = found.get("name") or ""
                if not pattern.search(name):
                    continue
                env = Environment(
                    project_name=project.name,
                    name=name,
                    id=int(found.get("id") or 0),
                    available=found.get("state") == "available",
                    output_sparse_status_metrics=project.output_sparse_status_metrics,
                )
                environments[env.key()] = env
        return environments

    def get_environment(self, project: str, environment_id: int) -> Environment:
        """Return an environment with the details of its latest deployment."""
        environment = Environment(project_name=project, id=environment_id)
        data, _ = self._get(f"{_project_path(project)}/environments/{environment_id}")
        if not data:
            return environment

        environment.name = data.get("name") or ""
        environment.external_url = data.get("external_url") or ""
        environment.available = data.get("state") == "available"

        last: Optional[dict[str, Any]] = data.get("last_deployment")
        if not last:
            log.debug(
                "no deployments found for the environment %s of project %s",
                environment.name,
                project,
            )
            return environment

        deployable = last.get("deployable") or {}
        deployment = environment.latest_deployment
        deployment.ref_kind = RefKind.TAG if deployable.get("tag") else RefKind.BRANCH
        deployment.ref_name = last.get("ref") or ""
        deployment.job_id = int(deployable.get("id") or 0)
        deployment.duration_seconds = float(deployable.get("duration") or 0.0)
        deployment.status = deployable.get("status") or ""

        user = deployable.get("user")
        if user:
            deployment.username = user.get("username") or ""

        commit = deployable.get("commit")
        if commit:
            deployment.commit_short_id = commit.get("short_id") or ""

        if last.get("created_at"):
            deployment.timestamp = parse_timestamp(last["created_at"])

        return environment