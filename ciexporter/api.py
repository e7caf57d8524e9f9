"""HTTP client for the GitLab REST API: transport, rate limiting, branches, tags and comparisons."""

from __future__ import annotations

import collections
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Iterator, Optional
from urllib.parse import quote

import requests

from .schemas import Project, Ref, RefKind, get_ref_regexp, parse_timestamp

USER_AGENT = "ciexporter"
READINESS_TIMEOUT_SECONDS = 5.0
PER_PAGE = 100
_API_PATH = "/api/v4"


class ApiError(Exception):
    """Raised when the GitLab API cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimiter:
    """Token bucket allowing ``rate`` requests per second with bursts of ``burst``."""

    def __init__(self, rate: float, burst: int = 1) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.burst = max(1, int(burst))
        self._tokens = float(self.burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def take(self) -> float:
        """Block until a request may be made; return the time waited in seconds."""
        with self._lock:
            now = time.monotonic()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.rate)
            self._last = now
            self._tokens -= 1.0
            wait = -self._tokens / self.rate if self._tokens < 0 else 0.0
        if wait > 0:
            time.sleep(wait)
        return wait


@dataclass
class ClientConfig:
    """Settings for building a Client."""

    url: str = "https://gitlab.com"
    token: str = ""
    user_agent_version: str = "devel"
    disable_tls_verify: bool = False
    readiness_url: str = ""
    rate_limiter: Optional[RateLimiter] = None


def make_session(disable_tls_verify: bool) -> requests.Session:
    """Build an HTTP session honouring proxy settings from the environment."""
    session = requests.Session()
    session.verify = not disable_tls_verify
    return session


def _compile(pattern: str) -> "re.Pattern[str]":
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"error parsing regexp: {exc}: `{pattern}`") from None


def _header_int(response: requests.Response, name: str) -> int:
    try:
        return int(response.headers.get(name, "") or 0)
    except ValueError:
        return 0


def _project_path(name: Any) -> str:
    return "projects/" + quote(str(name), safe="")


class Client:
    """GitLab API client with rate limiting and request accounting."""

    def __init__(self, config: ClientConfig) -> None:
        base = config.url.rstrip("/")
        self.api_url = base if base.endswith(_API_PATH) else base + _API_PATH
        self.user_agent = f"{USER_AGENT}-{config.user_agent_version}"
        self.session = make_session(config.disable_tls_verify)
        self.session.headers["User-Agent"] = self.user_agent
        if config.token:
            self.session.headers["Authorization"] = f"Bearer {config.token}"
        self.readiness_url = config.readiness_url
        self.readiness_session: Optional[requests.Session] = make_session(
            config.disable_tls_verify
        )
        self.readiness_timeout = READINESS_TIMEOUT_SECONDS
        self.rate_limiter = config.rate_limiter
        self.requests_counter = 0
        self.requests_limit = 0
        self.requests_remaining = 0
        self._recent: collections.deque = collections.deque()
        self._lock = threading.Lock()

    @property
    def requests_rate(self) -> int:
        """Number of requests made during the last second."""
        with self._lock:
            self._prune(time.monotonic())
            return len(self._recent)

    def _prune(self, now: float) -> None:
        while self._recent and now - self._recent[0] > 1.0:
            self._recent.popleft()

    def _rate_limit(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.take()
        with self._lock:
            now = time.monotonic()
            self.requests_counter += 1
            self._recent.append(now)
            self._prune(now)

    def _update_limits(self, response: requests.Response) -> None:
        remaining = response.headers.get("RateLimit-Remaining")
        if remaining:
            self.requests_remaining = _header_int(response, "RateLimit-Remaining")
        limit = response.headers.get("RateLimit-Limit")
        if limit:
            self.requests_limit = _header_int(response, "RateLimit-Limit")

    def _get(self, path: str, params: Optional[dict] = None) -> tuple:
        """GET an API path; return the decoded body and the response."""
        self._rate_limit()
        url = f"{self.api_url}/{path}"
        try:
            response = self.session.get(url, params=params)
        except requests.RequestException as exc:
            raise ApiError(f"GET {url}: {exc}") from exc
        if response.status_code >= 400:
            raise ApiError(
                f"GET {response.url}: {response.status_code} {response.text.strip()}",
                response.status_code,
            )
        self._update_limits(response)
        if not response.content:
            return None, response
        try:
            return response.json(), response
        except ValueError as exc:
            raise ApiError(f"GET {response.url}: invalid JSON body: {exc}") from exc

    def _paginate(self, path: str, params: Optional[dict] = None) -> Iterator[list]:
        """Yield the items of each page until the last page is reached."""
        query = dict(params or {})
        page = query.pop("page", 1)
        query.setdefault("per_page", PER_PAGE)
        while True:
            data, response = self._get(path, {**query, "page": page})
            yield data or []
            current = _header_int(response, "X-Page")
            next_page = _header_int(response, "X-Next-Page")
            if current >= next_page:
                return
            page = next_page

    def readiness_check(self) -> None:
        """Raise ApiError unless the readiness URL answers 200."""
        if self.readiness_session is None:
            raise ApiError("readiness http client not configured")
        try:
            response = self.readiness_session.get(
                self.readiness_url, timeout=self.readiness_timeout
            )
        except requests.RequestException as exc:
            raise ApiError(str(exc)) from exc
        if response.status_code != 200:
            raise ApiError(f"HTTP error: {response.status_code}", response.status_code)

    def get_project_branches(self, project: Project) -> dict:
        """Return the project's branches matching its branch filter, keyed by ref key."""
        pattern = get_ref_regexp(project.pull.refs, RefKind.BRANCH)
        refs = {}
        for branches in self._paginate(f"{_project_path(project.name)}/repository/branches"):
            for branch in branches:
                name = branch.get("name") or ""
                if pattern.search(name):
                    ref = Ref(project, RefKind.BRANCH, name)
                    refs[ref.key()] = ref
        return refs

    def get_branch_latest_commit(self, project: str, branch: str) -> tuple:
        """Return the short id and commit time of the branch head."""
        data, _ = self._get(
            f"{_project_path(project)}/repository/branches/{quote(branch, safe='')}"
        )
        commit = (data or {}).get("commit") or {}
        return commit.get("short_id") or "", parse_timestamp(commit.get("committed_date"))

    def get_project_tags(self, project: Project) -> dict:
        """Return the project's tags matching its tag filter, keyed by ref key."""
        pattern = get_ref_regexp(project.pull.refs, RefKind.TAG)
        refs = {}
        for tags in self._paginate(f"{_project_path(project.name)}/repository/tags"):
            for tag in tags:
                name = tag.get("name") or ""
                if pattern.search(name):
                    ref = Ref(project, RefKind.TAG, name)
                    refs[ref.key()] = ref
        return refs

    def get_project_most_recent_tag_commit(self, project_name: str, filter_regexp: str) -> tuple:
        """Return short id and commit time of the newest tag matching the filter, or ("", 0)."""
        pattern = _compile(filter_regexp)
        for tags in self._paginate(f"{_project_path(project_name)}/repository/tags"):
            for tag in tags:
                if pattern.search(tag.get("name") or ""):
                    commit = tag.get("commit") or {}
                    return (
                        commit.get("short_id") or "",
                        parse_timestamp(commit.get("committed_date")),
                    )
        return "", 0.0

    def get_commit_count_between_refs(self, project: str, from_ref: str, to_ref: str) -> int:
        """Count the commits between two refs."""
        data, _ = self._get(
            f"{_project_path(project)}/repository/compare",
            {"from": from_ref, "to": to_ref, "straight": "true"},
        )
        if not isinstance(data, dict):
            raise ApiError("could not compare refs successfully")
        return len(data.get("commits") or [])