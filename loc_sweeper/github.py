"""
Discovers projects to track from the GitHub REST API.
"""
import logging
from typing import Any, Dict, List, Optional

import requests

from .errors import SourceUnavailable
from .models import Project

logger = logging.getLogger(__name__)

API_BASE = "https://api.github.com"
HEADERS_COMMON = {
    "Accept": "application/vnd.github.v3+json",
    "User-Agent": "loc-sweeper/1.0",
}


def request_with_auth(url: str, token: Optional[str] = None, params: Optional[dict] = None) -> requests.Response:
    """
    GET `url` with the standard headers and an Authorization header when a
    token is given. Callers check the status code themselves.
    """
    headers = HEADERS_COMMON.copy()
    if token:
        headers["Authorization"] = f"token {token}"
    return requests.get(url, headers=headers, params=params or {}, timeout=30)


def paginate(url: str, token: Optional[str] = None, params: Optional[dict] = None) -> List[Dict[str, Any]]:
    """
    Follow `rel="next"` Link headers and concatenate the JSON lists returned.

    `params` apply to the first request only; later URLs already carry them.
    Raises SourceUnavailable on network errors and HTTP >= 400.
    """
    items: List[Dict[str, Any]] = []
    cur_url: Optional[str] = url
    cur_params = params or {}
    while cur_url:
        try:
            r = request_with_auth(cur_url, token, params=cur_params)
        except requests.RequestException as exc:
            raise SourceUnavailable(f"GitHub API request failed for {cur_url}: {exc}") from exc
        if r.status_code >= 400:
            raise SourceUnavailable(f"GitHub API error {r.status_code} for {cur_url}: {r.text[:200]}")
        batch = r.json()
        if isinstance(batch, list):
            items.extend(batch)
        else:
            items.append(batch)
        cur_url = r.links.get("next", {}).get("url")
        cur_params = None
    return items


def discover_projects(owner: str,
                      token: Optional[str] = None,
                      include_forks: bool = False,
                      include_archived: bool = False) -> List[Project]:
    """
    List the public repositories of `owner` as Projects.

    Forks and archived repositories are skipped unless asked for, private
    repositories always are (the web card would leak their composition).
    """
    url = f"{API_BASE}/users/{owner}/repos"
    repos = paginate(url, token=token, params={"per_page": 100, "type": "owner", "sort": "pushed"})
    logger.info("Found %d repos for %s", len(repos), owner)

    projects = []
    for repo in repos:
        if repo.get("private"):
            continue
        if repo.get("fork") and not include_forks:
            continue
        if repo.get("archived") and not include_archived:
            continue
        projects.append(Project(
            owner=repo.get("owner", {}).get("login") or owner,
            name=repo["name"],
            title=repo["name"],
            remote_url=repo.get("clone_url"),
            branch=repo.get("default_branch"),
        ))
    return projects
