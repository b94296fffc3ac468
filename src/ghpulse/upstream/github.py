"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

GitHub REST client used as the upstream data source.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..errors import NotFoundError, UpstreamRateLimitedError, UpstreamUnavailableError
from ..types import Document, JSONValue, RefreshType

logger = logging.getLogger("ghpulse.upstream.github")

PROFILE_FIELDS = (
    "login",
    "name",
    "avatar_url",
    "bio",
    "public_repos",
    "followers",
    "following",
    "html_url",
    "email",
)
REPOSITORY_FIELDS = (
    "id",
    "name",
    "full_name",
    "description",
    "language",
    "stargazers_count",
    "forks_count",
    "open_issues_count",
    "html_url",
    "created_at",
    "updated_at",
)


@dataclass(frozen=True, slots=True)
class HttpResponse:
    """Raw HTTP response with lower-cased header names."""

    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)


HttpGet = Callable[[str, Mapping[str, str], float], HttpResponse]


def urllib_get(url: str, headers: Mapping[str, str], timeout_s: float) -> HttpResponse:
    """Blocking GET returning error statuses as responses instead of raising."""
    req = urllib.request.Request(url, method="GET", headers=dict(headers))
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:  # noqa: S310
            return HttpResponse(
                status=resp.status,
                body=resp.read(),
                headers={k.lower(): v for k, v in resp.headers.items()},
            )
    except urllib.error.HTTPError as e:
        body = b""
        try:
            body = e.read()
        except Exception:  # noqa: BLE001
            body = b""
        return HttpResponse(
            status=e.code,
            body=body,
            headers={k.lower(): v for k, v in (e.headers or {}).items()},
        )
    except TimeoutError as e:
        raise UpstreamUnavailableError(
            f"Timed out calling {url}", reason="timeout"
        ) from e
    except urllib.error.URLError as e:
        raise UpstreamUnavailableError(f"Network error calling {url}: {e.reason}") from e


def normalize_profile(raw: Mapping[str, Any]) -> Document:
    """Keep the profile fields the dashboard reads."""
    return {name: raw.get(name) for name in PROFILE_FIELDS}


def normalize_repositories(raw: list[Any]) -> Document:
    """Reduce a repository listing to stable fields plus the language set."""
    repos: list[JSONValue] = []
    languages: list[JSONValue] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        repos.append({name: item.get(name) for name in REPOSITORY_FIELDS})
        language = item.get("language")
        if isinstance(language, str) and language and language not in languages:
            languages.append(language)
    return {"repositories": repos, "languages": languages, "count": len(repos)}


class GitHubClient:
    """
    Async GitHub REST client implementing `UpstreamSource`.

    Blocking ``urllib`` calls run in worker threads. Every call is bounded by
    ``timeout_s``; a timeout is an upstream failure, never a success.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        api_base_url: str = "https://api.github.com",
        user_agent: str = "GitHub-Profile-Analyzer",
        timeout_s: float = 60.0,
        http_get: HttpGet | None = None,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self._token = token
        self._api_base_url = api_base_url.rstrip("/")
        self._user_agent = user_agent
        self._timeout_s = timeout_s
        self._http_get = http_get or urllib_get

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": self._user_agent,
        }
        if self._token:
            headers["Authorization"] = f"token {self._token}"
        return headers

    async def fetch(self, subject_key: str, refresh_type: RefreshType) -> Document:
        login = urllib.parse.quote(subject_key, safe="")
        if refresh_type == "profile":
            data = await self._get_json(f"/users/{login}", subject_key)
            if not isinstance(data, dict) or not data.get("login"):
                raise UpstreamUnavailableError(
                    f"Invalid GitHub profile response for '{subject_key}'"
                )
            return normalize_profile(data)
        if refresh_type == "repos":
            data = await self._get_json(
                f"/users/{login}/repos?per_page=100&sort=updated", subject_key
            )
            if not isinstance(data, list):
                raise UpstreamUnavailableError(
                    f"Invalid GitHub repositories response for '{subject_key}'"
                )
            return normalize_repositories(data)
        raise ValueError(f"Unknown refresh type: {refresh_type}")

    async def rate_limit_status(self) -> Document:
        """Return GitHub's own view of the token's remaining quota."""
        data = await self._get_json("/rate_limit", "rate_limit")
        if not isinstance(data, dict):
            raise UpstreamUnavailableError("Invalid GitHub rate limit response")
        return data

    async def _get_json(self, path: str, subject_key: str) -> JSONValue:
        url = f"{self._api_base_url}{path}"
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self._http_get, url, self._headers(), self._timeout_s),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailableError(
                f"Timed out after {self._timeout_s:.0f}s calling GitHub for '{subject_key}'",
                reason="timeout",
            ) from exc

        self._raise_for_status(response, subject_key)
        try:
            return json.loads(response.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise UpstreamUnavailableError(
                f"Invalid JSON from GitHub for '{subject_key}'",
                status_code=response.status,
            ) from exc

    def _raise_for_status(self, response: HttpResponse, subject_key: str) -> None:
        status = response.status
        if 200 <= status < 300:
            return
        if status == 404:
            raise NotFoundError(
                subject_key,
                f"The GitHub username \"{subject_key}\" could not be found.",
            )
        remaining = response.headers.get("x-ratelimit-remaining")
        if status == 429 or (status == 403 and remaining == "0"):
            reset_raw = response.headers.get("x-ratelimit-reset")
            reset_at = float(reset_raw) if reset_raw and reset_raw.isdigit() else None
            raise UpstreamRateLimitedError(
                f"GitHub rate limit exceeded while fetching '{subject_key}'",
                status_code=status,
                reset_at=reset_at,
            )
        detail = response.body[:200].decode("utf-8", errors="replace")
        logger.warning(
            "GitHub API error %d for %s: %s", status, subject_key, detail or "<empty>"
        )
        raise UpstreamUnavailableError(
            f"GitHub API error {status} for '{subject_key}'",
            status_code=status,
        )
