"""Turn a submitted GitHub URL into an immutable RepoReference.

Supported forms: bare repo URL, /tree/<branch> and /commit/<sha>, with or
without www and over http or https. Branches (and the default branch when no
ref is given) are pinned to their current head commit.
"""

import logging
import re
from dataclasses import dataclass
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from .config import GITHUB_API_URL
from .errors import FetchError, InvalidRepoReferenceError, NotFoundError
from .models import RepoReference
from .snapshot import USER_AGENT, raise_for_github_status

logger = logging.getLogger(__name__)

_NAME = r"([\w.-]+)"
COMMIT_URL = re.compile(rf"^https://github\.com/{_NAME}/{_NAME}/commit/(\w+)")
TREE_URL = re.compile(rf"^https://github\.com/{_NAME}/{_NAME}/tree/([\w./-]+)")
REPO_URL = re.compile(rf"^https://github\.com/{_NAME}/{_NAME}/?$")


@dataclass
class ParsedRepoUrl:
    owner: str
    repo: str
    ref_type: str | None = None      # "commit" | "branch" | None
    ref: str | None = None


@dataclass
class ResolvedRepo:
    reference: RepoReference
    ref_type: str
    ref: str


def parse_github_repo_url(url: str) -> ParsedRepoUrl:
    normalized = url.strip()
    normalized = re.sub(r"^http://", "https://", normalized)
    normalized = re.sub(r"^https://www\.", "https://", normalized)

    if m := COMMIT_URL.match(normalized):
        return ParsedRepoUrl(m.group(1), m.group(2), "commit", m.group(3))
    if m := TREE_URL.match(normalized):
        return ParsedRepoUrl(m.group(1), m.group(2), "branch", m.group(3))
    if m := REPO_URL.match(normalized):
        repo = m.group(2)
        if repo.endswith(".git"):
            repo = repo[:-4]
        return ParsedRepoUrl(m.group(1), repo)

    raise InvalidRepoReferenceError(f"Invalid GitHub repository URL format: {url!r}")


class GitHubResolver:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_url: str = GITHUB_API_URL,
        token: str | None = None,
    ) -> None:
        self._http = http_client
        self._api_url = api_url.rstrip("/")
        self._token = token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json", "User-Agent": USER_AGENT}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _get_json(self, path: str, not_found: str, params: dict | None = None):
        try:
            response = await self._http.get(
                f"{self._api_url}{path}", headers=self._headers(), params=params
            )
        except httpx.HTTPError as e:
            raise FetchError(f"GitHub API request failed: {e}") from e
        if response.status_code == 404:
            raise NotFoundError(not_found)
        raise_for_github_status(response)
        return response.json()

    async def fetch_repo_metadata(self, owner: str, repo: str) -> dict:
        data = await self._get_json(f"/repos/{owner}/{repo}", "Repository not found")
        if data.get("private"):
            raise InvalidRepoReferenceError(
                "Repository must be public. Please make the repo public and resubmit."
            )
        return data

    async def resolve_branch(self, owner: str, repo: str, branch: str) -> str:
        commits = await self._get_json(
            f"/repos/{owner}/{repo}/commits",
            f"Branch '{branch}' not found",
            params={"sha": branch, "per_page": 1},
        )
        if not commits:
            raise NotFoundError(f"No commits found for branch '{branch}'")
        return commits[0]["sha"]

    async def resolve_commit(self, owner: str, repo: str, sha: str) -> str:
        """Verify sha exists and return its full form (abbreviated hashes are expanded)."""
        data = await self._get_json(
            f"/repos/{owner}/{repo}/commits/{quote(sha, safe='')}",
            f"Commit '{sha}' not found in repository",
        )
        return data["sha"]

    async def resolve(self, url: str) -> ResolvedRepo:
        parsed = parse_github_repo_url(url)
        metadata = await self.fetch_repo_metadata(parsed.owner, parsed.repo)

        if parsed.ref_type == "commit" and parsed.ref:
            ref_type, ref = "commit", parsed.ref
            revision = await self.resolve_commit(parsed.owner, parsed.repo, parsed.ref)
        elif parsed.ref_type == "branch" and parsed.ref:
            ref_type, ref = "branch", parsed.ref
            revision = await self.resolve_branch(parsed.owner, parsed.repo, parsed.ref)
        else:
            ref_type, ref = "branch", metadata["default_branch"]
            revision = await self.resolve_branch(parsed.owner, parsed.repo, ref)

        try:
            reference = RepoReference(owner=parsed.owner, repo=parsed.repo, pinned_revision=revision)
        except ValidationError as e:
            raise InvalidRepoReferenceError(str(e)) from e

        logger.info("Resolved %s (%s %s) to %s", url, ref_type, ref, reference)
        return ResolvedRepo(reference=reference, ref_type=ref_type, ref=ref)
