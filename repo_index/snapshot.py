"""Repository snapshots: download a pinned archive and extract it safely.

A snapshot is owned by exactly one indexing run and is always removed
afterwards, whichever stage failed. Use `SnapshotAcquirer.open` to get that
guarantee.
"""

import hashlib
import logging
import re
import shutil
import stat
import uuid
import zipfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import httpx

from .config import GITHUB_API_URL, MAX_EXTRACTED_BYTES, SnapshotLimits
from .errors import (
    FetchError,
    InvalidRepoReferenceError,
    NotFoundError,
    PathSecurityError,
    RateLimitedError,
    RepoIndexError,
    SizeLimitExceededError,
)
from .models import RepoReference, Snapshot

logger = logging.getLogger(__name__)

USER_AGENT = "repo-index/0.1"
DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
SAFE_SESSION_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def build_archive_url(ref: RepoReference, api_url: str = GITHUB_API_URL) -> str:
    return f"{api_url.rstrip('/')}/repos/{ref.owner}/{ref.repo}/zipball/{ref.pinned_revision}"


def session_dir_name(session_id: str) -> str:
    """Directory name for a session id. Plain ids are kept; anything else is sanitized and hashed."""
    if SAFE_SESSION_ID.match(session_id):
        return session_id
    digest = hashlib.sha256(session_id.encode()).hexdigest()[:12]
    readable = re.sub(r"[^A-Za-z0-9_-]", "_", session_id).strip("_")[:48]
    return f"{readable}-{digest}" if readable else digest


def _entry_parts(entry_name: str) -> list[str]:
    return [p for p in entry_name.replace("\\", "/").split("/") if p and p != "."]


def _is_symlink(info: zipfile.ZipInfo) -> bool:
    return stat.S_ISLNK(info.external_attr >> 16)


def _resolve_entry(dest: Path, entry_name: str) -> Path:
    """Map an archive entry onto a path inside `dest`, or raise PathSecurityError."""
    normalized = entry_name.replace("\\", "/")
    if normalized.startswith("/") or DRIVE_PREFIX.match(normalized):
        raise PathSecurityError(entry_name)
    parts = _entry_parts(normalized)
    if not parts or ".." in parts:
        raise PathSecurityError(entry_name)
    target = dest.joinpath(*parts).resolve()
    if target == dest or not target.is_relative_to(dest):
        raise PathSecurityError(entry_name)
    return target


def extract_archive(
    archive_path: Path,
    dest_dir: Path,
    max_extracted_bytes: int = MAX_EXTRACTED_BYTES,
) -> str:
    """Extract a zip archive into dest_dir and return its top-level directory name.

    Directory entries are only used to detect the top-level directory and
    symlink entries are skipped. Any entry that would land outside dest_dir
    rejects the whole archive; dest_dir is removed before the error propagates.
    """
    dest = Path(dest_dir).resolve()
    dest.mkdir(parents=True, exist_ok=True)

    top_level_dir_name: str | None = None
    extracted_bytes = 0

    try:
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    parts = [p for p in _entry_parts(info.filename) if p != ".."]
                    if parts and top_level_dir_name is None:
                        top_level_dir_name = parts[0]
                    continue

                if _is_symlink(info):
                    logger.warning("Skipping symlink entry: %s", info.filename)
                    continue

                target = _resolve_entry(dest, info.filename)
                if top_level_dir_name is None:
                    top_level_dir_name = target.relative_to(dest).parts[0]

                extracted_bytes += info.file_size
                if extracted_bytes > max_extracted_bytes:
                    raise SizeLimitExceededError(
                        f"Repository archive expands beyond {max_extracted_bytes} bytes"
                    )

                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)

        if top_level_dir_name is None:
            raise FetchError("Could not determine top-level directory from archive")
        return top_level_dir_name
    except PathSecurityError as e:
        logger.error("Rejected archive %s: unsafe entry %r", archive_path, e.entry_name)
        shutil.rmtree(dest, ignore_errors=True)
        raise
    except zipfile.BadZipFile as e:
        shutil.rmtree(dest, ignore_errors=True)
        raise FetchError(f"Downloaded archive is not a valid zip file: {e}") from e
    except BaseException:
        shutil.rmtree(dest, ignore_errors=True)
        raise


def _remove_snapshot_files(archive_path: Path, extract_dir: Path) -> None:
    failures: list[OSError] = []

    try:
        archive_path.unlink(missing_ok=True)
    except OSError as e:
        failures.append(e)

    try:
        if extract_dir.exists():
            shutil.rmtree(extract_dir)
    except OSError as e:
        failures.append(e)

    session_dir = extract_dir.parent
    try:
        if session_dir.is_dir() and not any(session_dir.iterdir()):
            session_dir.rmdir()
    except OSError as e:
        # Another run for the same session may still be using it.
        logger.debug("Left session directory %s in place: %s", session_dir, e)

    if failures:
        logger.warning("Some snapshot cleanup operations failed: %s", failures)


def cleanup_snapshot(snapshot: Snapshot) -> None:
    """Remove a snapshot's archive and extraction directory. Never raises."""
    _remove_snapshot_files(snapshot.archive_path, snapshot.extract_dir)


def raise_for_github_status(response: httpx.Response) -> None:
    if response.status_code == 404:
        raise NotFoundError(
            "Repo not found or not public. Candidates must submit a public GitHub repo."
        )
    if response.status_code in (403, 429):
        remaining = response.headers.get("x-ratelimit-remaining")
        reset = response.headers.get("x-ratelimit-reset")
        logger.error("GitHub API rate limit hit. Remaining: %s, Reset: %s", remaining, reset)
        raise RateLimitedError(
            "GitHub API rate limit exceeded. Please try again later.",
            remaining=remaining,
            reset=reset,
        )
    if not response.is_success:
        raise FetchError(f"GitHub API error: {response.status_code} {response.reason_phrase}")


class SnapshotAcquirer:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        limits: SnapshotLimits | None = None,
        api_url: str = GITHUB_API_URL,
        token: str | None = None,
    ) -> None:
        self._http = http_client
        self._limits = limits or SnapshotLimits()
        self._api_url = api_url
        self._token = token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json", "User-Agent": USER_AGENT}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def download_archive(self, url: str, dest_path: Path) -> int:
        """Stream url to dest_path and return the number of bytes written.

        The byte ceiling is enforced on the declared Content-Length and again on
        the running total before each chunk is written, so the file never holds
        more than the ceiling. On any failure the partial file is removed.
        """
        limit = self._limits.max_download_bytes
        bytes_downloaded = 0

        try:
            async with self._http.stream(
                "GET", url, headers=self._headers(), follow_redirects=True
            ) as response:
                raise_for_github_status(response)

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise SizeLimitExceededError(
                        f"Repository archive exceeds maximum size of {limit} bytes "
                        f"(declared {declared})"
                    )

                with open(dest_path, "wb") as f:
                    async for data in response.aiter_bytes(self._limits.download_chunk_bytes):
                        bytes_downloaded += len(data)
                        if bytes_downloaded > limit:
                            raise SizeLimitExceededError(
                                f"Repository archive exceeds maximum size of {limit} bytes "
                                "during download"
                            )
                        f.write(data)
        except httpx.HTTPError as e:
            Path(dest_path).unlink(missing_ok=True)
            raise FetchError(f"Failed to download repository archive: {e}") from e
        except RepoIndexError:
            Path(dest_path).unlink(missing_ok=True)
            raise

        return bytes_downloaded

    async def acquire(self, ref: RepoReference, session_id: str | None = None) -> Snapshot:
        """Download and extract ref. The caller owns cleanup of the result."""
        temp_root = self._limits.temp_root.resolve()
        session_dir = temp_root / session_dir_name(session_id or uuid.uuid4().hex[:16])
        resolved = session_dir.resolve()
        if resolved == temp_root or not resolved.is_relative_to(temp_root):
            raise InvalidRepoReferenceError(f"Session directory for {session_id!r} escapes {temp_root}")
        dir_name = f"{ref.owner}-{ref.repo}-{ref.short_revision}"
        extract_dir = session_dir / dir_name
        archive_path = session_dir / f"{dir_name}.zip"
        extract_dir.mkdir(parents=True, exist_ok=True)

        try:
            bytes_downloaded = await self.download_archive(
                build_archive_url(ref, self._api_url), archive_path
            )
        except BaseException:
            logger.error("Failed to download repo snapshot: %s", ref)
            _remove_snapshot_files(archive_path, extract_dir)
            raise

        try:
            top_level_dir_name = extract_archive(
                archive_path, extract_dir, self._limits.max_extracted_bytes
            )
        except BaseException:
            logger.error("Failed to extract repo snapshot: %s", ref)
            _remove_snapshot_files(archive_path, extract_dir)
            raise

        extract_dir = extract_dir.resolve()
        return Snapshot(
            root_path=extract_dir / top_level_dir_name,
            extract_dir=extract_dir,
            archive_path=archive_path,
            bytes_downloaded=bytes_downloaded,
            top_level_dir_name=top_level_dir_name,
        )

    @asynccontextmanager
    async def open(self, ref: RepoReference, session_id: str | None = None) -> AsyncIterator[Snapshot]:
        snapshot = await self.acquire(ref, session_id)
        try:
            yield snapshot
        finally:
            cleanup_snapshot(snapshot)
