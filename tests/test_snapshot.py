"""Tests for archive download, safe extraction and snapshot cleanup."""

import io
import stat
import zipfile

import httpx
import pytest

from conftest import REVISION, TOP_LEVEL, build_zip
from repo_index.config import SnapshotLimits
from repo_index.errors import (
    FetchError,
    NotFoundError,
    PathSecurityError,
    RateLimitedError,
    SizeLimitExceededError,
)
from repo_index.snapshot import build_archive_url, cleanup_snapshot, extract_archive, session_dir_name


def _zip_with_entries(entries: list[zipfile.ZipInfo | str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for entry in entries:
            zf.writestr(entry, "payload")
    return buf.getvalue()


class TestBuildArchiveUrl:
    """Tests for the pinned archive URL."""

    def test_uses_full_revision(self, repo_ref):
        """The URL pins the full commit hash, never a branch."""
        url = build_archive_url(repo_ref)
        assert url == f"https://api.github.com/repos/acme/widgets/zipball/{REVISION}"

    def test_custom_api_url_trailing_slash(self, repo_ref):
        """A trailing slash on the API base is not doubled."""
        url = build_archive_url(repo_ref, "https://ghe.example.com/api/v3/")
        assert url.startswith("https://ghe.example.com/api/v3/repos/acme/widgets/zipball/")


class TestExtractArchive:
    """Tests for zip extraction and containment."""

    def test_extracts_and_returns_top_level(self, tmp_path):
        """Files land under the archive's top-level directory."""
        archive = tmp_path / "repo.zip"
        archive.write_bytes(build_zip({"src/app.py": "print('hi')\n"}))

        top = extract_archive(archive, tmp_path / "out")

        assert top == TOP_LEVEL
        assert (tmp_path / "out" / TOP_LEVEL / "src" / "app.py").read_text() == "print('hi')\n"

    def test_top_level_from_first_file_without_directory_entry(self, tmp_path):
        """Archives without explicit directory entries still yield a top-level name."""
        archive = tmp_path / "repo.zip"
        archive.write_bytes(_zip_with_entries(["root-dir/a.py"]))

        assert extract_archive(archive, tmp_path / "out") == "root-dir"

    @pytest.mark.parametrize("entry", ["../evil.py", "root/../../evil.py", "/etc/evil.py", "C:/evil.py"])
    def test_rejects_escaping_entries(self, tmp_path, entry):
        """Any entry that would escape the destination rejects the archive and removes the directory."""
        archive = tmp_path / "evil.zip"
        archive.write_bytes(_zip_with_entries(["root/ok.py", entry]))
        dest = tmp_path / "out"

        with pytest.raises(PathSecurityError) as exc_info:
            extract_archive(archive, dest)

        assert exc_info.value.entry_name == entry
        assert "Zip slip detected" in str(exc_info.value)
        assert not dest.exists()
        assert not (tmp_path / "evil.py").exists()

    def test_skips_symlinks(self, tmp_path):
        """Symlink entries are skipped rather than materialised."""
        link = zipfile.ZipInfo("root/link.py")
        link.external_attr = (stat.S_IFLNK | 0o777) << 16
        archive = tmp_path / "repo.zip"
        archive.write_bytes(_zip_with_entries(["root/real.py", link]))

        extract_archive(archive, tmp_path / "out")

        assert (tmp_path / "out" / "root" / "real.py").exists()
        assert not (tmp_path / "out" / "root" / "link.py").exists()

    def test_extracted_size_ceiling(self, tmp_path):
        """Expanding past the extraction ceiling fails and cleans up."""
        archive = tmp_path / "repo.zip"
        archive.write_bytes(build_zip({"big.py": "x" * 5000}))
        dest = tmp_path / "out"

        with pytest.raises(SizeLimitExceededError):
            extract_archive(archive, dest, max_extracted_bytes=1000)
        assert not dest.exists()

    def test_empty_archive(self, tmp_path):
        """An archive without entries has no top-level directory."""
        archive = tmp_path / "repo.zip"
        archive.write_bytes(_zip_with_entries([]))

        with pytest.raises(FetchError, match="top-level directory"):
            extract_archive(archive, tmp_path / "out")

    def test_corrupt_archive(self, tmp_path):
        """A non-zip payload is a fetch error."""
        archive = tmp_path / "repo.zip"
        archive.write_bytes(b"not a zip")

        with pytest.raises(FetchError):
            extract_archive(archive, tmp_path / "out")


class TestSnapshotAcquirer:
    """Tests for downloading and owning snapshots."""

    @pytest.mark.asyncio
    async def test_acquire_layout(self, acquirer, fake_github, repo_ref, snapshot_limits):
        """Snapshot lives under <temp_root>/<session>/<owner>-<repo>-<sha7>/."""
        fake_github.archives[REVISION] = build_zip({"main.py": "x = 1\n"})

        snapshot = await acquirer.acquire(repo_ref, session_id="sub-1")

        expected_dir = (snapshot_limits.temp_root / "sub-1" / "acme-widgets-0123456").resolve()
        assert snapshot.extract_dir == expected_dir
        assert snapshot.root_path == expected_dir / TOP_LEVEL
        assert snapshot.archive_path.name == "acme-widgets-0123456.zip"
        assert snapshot.bytes_downloaded == len(fake_github.archives[REVISION])
        assert (snapshot.root_path / "main.py").exists()

    @pytest.mark.asyncio
    async def test_open_cleans_up(self, acquirer, fake_github, repo_ref, snapshot_limits):
        """Leaving the context removes archive, extraction and the empty session directory."""
        fake_github.archives[REVISION] = build_zip({"main.py": "x = 1\n"})

        async with acquirer.open(repo_ref, session_id="sub-1") as snapshot:
            assert snapshot.root_path.exists()

        assert not snapshot.extract_dir.exists()
        assert not snapshot.archive_path.exists()
        assert not (snapshot_limits.temp_root / "sub-1").exists()

    @pytest.mark.asyncio
    async def test_open_cleans_up_on_error(self, acquirer, fake_github, repo_ref):
        """Cleanup also runs when the body raises."""
        fake_github.archives[REVISION] = build_zip({"main.py": "x = 1\n"})

        with pytest.raises(RuntimeError):
            async with acquirer.open(repo_ref, session_id="sub-1") as snapshot:
                raise RuntimeError("boom")

        assert not snapshot.extract_dir.exists()

    @pytest.mark.asyncio
    async def test_not_found(self, acquirer, repo_ref, snapshot_limits):
        """A 404 is a non-retried NotFoundError and leaves nothing behind."""
        with pytest.raises(NotFoundError):
            await acquirer.acquire(repo_ref, session_id="sub-1")
        assert not (snapshot_limits.temp_root / "sub-1").exists()

    @pytest.mark.asyncio
    async def test_rate_limited(self, make_acquirer, repo_ref):
        """403 surfaces as RateLimitedError with the rate limit headers."""

        def handler(request):
            return httpx.Response(
                403, headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "1700000000"}
            )

        with pytest.raises(RateLimitedError) as exc_info:
            await make_acquirer(handler).acquire(repo_ref)
        assert exc_info.value.remaining == "0"
        assert exc_info.value.reset == "1700000000"

    @pytest.mark.asyncio
    async def test_declared_size_over_limit(self, make_acquirer, repo_ref, tmp_path):
        """A declared Content-Length over the ceiling fails before anything is written."""
        limits = SnapshotLimits(temp_root=tmp_path / "snap", max_download_bytes=100)

        def handler(request):
            return httpx.Response(200, content=b"x" * 500)

        with pytest.raises(SizeLimitExceededError):
            await make_acquirer(handler, limits).acquire(repo_ref, session_id="s")
        assert not (tmp_path / "snap" / "s").exists()

    @pytest.mark.asyncio
    async def test_streamed_size_over_limit(self, make_acquirer, repo_ref, tmp_path):
        """Without Content-Length the running total enforces the ceiling mid-stream."""
        limits = SnapshotLimits(
            temp_root=tmp_path / "snap", max_download_bytes=1000, download_chunk_bytes=100
        )

        async def body():
            for _ in range(50):
                yield b"x" * 100

        def handler(request):
            return httpx.Response(200, content=body())

        with pytest.raises(SizeLimitExceededError):
            await make_acquirer(handler, limits).acquire(repo_ref, session_id="s")
        assert not (tmp_path / "snap" / "s").exists()

    @pytest.mark.asyncio
    async def test_transport_error(self, make_acquirer, repo_ref):
        """Network failures become FetchError."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(FetchError):
            await make_acquirer(handler).acquire(repo_ref)

    @pytest.mark.asyncio
    async def test_sends_token(self, make_acquirer, repo_ref, snapshot_limits):
        """A configured token is sent as a bearer header."""
        seen = []

        def handler(request):
            seen.append(request.headers.get("authorization"))
            return httpx.Response(200, content=build_zip({"a.py": "a = 1\n"}))

        acquirer = make_acquirer(handler)
        acquirer._token = "secret"
        async with acquirer.open(repo_ref):
            pass
        assert seen == ["Bearer secret"]

    @pytest.mark.parametrize("escape", ["../escape", "nested/../../escape", "."])
    @pytest.mark.asyncio
    async def test_session_id_cannot_leave_temp_root(
        self, acquirer, fake_github, repo_ref, snapshot_limits, tmp_path, escape
    ):
        """Traversal in a session id is neutralised; files stay under temp_root."""
        fake_github.archives[REVISION] = build_zip({"main.py": "x = 1\n"})
        temp_root = snapshot_limits.temp_root.resolve()

        snapshot = await acquirer.acquire(repo_ref, session_id=escape)
        try:
            assert snapshot.extract_dir.resolve().is_relative_to(temp_root)
            assert snapshot.archive_path.resolve().is_relative_to(temp_root)
            assert snapshot.extract_dir.parent.resolve() != temp_root
        finally:
            cleanup_snapshot(snapshot)
        assert not (tmp_path / "escape").exists()

    @pytest.mark.asyncio
    async def test_absolute_session_id_stays_inside(
        self, acquirer, fake_github, repo_ref, snapshot_limits, tmp_path
    ):
        """An absolute path as session id does not replace temp_root."""
        fake_github.archives[REVISION] = build_zip({"main.py": "x = 1\n"})
        outside = tmp_path / "outside"

        async with acquirer.open(repo_ref, session_id=str(outside)) as snapshot:
            assert snapshot.extract_dir.is_relative_to(snapshot_limits.temp_root.resolve())
            assert snapshot.archive_path.resolve().is_relative_to(snapshot_limits.temp_root.resolve())

        assert not outside.exists()


class TestSessionDirName:
    """Tests for mapping session ids onto directory names."""

    def test_plain_id_kept(self):
        assert session_dir_name("sub-1_A") == "sub-1_A"

    def test_unsafe_ids_are_flattened(self):
        """Separators and dots never survive into the directory name."""
        for session_id in ["../escape", "/abs/path", "a\\b", "..", "."]:
            name = session_dir_name(session_id)
            assert "/" not in name and "\\" not in name
            assert name not in ("", ".", "..")

    def test_distinct_ids_stay_distinct(self):
        """Ids that flatten to the same text still get different directories."""
        assert session_dir_name("sub.1") != session_dir_name("sub_1")
        assert session_dir_name("a/b") != session_dir_name("a_b")
