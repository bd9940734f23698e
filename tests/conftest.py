"""
Shared test fixtures and configuration.

``FakeTransport`` stands in for the network: tests publish GitHub
releases and direct-download files into it, and mark URLs as failing.
"""

from __future__ import annotations

import io
import tarfile
import threading
import zipfile
from pathlib import Path

import pytest

from blindspot.core.config.loader import Settings, ensure_dirs
from blindspot.core.persistence.history import HistoryWriter
from blindspot.core.persistence.registry_store import RegistryStore
from blindspot.core.services.engine import Engine
from blindspot.core.services.resolver import SourceResolver
from blindspot.core.services.transport import Download, TransportError

API = "https://api.test"


# ── Payload builders ────────────────────────────────────────────


def elf(tag: str) -> bytes:
    """A tiny fake ELF executable whose content identifies ``tag``."""
    return b"\x7fELF\x02\x01\x01" + tag.encode()


def make_tar(members: dict[str, tuple[bytes, int]], mode: str = "w:gz") -> bytes:
    """Build a tar archive; ``members`` maps path → (data, file mode)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=mode) as tar:
        for path, (data, perm) in members.items():
            info = tarfile.TarInfo(path)
            info.size = len(data)
            info.mode = perm
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def make_zip(members: dict[str, bytes], modes: dict[str, int] | None = None) -> bytes:
    """Build a zip archive; optional unix modes per member."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, data in members.items():
            info = zipfile.ZipInfo(path)
            if modes and path in modes:
                info.create_system = 3
                info.external_attr = (0o100000 | modes[path]) << 16
            else:
                info.create_system = 0
            zf.writestr(info, data)
    return buf.getvalue()


# ── Fake network ────────────────────────────────────────────────


class FakeTransport:
    """In-memory stand-in for HttpTransport."""

    def __init__(self) -> None:
        self.releases: dict[str, list[dict]] = {}
        self.files: dict[str, bytes] = {}
        self.failing: set[str] = set()
        self.requests: list[str] = []
        self._lock = threading.Lock()
        self._clock = 0

    def publish(
        self,
        repo: str,
        tag: str,
        assets: dict[str, bytes],
        *,
        prerelease: bool = False,
        draft: bool = False,
    ) -> None:
        """Add a release (newest first, like the API)."""
        self._clock += 1
        entries = []
        for name, data in assets.items():
            url = f"https://github.com/{repo}/releases/download/{tag}/{name}"
            self.files[url] = data
            entries.append({"name": name, "browser_download_url": url, "size": len(data)})
        self.releases.setdefault(repo, []).insert(0, {
            "tag_name": tag,
            "name": tag,
            "draft": draft,
            "prerelease": prerelease,
            "published_at": f"2024-01-{self._clock:02d}T00:00:00Z",
            "assets": entries,
        })

    def asset_url(self, repo: str, tag: str, name: str) -> str:
        return f"https://github.com/{repo}/releases/download/{tag}/{name}"

    def get_json(self, url: str):
        with self._lock:
            self.requests.append(url)
        if url in self.failing:
            raise TransportError(url, "HTTP 503 Service Unavailable", status=503)
        prefix = f"{API}/repos/"
        if not url.startswith(prefix):
            raise TransportError(url, "HTTP 404 Not Found", status=404)
        repo = url[len(prefix):].split("/releases")[0]
        if repo not in self.releases:
            raise TransportError(url, "HTTP 404 Not Found", status=404)
        return self.releases[repo]

    def download(self, url: str) -> Download:
        with self._lock:
            self.requests.append(url)
        if url in self.failing or url not in self.files:
            raise TransportError(url, "HTTP 404 Not Found", status=404)
        return Download(url=url, data=self.files[url], filename=url.rsplit("/", 1)[-1])


# ── Fixtures ────────────────────────────────────────────────────


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temp directory."""
    s = Settings(
        config_path=tmp_path / "config" / "bspm.yaml",
        bin_dir=tmp_path / "bin",
        data_dir=tmp_path / "data",
        github_api=API,
        max_workers=4,
    )
    ensure_dirs(s)
    return s


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store(settings: Settings) -> RegistryStore:
    return RegistryStore(settings.config_path)


@pytest.fixture
def engine(settings: Settings, store: RegistryStore, transport: FakeTransport) -> Engine:
    """Engine wired to the fake network and temp dirs."""
    return Engine(
        settings,
        store,
        SourceResolver(transport, API),
        transport,
        history=HistoryWriter(settings.history_path),
    )
