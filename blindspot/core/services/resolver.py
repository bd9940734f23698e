"""
Source resolver — turn a user-supplied source into a concrete asset.

Two kinds of source:

    GitHub repository   ``owner/repo``, ``github.com/owner/repo``,
                        ``https://github.com/owner/repo[.git]``
                        → latest stable release, one of its assets
    anything else       direct download URL
                        → downloaded right away; version is a
                          fingerprint of the content

Resolution reads the network only; it never touches the registry.
"""

from __future__ import annotations

import hashlib
import logging
import platform
import re
import urllib.parse
from typing import Any, Protocol

from blindspot.core.errors import (
    DownloadError,
    ResolutionError,
    SelectionRequiredError,
)
from blindspot.core.models.asset import (
    DirectAsset,
    GitHubAsset,
    ReleaseAsset,
    ResolvedAsset,
)
from blindspot.core.services.transport import HttpTransport, TransportError

logger = logging.getLogger(__name__)

class Chooser(Protocol):
    """Picks one name out of several; ``sizes`` maps names to bytes when known."""

    def __call__(self, names: list[str], sizes: dict[str, int] | None = None) -> str: ...

_GITHUB_HOSTS = ("github.com", "www.github.com")
_NAME_RE = r"[A-Za-z0-9_.-]+"
_SHORTHAND_RE = re.compile(rf"^({_NAME_RE})/({_NAME_RE})$")

# Release files that are never the binary itself
_SIDECAR_SUFFIXES = (
    ".sha256", ".sha256sum", ".sha512", ".sha1", ".md5", ".sum", ".sums",
    ".asc", ".sig", ".pem", ".crt", ".sbom", ".spdx", ".json", ".txt",
    ".deb", ".rpm", ".apk", ".msi", ".dmg", ".pkg", ".snap", ".flatpak",
)
_SIDECAR_NAMES = ("checksums", "sha256sums", "shasums")

_ARCH_ALIASES = {
    "x86_64": ("x86_64", "amd64", "x64"),
    "amd64": ("x86_64", "amd64", "x64"),
    "aarch64": ("aarch64", "arm64"),
    "arm64": ("aarch64", "arm64"),
    "armv7l": ("armv7", "armhf", "arm"),
    "i686": ("i686", "i386", "386", "x86"),
}
_OS_ALIASES = {
    "linux": ("linux",),
    "darwin": ("darwin", "macos", "apple", "osx"),
    "windows": ("windows", "win64", "win32", "pc-windows"),
}

_ARCHIVE_EXTENSIONS = (
    ".tar.gz", ".tar.bz2", ".tar.bz", ".tar.xz", ".tar.zst", ".tgz", ".tbz2",
    ".tbz", ".txz", ".tzst", ".tar", ".zip", ".gz", ".bz2", ".xz", ".zst",
    ".exe",
)
_PLATFORM_TOKENS = frozenset({
    "linux", "darwin", "macos", "osx", "apple", "windows", "win", "win64",
    "win32", "unknown", "pc", "musl", "gnu", "gnueabihf", "static", "amd64",
    "x86", "x64", "i386", "i686", "386", "arm", "arm64", "aarch64", "armv7",
    "armhf", "universal", "x86_64",
})
_VERSION_TOKEN_RE = re.compile(r"^v?\d")


def parse_github_reference(source: str) -> tuple[str, str] | None:
    """Return ``(owner, repo)`` if ``source`` names a GitHub repository.

    Only bare repository references count; a URL with any further path
    segment (a release asset, a raw file) is a direct download.
    """
    source = source.strip()

    m = _SHORTHAND_RE.match(source)
    if m and "." not in m.group(1):
        return m.group(1), _strip_git(m.group(2))

    candidate = source if "://" in source else f"https://{source}"
    parsed = urllib.parse.urlparse(candidate)
    if parsed.scheme not in ("http", "https") or parsed.netloc.lower() not in _GITHUB_HOSTS:
        return None
    if parsed.query or parsed.fragment:
        return None

    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) != 2:
        return None
    owner, repo = parts[0], _strip_git(parts[1])
    if not re.fullmatch(_NAME_RE, owner) or not re.fullmatch(_NAME_RE, repo):
        return None
    return owner, repo


def _strip_git(repo: str) -> str:
    return repo[:-4] if repo.endswith(".git") else repo


def suggest_name(filename: str) -> str:
    """Guess a package name from an asset filename.

    ``ripgrep-14.1.0-x86_64-unknown-linux-musl.tar.gz`` → ``ripgrep``
    """
    stem = filename.rsplit("/", 1)[-1]
    lowered = stem.lower()
    for ext in _ARCHIVE_EXTENSIONS:
        if lowered.endswith(ext):
            stem = stem[: -len(ext)]
            break

    kept: list[str] = []
    for token in re.split(r"[-_]", stem):
        if not token:
            continue
        if _VERSION_TOKEN_RE.match(token) or token.lower() in _PLATFORM_TOKENS:
            break
        kept.append(token)

    return "-".join(kept) or stem


def fingerprint(data: bytes) -> str:
    """Content fingerprint used as the version of direct downloads."""
    return "sha256:" + hashlib.sha256(data).hexdigest()[:12]


def _is_sidecar(name: str) -> bool:
    lowered = name.lower()
    if lowered.endswith(_SIDECAR_SUFFIXES):
        return True
    return any(lowered.startswith(prefix) for prefix in _SIDECAR_NAMES)


def _host_tokens() -> tuple[tuple[str, ...], tuple[str, ...]]:
    machine = platform.machine().lower()
    system = platform.system().lower()
    return (
        _OS_ALIASES.get(system, (system,)),
        _ARCH_ALIASES.get(machine, (machine,)),
    )


def _matches_host(name: str, os_tokens: tuple[str, ...], arch_tokens: tuple[str, ...]) -> bool:
    lowered = name.lower()
    return any(t in lowered for t in os_tokens) and any(t in lowered for t in arch_tokens)


def _previous_asset_pattern(previous: str, previous_version: str | None) -> re.Pattern | None:
    """Regex that matches ``previous`` with its version replaced by any version."""
    if not previous_version:
        return None
    bare = previous_version.lstrip("vV")
    if not bare or bare not in previous:
        return None
    head, _, tail = previous.partition(bare)
    return re.compile(rf"^{re.escape(head)}[0-9][0-9A-Za-z.+_-]*?{re.escape(tail)}$")


class SourceResolver:
    """Resolve sources against GitHub releases or direct URLs."""

    def __init__(self, transport: HttpTransport, api_base: str = "https://api.github.com"):
        self._transport = transport
        self._api_base = api_base.rstrip("/")

    def resolve(
        self,
        source: str,
        *,
        previous_asset: str | None = None,
        previous_version: str | None = None,
        select_asset: Chooser | None = None,
    ) -> ResolvedAsset:
        """Resolve ``source`` to a downloadable asset.

        Args:
            source: GitHub reference or direct URL.
            previous_asset: Asset filename installed last time; preferred
                when a release ships several assets.
            previous_version: Version installed last time, used to match
                ``previous_asset`` across versions.
            select_asset: Asked to pick when several assets remain.

        Raises:
            ResolutionError: No release, no assets, or metadata fetch failed.
            DownloadError: A direct URL could not be downloaded.
            SelectionRequiredError: Several assets remain and no chooser.
        """
        repo = parse_github_reference(source)
        if repo is not None:
            return self._resolve_github(
                *repo,
                previous_asset=previous_asset,
                previous_version=previous_version,
                select_asset=select_asset,
            )
        return self._resolve_direct(source)

    # ── GitHub ───────────────────────────────────────────────────

    def _resolve_github(
        self,
        owner: str,
        repo: str,
        *,
        previous_asset: str | None,
        previous_version: str | None,
        select_asset: Chooser | None,
    ) -> GitHubAsset:
        full = f"{owner}/{repo}"
        logger.info("Treating %s as a GitHub repository", full)

        release = self.latest_release(owner, repo)
        version = release.get("tag_name") or release.get("name")
        if not version:
            raise ResolutionError(f"Latest release of {full} has no tag name")

        assets = [a for a in (ReleaseAsset.from_api(d) for d in release.get("assets") or []) if a]
        if not assets:
            raise ResolutionError(f"Release {version} of {full} has no downloadable assets")

        logger.info("Release %s of %s ships %d assets", version, full, len(assets))
        asset = self.pick_asset(
            assets,
            previous_asset=previous_asset,
            previous_version=previous_version,
            select_asset=select_asset,
        )
        return GitHubAsset(
            url=asset.url,
            suggested_name=repo,
            version=version,
            filename=asset.name,
            repository=full,
            size=asset.size,
        )

    def latest_release(self, owner: str, repo: str) -> dict[str, Any]:
        """Newest published, non-draft, non-prerelease release.

        Raises:
            ResolutionError: On request failure or when none qualifies.
        """
        url = f"{self._api_base}/repos/{owner}/{repo}/releases?per_page=100"
        try:
            listing = self._transport.get_json(url)
        except TransportError as e:
            raise ResolutionError(f"Failed to list releases of {owner}/{repo}: {e}") from e

        if not isinstance(listing, list):
            raise ResolutionError(f"Unexpected releases response for {owner}/{repo}")

        stable = [
            (index, r) for index, r in enumerate(listing)
            if isinstance(r, dict) and not r.get("draft") and not r.get("prerelease")
        ]
        if not stable:
            raise ResolutionError(f"{owner}/{repo} has no releases")

        # The API lists newest first; published_at decides when present.
        _, newest = max(
            stable,
            key=lambda pair: (pair[1].get("published_at") or "", -pair[0]),
        )
        return newest

    @staticmethod
    def pick_asset(
        assets: list[ReleaseAsset],
        *,
        previous_asset: str | None = None,
        previous_version: str | None = None,
        select_asset: Chooser | None = None,
    ) -> ReleaseAsset:
        """Narrow a release's assets down to one."""
        if len(assets) == 1:
            return assets[0]

        candidates = [a for a in assets if not _is_sidecar(a.name)] or assets
        if len(candidates) == 1:
            return candidates[0]

        if previous_asset:
            same = [a for a in candidates if a.name == previous_asset]
            if len(same) == 1:
                return same[0]
            pattern = _previous_asset_pattern(previous_asset, previous_version)
            if pattern is not None:
                same = [a for a in candidates if pattern.match(a.name)]
                if len(same) == 1:
                    logger.debug("Matched previous asset %s → %s", previous_asset, same[0].name)
                    return same[0]

        os_tokens, arch_tokens = _host_tokens()
        native = [a for a in candidates if _matches_host(a.name, os_tokens, arch_tokens)]
        if len(native) == 1:
            return native[0]
        if native:
            candidates = native

        names = [a.name for a in candidates]
        if select_asset is None:
            raise SelectionRequiredError("release asset", names)

        chosen = select_asset(names, sizes={a.name: a.size for a in candidates})
        for a in candidates:
            if a.name == chosen:
                return a
        raise ResolutionError(f"Unknown asset selected: {chosen}")

    # ── Direct URLs ──────────────────────────────────────────────

    def _resolve_direct(self, url: str) -> DirectAsset:
        parsed = urllib.parse.urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ResolutionError(
                f"Not a GitHub repository or http(s) URL: {url}"
            )

        logger.info("Treating %s as a direct download", url)
        try:
            download = self._transport.download(url)
        except TransportError as e:
            raise DownloadError(f"Failed to download {url}: {e}") from e

        filename = download.filename or parsed.netloc
        return DirectAsset(
            url=download.url,
            suggested_name=suggest_name(filename),
            version=fingerprint(download.data),
            filename=filename,
            payload=download.data,
        )
