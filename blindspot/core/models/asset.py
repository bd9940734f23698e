"""
Resolved assets — the transient outcome of source resolution.

Two variants, never persisted:

    GitHubAsset  — a release asset picked from a repository's releases
    DirectAsset  — a plain URL, already downloaded (its version is a
                   fingerprint of the content)
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class GitHubAsset:
    url: str
    suggested_name: str
    version: str
    filename: str
    repository: str
    size: int = 0


@dataclass(frozen=True)
class DirectAsset:
    url: str
    suggested_name: str
    version: str
    filename: str
    payload: bytes = field(repr=False, default=b"")


ResolvedAsset = GitHubAsset | DirectAsset


@dataclass(frozen=True)
class ReleaseAsset:
    """One downloadable file attached to a release (GitHub API shape)."""

    name: str
    url: str
    size: int = 0

    @classmethod
    def from_api(cls, data: dict) -> ReleaseAsset | None:
        name = data.get("name")
        url = data.get("browser_download_url")
        if not name or not url:
            return None
        return cls(name=name, url=url, size=int(data.get("size") or 0))
