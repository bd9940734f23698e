"""
Domain models — types shared by the resolver, inspector and engine.

All models are re-exported here for convenient access:

    from blindspot.core.models import PackageRecord, GitHubAsset, TarArchive
"""

from blindspot.core.models.archive import (
    ArchiveMember,
    ContainerFormat,
    Extracted,
    NeedsSelection,
    RawBinary,
    TarArchive,
    ZipArchive,
)
from blindspot.core.models.asset import (
    DirectAsset,
    GitHubAsset,
    ReleaseAsset,
    ResolvedAsset,
)
from blindspot.core.models.package import (
    ArchiveKind,
    Compression,
    FormatHint,
    PackageRecord,
    PackageState,
    RegistryDocument,
)
from blindspot.core.models.receipt import BatchReport, OperationReceipt

__all__ = [
    "ArchiveKind",
    "ArchiveMember",
    "BatchReport",
    "Compression",
    "ContainerFormat",
    "DirectAsset",
    "Extracted",
    "FormatHint",
    "GitHubAsset",
    "NeedsSelection",
    "OperationReceipt",
    "PackageRecord",
    "PackageState",
    "RawBinary",
    "RegistryDocument",
    "ReleaseAsset",
    "ResolvedAsset",
    "TarArchive",
    "ZipArchive",
]
