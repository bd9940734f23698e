"""
Archive inspector — classify a payload and pull out the executable.

Classification order:

    1. compressed tar   (gzip, bzip2, xz, zstd) → decompress, read as tar
    2. zip
    3. plain tar
    4. anything else    → the payload itself is the executable
                          (possibly behind a compression layer)

Magic bytes win over the filename; the filename decides only when the
bytes say nothing.  An explicit FormatHint overrides both.

Member choice inside an archive:

    single member                → it
    exactly one executable-bit   → it
    several executable-bit       → narrowed by expected name
    no executable-bit signal     → expected-name match over all members
    still ambiguous              → NeedsSelection(candidates)

Nothing here writes to the filesystem.
"""

from __future__ import annotations

import bz2
import gzip
import io
import logging
import lzma
import tarfile
import zipfile
import zlib

import zstandard

from blindspot.core.errors import EmptyArchiveError, UnsupportedFormatError
from blindspot.core.models.archive import (
    ArchiveMember,
    ContainerFormat,
    Extracted,
    NeedsSelection,
    RawBinary,
    TarArchive,
    ZipArchive,
)
from blindspot.core.models.package import ArchiveKind, Compression, FormatHint

logger = logging.getLogger(__name__)

# ── Magic numbers ───────────────────────────────────────────────

_MAGIC_COMPRESSION = (
    (b"\x1f\x8b", Compression.GZIP),
    (b"BZh", Compression.BZIP2),
    (b"\xfd7zXZ\x00", Compression.XZ),
    (b"\x28\xb5\x2f\xfd", Compression.ZSTD),
)
_MAGIC_ZIP = (b"PK\x03\x04", b"PK\x05\x06")
_TAR_MAGIC_OFFSET = 257

_MAGIC_EXECUTABLE = (
    b"\x7fELF",               # ELF
    b"\xfe\xed\xfa\xce",      # Mach-O 32
    b"\xfe\xed\xfa\xcf",      # Mach-O 64
    b"\xce\xfa\xed\xfe",      # Mach-O 32, little endian
    b"\xcf\xfa\xed\xfe",      # Mach-O 64, little endian
    b"\xca\xfe\xba\xbe",      # Mach-O universal
    b"MZ",                    # PE
    b"#!",                    # script with interpreter line
)

# ── Filename suffixes (longest first) ───────────────────────────

_SUFFIXES: tuple[tuple[str, ArchiveKind, Compression], ...] = (
    (".tar.gz", ArchiveKind.TAR, Compression.GZIP),
    (".tar.bz2", ArchiveKind.TAR, Compression.BZIP2),
    (".tar.bz", ArchiveKind.TAR, Compression.BZIP2),
    (".tar.xz", ArchiveKind.TAR, Compression.XZ),
    (".tar.zst", ArchiveKind.TAR, Compression.ZSTD),
    (".tbz2", ArchiveKind.TAR, Compression.BZIP2),
    (".tzst", ArchiveKind.TAR, Compression.ZSTD),
    (".tgz", ArchiveKind.TAR, Compression.GZIP),
    (".tbz", ArchiveKind.TAR, Compression.BZIP2),
    (".txz", ArchiveKind.TAR, Compression.XZ),
    (".tar", ArchiveKind.TAR, Compression.NONE),
    (".zip", ArchiveKind.ZIP, Compression.NONE),
    (".gz", ArchiveKind.NONE, Compression.GZIP),
    (".bz2", ArchiveKind.NONE, Compression.BZIP2),
    (".bz", ArchiveKind.NONE, Compression.BZIP2),
    (".xz", ArchiveKind.NONE, Compression.XZ),
    (".zst", ArchiveKind.NONE, Compression.ZSTD),
)


def _sniff_compression(data: bytes) -> Compression | None:
    for magic, compression in _MAGIC_COMPRESSION:
        if data.startswith(magic):
            return compression
    return None


def _is_zip(data: bytes) -> bool:
    return data.startswith(_MAGIC_ZIP)


def _is_tar(data: bytes) -> bool:
    return data[_TAR_MAGIC_OFFSET:_TAR_MAGIC_OFFSET + 5] == b"ustar"


def _looks_executable(data: bytes) -> bool:
    return data.startswith(_MAGIC_EXECUTABLE)


def _declared(filename: str) -> tuple[ArchiveKind, Compression] | None:
    lowered = filename.lower()
    for suffix, kind, compression in _SUFFIXES:
        if lowered.endswith(suffix):
            return kind, compression
    return None


def _strip_suffix(filename: str) -> str:
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    lowered = base.lower()
    for suffix, _, _ in _SUFFIXES:
        if lowered.endswith(suffix):
            return base[: -len(suffix)]
    return base


def decompress(data: bytes, compression: Compression) -> bytes:
    """Remove one compression layer.

    Raises:
        UnsupportedFormatError: If the data is not valid for ``compression``.
    """
    try:
        if compression == Compression.NONE:
            return data
        if compression == Compression.GZIP:
            return gzip.decompress(data)
        if compression == Compression.BZIP2:
            return bz2.decompress(data)
        if compression == Compression.XZ:
            return lzma.decompress(data)
        if compression == Compression.ZSTD:
            return _zstd_decompress(data)
    except (OSError, EOFError, ValueError, lzma.LZMAError, zlib.error, zstandard.ZstdError) as e:
        raise UnsupportedFormatError(f"Payload is not valid {compression.value} data: {e}") from e
    raise UnsupportedFormatError(f"Unknown compression: {compression}")


def _zstd_decompress(data: bytes) -> bytes:
    """Every frame of ``data``; a frame cut short is an error."""
    dctx = zstandard.ZstdDecompressor()
    chunks = []
    while data:
        dobj = dctx.decompressobj()
        chunks.append(dobj.decompress(data))
        if not dobj.eof:
            raise zstandard.ZstdError("input ends inside a frame")
        data = dobj.unused_data
    return b"".join(chunks)


def classify(data: bytes, filename: str, hint: FormatHint | None = None) -> ContainerFormat:
    """Decide which container a payload is.

    Only sniffs headers; a compressed payload's inner tar-ness is
    decided by :func:`inspect_and_extract` after decompression unless
    the filename or hint already says so.
    """
    hint = hint or FormatHint()
    declared = _declared(filename)

    compression = hint.compression or _sniff_compression(data)
    if compression is None:
        compression = declared[1] if declared and not _is_zip(data) and not _is_tar(data) else Compression.NONE

    if hint.archive is not None:
        kind = hint.archive
    elif compression == Compression.NONE and _is_zip(data):
        kind = ArchiveKind.ZIP
    elif compression == Compression.NONE and _is_tar(data):
        kind = ArchiveKind.TAR
    elif declared is not None:
        kind = declared[0]
    else:
        kind = ArchiveKind.NONE

    if kind == ArchiveKind.ZIP:
        return ZipArchive()
    if kind == ArchiveKind.TAR:
        return TarArchive(compression)
    return RawBinary(compression)


# ── Member enumeration ──────────────────────────────────────────


def _tar_members(tar: tarfile.TarFile) -> list[ArchiveMember]:
    return [
        ArchiveMember(path=m.name, size=m.size, executable=bool(m.mode & 0o111))
        for m in tar.getmembers()
        if m.isfile()
    ]


def _zip_members(zf: zipfile.ZipFile) -> list[ArchiveMember]:
    members = []
    for info in zf.infolist():
        if info.is_dir():
            continue
        # Unix permission bits live in the high word when made on Unix
        mode = (info.external_attr >> 16) & 0o777 if info.create_system == 3 else 0
        members.append(ArchiveMember(path=info.filename, size=info.file_size, executable=bool(mode & 0o111)))
    return members


def _name_matches(member: ArchiveMember, expected: str) -> bool:
    base = member.basename
    if base == expected:
        return True
    stem = base.rsplit(".", 1)[0] if "." in base else base
    return stem == expected


def select_member(
    members: list[ArchiveMember], expected_name: str | None = None,
) -> ArchiveMember | list[ArchiveMember]:
    """Pick the executable among members, or return the candidates."""
    if len(members) == 1:
        return members[0]

    executables = [m for m in members if m.executable]
    if len(executables) == 1:
        return executables[0]

    pool = executables or members
    if expected_name:
        named = [m for m in pool if _name_matches(m, expected_name)]
        if len(named) == 1:
            return named[0]
    return pool


# ── Entry point ─────────────────────────────────────────────────


def inspect_and_extract(
    payload: bytes,
    filename: str,
    *,
    expected_name: str | None = None,
    choice: str | None = None,
    hint: FormatHint | None = None,
) -> Extracted | NeedsSelection:
    """Classify ``payload`` and return the one executable inside it.

    Args:
        payload: Downloaded bytes.
        filename: Declared filename (asset name or URL basename).
        expected_name: Package name, used to break ties between members.
        choice: Member path picked by the caller after a NeedsSelection.
        hint: Explicit compression / archive overrides.

    Raises:
        UnsupportedFormatError: Unreadable container, unknown ``choice``,
            or a raw payload that is not an executable.
        EmptyArchiveError: A container without regular files.
    """
    container = classify(payload, filename, hint)
    logger.info("Treating %s as a %s", filename or "payload", container.describe())

    if isinstance(container, ZipArchive):
        return _extract_zip(payload, container, expected_name, choice)

    data = decompress(payload, container.compression)

    if isinstance(container, RawBinary) and _is_tar(data) and not (hint and hint.archive):
        container = TarArchive(container.compression)
        logger.info("Decompressed payload is a tar archive")

    if isinstance(container, TarArchive):
        return _extract_tar(data, container, expected_name, choice)

    if not _looks_executable(data):
        declared = _declared(filename)
        if declared and declared[0] != ArchiveKind.NONE:
            raise UnsupportedFormatError(
                f"{filename} is named like a {declared[0].value} archive but cannot be read as one"
            )
        raise UnsupportedFormatError(
            f"{filename or 'payload'} is not a recognized archive or executable"
        )

    name = expected_name or _strip_suffix(filename) or "binary"
    return Extracted(name=name, data=data, member=None, container=container)


def _resolve_choice(
    members: list[ArchiveMember],
    container: ContainerFormat,
    expected_name: str | None,
    choice: str | None,
) -> ArchiveMember | NeedsSelection:
    if not members:
        raise EmptyArchiveError(f"The {container.describe()} has no files")

    if choice is not None:
        for m in members:
            if m.path == choice:
                return m
        # A remembered member may have moved into a versioned directory.
        by_base = [m for m in members if m.basename == choice.rsplit("/", 1)[-1]]
        if len(by_base) == 1:
            return by_base[0]
        raise UnsupportedFormatError(f"No member named {choice} in the {container.describe()}")

    picked = select_member(members, expected_name)
    if isinstance(picked, list):
        logger.info("%d candidate members, selection needed", len(picked))
        return NeedsSelection(candidates=picked, container=container)
    return picked


def _extract_tar(
    data: bytes,
    container: TarArchive,
    expected_name: str | None,
    choice: str | None,
) -> Extracted | NeedsSelection:
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
            picked = _resolve_choice(_tar_members(tar), container, expected_name, choice)
            if isinstance(picked, NeedsSelection):
                return picked
            fh = tar.extractfile(picked.path)
            if fh is None:
                raise UnsupportedFormatError(f"Cannot read {picked.path} from tar archive")
            content = fh.read()
    except tarfile.TarError as e:
        raise UnsupportedFormatError(f"Cannot read tar archive: {e}") from e

    logger.info("Extracted %s (%d bytes)", picked.path, len(content))
    return Extracted(name=picked.basename, data=content, member=picked.path, container=container)


def _extract_zip(
    payload: bytes,
    container: ZipArchive,
    expected_name: str | None,
    choice: str | None,
) -> Extracted | NeedsSelection:
    try:
        with zipfile.ZipFile(io.BytesIO(payload)) as zf:
            picked = _resolve_choice(_zip_members(zf), container, expected_name, choice)
            if isinstance(picked, NeedsSelection):
                return picked
            content = zf.read(picked.path)
    except (zipfile.BadZipFile, zlib.error) as e:
        raise UnsupportedFormatError(f"Cannot read zip archive: {e}") from e

    logger.info("Extracted %s (%d bytes)", picked.path, len(content))
    return Extracted(name=picked.basename, data=content, member=picked.path, container=container)
