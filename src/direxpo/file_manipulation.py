from __future__ import annotations

import asyncio
import fnmatch
import os
import posixpath
import re
import stat
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles
import aiofiles.os

from direxpo.config import (
    BYTES_PER_MB,
    FILTER_EXTENSIONS,
    SNIFF_BYTES,
    TEXT_BASENAMES,
    TEXT_EXTENSIONS,
    TREE_HEADER,
    SkippedFile,
    SkipReason,
    TreeNode,
)
from direxpo.exceptions import FolderReadError, InvalidRequestError
from direxpo.logging import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

_PATTERN_SPLIT = re.compile(r"[,\n]+")


# ------------------------------ Path safety ---------------------------------


def resolve_root(target_path: str) -> Path:
    """Turn a user supplied target path into an absolute, normalized root.

    Args:
        target_path (str): the path typed in the UI, absolute or relative to the cwd

    Returns:
        Path: the absolute normalized root directory
    """
    return Path(os.path.normpath(os.path.abspath(os.path.expanduser(target_path.strip()))))


def _has_root_prefix(full_path: str, root: str) -> bool:
    full_cmp = os.path.normcase(full_path)
    root_cmp = os.path.normcase(root)
    if full_cmp == root_cmp:
        return True
    prefix = root_cmp if root_cmp.endswith(os.sep) else root_cmp + os.sep
    return full_cmp.startswith(prefix)


def resolve_within_root(root: str | Path, rel_path: str | None) -> Path | None:
    """Resolve `rel_path` against `root`, refusing anything that escapes it.

    Every path received from a caller goes through this function before touching disk.

    - a NUL byte anywhere is rejected;
    - an empty or blank path resolves to the root itself;
    - a path that normalizes to something starting with ``..`` or that holds a
      ``..`` segment anywhere is rejected;
    - the joined path must keep `root` as a prefix (case-insensitively where the
      platform compares paths case-insensitively).

    Args:
        root (str | Path): the absolute export root
        rel_path (str | None): the slash or backslash delimited relative path

    Returns:
        Path | None: the absolute path, or None when the path is unsafe
    """
    if rel_path and "\0" in rel_path:
        return None
    root_norm = os.path.normpath(str(root))
    if not rel_path or not rel_path.strip():
        return Path(root_norm)

    rel = rel_path.replace("\\", "/")
    normalized = posixpath.normpath(rel)
    if normalized.startswith("..") or ".." in rel.split("/"):
        return None

    full_path = os.path.normpath(os.path.join(root_norm, normalized))
    if not _has_root_prefix(full_path, root_norm):
        return None
    return Path(full_path)


def relpath(path: Path, root: Path) -> str:
    """Send the relative path of path from root.

    Args:
        path (Path): the path to "relativise"
        root (Path): the root to relativise from

    Returns:
        str: the relative path from root to path, with POSIX separators.
            If path is not under root, returns the original path as a string.
    """
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)


# ------------------------------ Exclusions ----------------------------------


def parse_exclude_patterns(exclude: str | Iterable[Any] | None) -> list[str]:
    """Parse exclusion patterns from a comma/newline separated string or a list.

    Args:
        exclude (str | Iterable[Any] | None): the raw value sent by the caller

    Returns:
        list[str]: the stripped, non-empty patterns
    """
    if not exclude:
        return []
    items = _PATTERN_SPLIT.split(exclude) if isinstance(exclude, str) else exclude
    out: list[str] = []
    for item in items:
        if not isinstance(item, str):
            continue
        pattern = item.strip()
        if pattern:
            out.append(pattern)
    return out


@lru_cache(maxsize=256)
def compile_exclude_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a wildcard pattern: ``*`` matches anything, ``?`` one character."""
    body = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(body, re.DOTALL)


def is_excluded(rel_path: str, patterns: Sequence[str]) -> bool:
    """Check a relative path against exclusion patterns.

    A pattern holding ``*`` or ``?`` must match the whole relative path; any other
    pattern matches when it equals one of the path segments, so ``dist`` excludes
    ``a/dist/b.ts`` but not ``a/distillery/b.ts``.

    Args:
        rel_path (str): the slash-delimited relative path
        patterns (Sequence[str]): the exclusion patterns

    Returns:
        bool: True if any pattern excludes the path
    """
    if not patterns:
        return False
    rel = rel_path.replace("\\", "/")
    segments = rel.split("/")
    for pattern in patterns:
        if "*" in pattern or "?" in pattern:
            if compile_exclude_pattern(pattern).fullmatch(rel):
                return True
        elif pattern in segments:
            return True
    return False


# ------------------------------ Binary sniffing -----------------------------


def file_extension(rel_path: str) -> str:
    """Return the text after the last dot of the file name, or an empty string."""
    name = posixpath.basename(rel_path.replace("\\", "/"))
    _, dot, ext = name.rpartition(".")
    return ext if dot else ""


async def is_binary_file(path: str | Path, extension: str) -> bool:
    """Classify a file as binary.

    Known text extensions and file names are answered without I/O. Anything else
    is sniffed: a zero byte in the first 8 KiB means binary. A file that cannot be
    read counts as binary so unknown content is never embedded as text.

    Args:
        path (str | Path): the absolute file path
        extension (str): the file extension without the dot

    Returns:
        bool: True if the file must not be embedded as text
    """
    if extension.lower() in TEXT_EXTENSIONS:
        return False
    if Path(path).name.lower() in TEXT_BASENAMES:
        return False
    try:
        async with aiofiles.open(path, "rb") as f:
            chunk = await f.read(SNIFF_BYTES)
    except OSError:
        return True
    return b"\x00" in chunk


# ------------------------------ Directory listing ---------------------------


@dataclass(frozen=True)
class DirEntry:
    name: str
    is_dir: bool
    is_file: bool
    size: int | None = None


def _scan_dir(path: Path, *, with_size: bool = False) -> list[DirEntry]:
    entries: list[DirEntry] = []
    with os.scandir(path) as it:
        for entry in it:
            is_dir = entry.is_dir(follow_symlinks=False)
            is_file = entry.is_file(follow_symlinks=False)
            size = entry.stat(follow_symlinks=False).st_size if with_size and is_file else None
            entries.append(DirEntry(name=entry.name, is_dir=is_dir, is_file=is_file, size=size))
    return entries


async def list_dir(path: Path, *, with_size: bool = False) -> list[DirEntry]:
    """List one directory level in a worker thread, without following symlinks.

    Raises:
        OSError: if the directory cannot be read.
    """
    return await asyncio.to_thread(_scan_dir, path, with_size=with_size)


def is_regular_file(path: Path) -> bool:
    """Check if a file is regular.

    Args:
        path (Path): path to test.

    Returns:
        bool: True if the file is regular, False otherwise.
    """
    try:
        st = path.stat()
        return stat.S_ISREG(st.st_mode)
    except OSError:
        return False


# ------------------------------ Discovery -----------------------------------


def matches_filter(name: str, filter_name: str | None, pattern: str | None = None, rel: str = "") -> bool:
    """Check a file name against a UI file-type filter.

    Args:
        name (str): the file name
        filter_name (str | None): one of all, tsx, css, md, json, glob; unknown means all
        pattern (str | None): the fnmatch pattern used by the glob filter
        rel (str): the relative path, also tried by the glob filter

    Returns:
        bool: True if the file passes the filter
    """
    if not filter_name or filter_name == "all":
        return True
    if filter_name == "glob":
        if not pattern:
            return True
        return fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(rel, pattern)
    allowed = FILTER_EXTENSIONS.get(filter_name)
    if allowed is None:
        return True
    return file_extension(name).lower() in allowed


@dataclass
class DiscoveryResult:
    files: list[str] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)


async def discover_files(
    root: Path,
    *,
    filter_name: str | None = None,
    pattern: str | None = None,
    exclude: Sequence[str] = (),
    max_size_mb: float = 0,
) -> DiscoveryResult:
    """Collect exportable files under `root` when no explicit selection is sent.

    Excluded directories are pruned before descending; files must pass the filter
    and the size limit (``max_size_mb <= 0`` disables it).

    Args:
        root (Path): the export root
        filter_name (str | None): file-type filter, see `matches_filter`
        pattern (str | None): glob used by the ``glob`` filter
        exclude (Sequence[str]): exclusion patterns
        max_size_mb (float): size limit in MB

    Returns:
        DiscoveryResult: sorted relative paths plus skipped entries
    """
    result = DiscoveryResult()
    max_bytes = max_size_mb * BYTES_PER_MB
    pending = [root]
    while pending:
        current = pending.pop()
        try:
            entries = await list_dir(current, with_size=True)
        except OSError as e:
            logger.warning("discovery_read_failed", folder=str(current), error=str(e))
            result.skipped.append(SkippedFile(rel_path=relpath(current, root), reason=SkipReason.FAILED_FOLDER))
            continue
        for entry in entries:
            child = current / entry.name
            rel = relpath(child, root)
            if is_excluded(rel, exclude):
                continue
            if entry.is_dir:
                pending.append(child)
            elif entry.is_file and matches_filter(entry.name, filter_name, pattern, rel):
                if max_bytes > 0 and (entry.size or 0) > max_bytes:
                    result.skipped.append(SkippedFile(rel_path=rel, reason=SkipReason.too_large(max_size_mb)))
                    continue
                result.files.append(rel)
    result.files.sort()
    return result


# ------------------------------ Tree rendering ------------------------------


def build_tree_lines(root_name: str, rel_paths: Sequence[str]) -> list[str]:
    """Build a visual tree representation of file paths.

    Args:
        root_name (str): the name to use for the root of the tree
        rel_paths (Sequence[str]): the list of file paths relative to the root, using POSIX separators (e.g. "src/main.py")

    Returns:
        list[str]: a list of strings representing the tree structure, suitable for printing
    """
    rels = sorted(
        {p.strip("/").replace("\\", "/") for p in rel_paths if p.strip()},
        key=str.lower,
    )
    tree: dict[str, Any] = {}
    for rp in rels:
        cur = tree
        parts = rp.split("/")
        for i, part in enumerate(parts):
            if i == len(parts) - 1:
                cur.setdefault("__files__", set()).add(part)
            else:
                cur = cur.setdefault(part, {})

    lines: list[str] = [root_name]

    def walk(node: dict[str, Any], prefix: str) -> None:
        dirs = sorted([k for k in node if k != "__files__"], key=str.lower)
        files = sorted(node.get("__files__", set()), key=str.lower)
        entries: list[tuple[str, str, Any]] = []
        entries.extend(("dir", d, node[d]) for d in dirs)
        entries.extend(("file", f, None) for f in files)
        for idx, (kind, name, child) in enumerate(entries):
            last = idx == len(entries) - 1
            branch = "└── " if last else "├── "
            lines.append(prefix + branch + name + ("/" if kind == "dir" else ""))
            if kind == "dir":
                ext = "    " if last else "│   "
                walk(child, prefix + ext)

    walk(tree, "")
    return lines


def generate_tree_section(rel_paths: Sequence[str], target_path: str) -> str:
    """Render the folder-structure section placed at the top of an export.

    Args:
        rel_paths (Sequence[str]): the exported relative paths
        target_path (str): the root as typed by the user, used for the tree label

    Returns:
        str: a Markdown heading followed by the tree in a ``text`` fence
    """
    stripped = target_path.strip().rstrip("/\\")
    root_name = Path(stripped).name or stripped or "."
    tree = "\n".join(build_tree_lines(root_name, rel_paths))
    return f"{TREE_HEADER}\n\n```text\n{tree}\n```\n"


def export_timestamp() -> str:
    """Return the current UTC time as a compact stamp, e.g. ``2024-01-02T030405``."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H%M%S")


async def list_tree_children(
    root: Path,
    rel: str,
    *,
    filter_name: str | None = None,
    exclude: Sequence[str] = (),
) -> list[TreeNode]:
    """List one level of the tree for the picker: directories first, then files.

    Glob patterns are tried on the entry name as well as its relative path; the
    file-type filter only applies to files.

    Args:
        root (Path): the export root
        rel (str): the directory to list, relative to `root`
        filter_name (str | None): file-type filter, see `matches_filter`
        exclude (Sequence[str]): exclusion patterns

    Raises:
        InvalidRequestError: if `rel` escapes the root, is missing or is not a directory.
        FolderReadError: if the directory cannot be listed.

    Returns:
        list[TreeNode]: the sorted nodes
    """
    target = resolve_within_root(root, rel)
    if target is None:
        raise InvalidRequestError(message="Invalid path")
    if not await aiofiles.os.path.isdir(target):
        raise InvalidRequestError(message="Path is not a directory")

    try:
        entries = await list_dir(target, with_size=True)
    except OSError as e:
        logger.warning("tree_read_failed", rel=rel, error=str(e))
        raise FolderReadError(message=f"Failed to read folder: {e}", rel_path=rel) from e

    nodes: list[TreeNode] = []
    for entry in entries:
        entry_rel = f"{rel}/{entry.name}" if rel else entry.name
        if is_excluded(entry_rel, exclude) or is_excluded(entry.name, exclude):
            continue
        if entry.is_dir:
            nodes.append(TreeNode(type="dir", name=entry.name, rel_path=entry_rel, has_children=True))
        elif entry.is_file and matches_filter(entry.name, filter_name, rel=entry_rel):
            nodes.append(TreeNode(type="file", name=entry.name, rel_path=entry_rel, size=entry.size))
    nodes.sort(key=lambda n: (n.type != "dir", n.name.lower(), n.name))
    return nodes
