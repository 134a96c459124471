"""Selection payload resolution.

A payload expresses intent (files and folders picked or unpicked in the UI). This
module turns it into the concrete list of files to export:

- `SelectionState` answers membership questions over the four path sets;
- `resolve_selection_payload` walks selected folders, applies exclusions and
  validates every candidate against the root.
"""

from __future__ import annotations

import stat
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import aiofiles.os

from direxpo.config import BYTES_PER_MB, SelectionPayload, SkippedFile, SkipReason
from direxpo.exceptions import ExportCancelledError
from direxpo.file_manipulation import is_excluded, list_dir, relpath, resolve_within_root
from direxpo.logging import logger

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Iterable, Sequence
    from pathlib import Path


def is_under(prefix: str, path: str) -> bool:
    """Tell whether `path` is `prefix` or lies below it; the empty prefix holds everything."""
    if prefix == "":
        return True
    return path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class SelectionState:
    """Effective membership over included/excluded files and folders.

    Explicitly excluded files always lose and explicitly selected files always win
    otherwise. Remaining paths are decided by the deepest folder rule covering
    them, which lets a selected folder nested in an excluded one re-include its
    subtree. A folder both selected and excluded counts as excluded.
    """

    selected_files: frozenset[str] = frozenset()
    selected_folders: frozenset[str] = frozenset()
    excluded_files: frozenset[str] = frozenset()
    excluded_folders: frozenset[str] = frozenset()

    @classmethod
    def from_payload(cls, payload: SelectionPayload) -> SelectionState:
        return cls(
            selected_files=payload.selected_files,
            selected_folders=payload.selected_folders,
            excluded_files=payload.excluded_files,
            excluded_folders=payload.excluded_folders,
        )

    @staticmethod
    def _deepest(path: str, folders: Iterable[str]) -> int:
        depth = -1
        for folder in folders:
            if is_under(folder, path):
                depth = max(depth, 0 if folder == "" else folder.count("/") + 1)
        return depth

    def _folder_rule(self, path: str) -> bool | None:
        selected = self._deepest(path, self.selected_folders)
        excluded = self._deepest(path, self.excluded_folders)
        if selected < 0 and excluded < 0:
            return None
        return selected > excluded

    def is_file_selected(self, path: str) -> bool:
        if path in self.excluded_files:
            return False
        if path in self.selected_files:
            return True
        return bool(self._folder_rule(path))

    def is_folder_excluded(self, folder: str) -> bool:
        """Tell whether the deepest rule covering `folder` is an exclusion."""
        return self._folder_rule(folder) is False

    def has_selected_descendant(self, folder: str) -> bool:
        return any(f != folder and is_under(folder, f) for f in self.selected_folders)


@dataclass
class ResolvedSelection:
    valid: list[str] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)


async def collect_folder_files(
    root: Path,
    folder_abs: Path,
    state: SelectionState,
    exclude: Sequence[str],
    skipped: list[SkippedFile],
) -> list[str]:
    """Recursively collect the files under `folder_abs`.

    Pattern-excluded entries are dropped as soon as they are met, so an excluded
    directory is never descended into. Effectively excluded folders are pruned
    too unless a selected folder lies below them.

    Raises:
        OSError: if `folder_abs` itself cannot be read.
    """
    files: list[str] = []
    pending = [folder_abs]
    while pending:
        current = pending.pop()
        try:
            entries = await list_dir(current)
        except OSError:
            if current == folder_abs:
                raise
            skipped.append(SkippedFile(rel_path=relpath(current, root), reason=SkipReason.FAILED_FOLDER))
            continue
        for entry in entries:
            child = current / entry.name
            rel = relpath(child, root)
            if is_excluded(rel, exclude):
                continue
            if entry.is_dir:
                if state.is_folder_excluded(rel) and not state.has_selected_descendant(rel):
                    continue
                pending.append(child)
            elif entry.is_file:
                files.append(rel)
    return files


def is_walked_by_ancestor(folder: str, walked: Iterable[str], exclude: Sequence[str]) -> bool:
    """Tell whether a walk of one of the `walked` folders already reached `folder`.

    The walk from an ancestor reaches `folder` unless a directory in between was
    dropped by an exclusion pattern.
    """
    parts = folder.split("/")
    chain = ["/".join(parts[:i]) for i in range(1, len(parts) + 1)]
    for ancestor in walked:
        if ancestor == folder or not is_under(ancestor, folder):
            continue
        between = [p for p in chain if p != ancestor and is_under(ancestor, p)]
        if not any(is_excluded(p, exclude) for p in between):
            return True
    return False


async def resolve_selection_payload(
    root: Path,
    payload: SelectionPayload,
    exclude: Sequence[str],
    max_size_mb: float,
    *,
    cancel: asyncio.Event | None = None,
) -> ResolvedSelection:
    """Expand a selection payload into validated relative file paths.

    Args:
        root (Path): the export root
        payload (SelectionPayload): files/folders picked in the UI
        exclude (Sequence[str]): exclusion patterns
        max_size_mb (float): size limit in MB, ``<= 0`` disables it
        cancel (asyncio.Event | None): checked between candidates

    Raises:
        ExportCancelledError: if `cancel` is set during resolution.

    Returns:
        ResolvedSelection: surviving paths (unordered) and the skip audit trail
    """
    state = SelectionState.from_payload(payload)
    result = ResolvedSelection()
    candidates: set[str] = set()
    for rel in sorted(payload.selected_files):
        if rel in payload.excluded_files:
            result.skipped.append(SkippedFile(rel_path=rel, reason=SkipReason.DESELECTED))
        else:
            candidates.add(rel)

    walked: list[str] = []
    for folder in sorted(payload.selected_folders):
        folder_abs = resolve_within_root(root, folder)
        if folder_abs is None:
            result.skipped.append(SkippedFile(rel_path=folder, reason=SkipReason.INVALID_FOLDER))
            continue
        if folder and is_excluded(folder, exclude):
            result.skipped.append(SkippedFile(rel_path=folder, reason=SkipReason.EXCLUDED))
            continue
        if is_walked_by_ancestor(folder, walked, exclude):
            continue
        try:
            files = await collect_folder_files(root, folder_abs, state, exclude, result.skipped)
        except OSError as e:
            logger.warning("folder_read_failed", folder=folder, error=str(e))
            result.skipped.append(SkippedFile(rel_path=folder, reason=SkipReason.FAILED_FOLDER))
            continue
        walked.append(folder)
        contributed = [f for f in files if state.is_file_selected(f)]
        if not contributed:
            result.skipped.append(SkippedFile(rel_path=folder, reason=SkipReason.EMPTY_FOLDER))
        candidates.update(contributed)

    candidates = {c for c in candidates if state.is_file_selected(c)}

    max_bytes = max_size_mb * BYTES_PER_MB
    for rel in sorted(candidates):
        if cancel is not None and cancel.is_set():
            raise ExportCancelledError
        full_path = resolve_within_root(root, rel)
        if full_path is None:
            result.skipped.append(SkippedFile(rel_path=rel, reason=SkipReason.INVALID_PATH))
            continue
        if is_excluded(rel, exclude):
            result.skipped.append(SkippedFile(rel_path=rel, reason=SkipReason.EXCLUDED))
            continue
        try:
            st = await aiofiles.os.stat(full_path)
        except OSError:
            result.skipped.append(SkippedFile(rel_path=rel, reason=SkipReason.NOT_FOUND))
            continue
        if not stat.S_ISREG(st.st_mode):
            result.skipped.append(SkippedFile(rel_path=rel, reason=SkipReason.NOT_A_FILE))
            continue
        if max_bytes > 0 and st.st_size > max_bytes:
            result.skipped.append(SkippedFile(rel_path=rel, reason=SkipReason.too_large(max_size_mb)))
            continue
        result.valid.append(rel)

    logger.info("selection_resolved", valid=len(result.valid), skipped=len(result.skipped))
    return result
