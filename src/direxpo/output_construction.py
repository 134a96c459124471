from __future__ import annotations

import contextlib
import secrets
from collections import Counter
from enum import StrEnum, auto
from typing import TYPE_CHECKING, Any

import aiofiles
import aiofiles.os

from direxpo.config import (
    BINARY_NOTE,
    BYTES_PER_MB,
    EXPORT_HEADER,
    READ_CHUNK_CHARS,
    SINK_HIGH_WATER_MARK,
    ExportCounts,
    ExportReport,
    ExportResult,
    SkipReason,
    TreeOnlyReport,
)
from direxpo.exceptions import ExportCancelledError, FileReadError
from direxpo.file_manipulation import (
    export_timestamp,
    file_extension,
    generate_tree_section,
    is_binary_file,
    resolve_within_root,
)
from direxpo.logging import logger

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Sequence
    from pathlib import Path

COPY_CHUNK_BYTES = 1024 * 1024
MAX_NAME_ATTEMPTS = 8


class FileOutcome(StrEnum):
    """How a single file ended up in the document."""

    INCLUDED = auto()
    BINARY = auto()
    LARGE = auto()
    ERROR = auto()


class MarkdownSink:
    """Buffered text writer over an aiofiles handle.

    Chunks accumulate until the high-water mark is reached; the next write then
    awaits a drain (write + flush) before returning, so memory stays bounded by
    the mark whatever the size of the export.
    """

    def __init__(self, handle: Any, high_water_mark: int = SINK_HIGH_WATER_MARK) -> None:  # noqa: ANN401
        self._handle = handle
        self._high_water_mark = high_water_mark
        self._buffer: list[str] = []
        self._pending = 0

    @property
    def pending(self) -> int:
        """Number of buffered characters not yet handed to the file."""
        return self._pending

    async def write(self, chunk: str) -> None:
        if not chunk:
            return
        self._buffer.append(chunk)
        self._pending += len(chunk)
        if self._pending >= self._high_water_mark:
            await self.drain()

    async def drain(self) -> None:
        if not self._buffer:
            return
        data = "".join(self._buffer)
        self._buffer.clear()
        self._pending = 0
        await self._handle.write(data)
        await self._handle.flush()


async def reserve_output_path(output_dir: Path, prefix: str) -> Path:
    """Atomically create an empty ``<prefix>_<stamp>.md`` file and return its path.

    When the name is taken (two exports within the same second) a random suffix is
    appended and creation retried.

    Args:
        output_dir (Path): directory receiving the export
        prefix (str): ``selected`` or ``tree``

    Raises:
        FileExistsError: if no free name was found.

    Returns:
        Path: the reserved path
    """
    await aiofiles.os.makedirs(output_dir, exist_ok=True)
    stamp = export_timestamp()
    for attempt in range(MAX_NAME_ATTEMPTS):
        suffix = "" if attempt == 0 else f"_{secrets.token_hex(4)}"
        path = output_dir / f"{prefix}_{stamp}{suffix}.md"
        try:
            async with aiofiles.open(path, "x", encoding="utf-8"):
                pass
        except FileExistsError:
            continue
        return path
    msg = f"Could not reserve an output file name for {prefix}_{stamp}"
    raise FileExistsError(msg)


async def _remove_quietly(path: Path) -> None:
    with contextlib.suppress(OSError):
        await aiofiles.os.remove(path)


async def _read_chunk(src: Any, rel_path: str) -> str:  # noqa: ANN401
    try:
        return await src.read(READ_CHUNK_CHARS)
    except OSError as e:
        raise FileReadError(message=str(e), rel_path=rel_path) from e


async def write_file_section(
    sink: MarkdownSink,
    root: Path,
    rel_path: str,
    *,
    max_size_mb: float = 0,
) -> FileOutcome:
    """Write one ``## <rel_path>`` section and report what happened to the file.

    Binary files and files that grew past the size limit are listed with a note
    instead of their content. A read failure leaves an inline error note; it never
    propagates.

    Args:
        sink (MarkdownSink): the document being written
        root (Path): the export root
        rel_path (str): the file to export
        max_size_mb (float): size limit in MB, ``<= 0`` disables it

    Returns:
        FileOutcome: the outcome counted in the report
    """
    heading = f"## {rel_path}\n\n"
    full_path = resolve_within_root(root, rel_path)
    if full_path is None:
        await sink.write(heading)
        await sink.write(f"*Error reading file: {SkipReason.INVALID_PATH}*\n\n")
        return FileOutcome.ERROR

    ext = file_extension(rel_path)
    if await is_binary_file(full_path, ext):
        await sink.write(heading)
        await sink.write(BINARY_NOTE)
        return FileOutcome.BINARY

    fence_open = False
    try:
        max_bytes = max_size_mb * BYTES_PER_MB
        if max_bytes > 0:
            try:
                st = await aiofiles.os.stat(full_path)
            except OSError as e:
                raise FileReadError(message=str(e), rel_path=rel_path) from e
            if st.st_size > max_bytes:
                await sink.write(heading)
                await sink.write(f"> *{SkipReason.too_large(max_size_mb)} — content not exported.*\n\n")
                return FileOutcome.LARGE

        try:
            src = await aiofiles.open(full_path, encoding="utf-8", errors="replace", newline="")
        except OSError as e:
            raise FileReadError(message=str(e), rel_path=rel_path) from e
        try:
            chunk = await _read_chunk(src, rel_path)
            await sink.write(heading)
            await sink.write(f"```{ext}\n")
            fence_open = True
            last = ""
            while chunk:
                await sink.write(chunk)
                last = chunk
                chunk = await _read_chunk(src, rel_path)
        finally:
            await src.close()
    except FileReadError as e:
        logger.warning("file_read_failed", rel_path=rel_path, error=e.message)
        await sink.write("\n```\n\n" if fence_open else heading)
        await sink.write(f"*Error reading file: {e.message}*\n\n")
        return FileOutcome.ERROR

    await sink.write("```\n\n" if last.endswith("\n") else "\n```\n\n")
    return FileOutcome.INCLUDED


async def export_selected_files(
    root: Path,
    rel_paths: Sequence[str],
    output_dir: Path,
    max_size_mb: float = 0,
    *,
    cancel: asyncio.Event | None = None,
) -> ExportResult:
    """Stream the given files into a new ``selected_<stamp>.md`` document.

    Files are written one after the other in lexicographic order of their relative
    path, so two runs over the same input produce the same body. A file that fails
    to read is noted inline and the batch goes on.

    Args:
        root (Path): the export root
        rel_paths (Sequence[str]): validated relative paths
        output_dir (Path): directory receiving the document
        max_size_mb (float): size limit re-checked at export time, ``<= 0`` disables it
        cancel (asyncio.Event | None): checked between files

    Raises:
        ExportCancelledError: if `cancel` is set; the partial document is removed.

    Returns:
        ExportResult: the document path and its report, sized from disk
    """
    ordered = sorted(rel_paths)
    output_path = await reserve_output_path(output_dir, "selected")
    outcomes: Counter[FileOutcome] = Counter()

    try:
        async with aiofiles.open(output_path, "w", encoding="utf-8", newline="") as handle:
            sink = MarkdownSink(handle)
            await sink.write(EXPORT_HEADER)
            for rel in ordered:
                if cancel is not None and cancel.is_set():
                    raise ExportCancelledError
                outcomes[await write_file_section(sink, root, rel, max_size_mb=max_size_mb)] += 1
            await sink.drain()
    except ExportCancelledError:
        logger.info("export_cancelled", path=str(output_path), written=sum(outcomes.values()))
        await _remove_quietly(output_path)
        raise

    st = await aiofiles.os.stat(output_path)
    included = outcomes[FileOutcome.INCLUDED]
    report = ExportReport(
        included=included,
        bytes_written=st.st_size,
        counts=ExportCounts(
            total_matched=len(ordered),
            included=included,
            skipped_binary=outcomes[FileOutcome.BINARY],
            skipped_large=outcomes[FileOutcome.LARGE],
            skipped_error=outcomes[FileOutcome.ERROR],
        ),
    )
    logger.info("export_written", path=str(output_path), bytes=st.st_size, files=len(ordered))
    return ExportResult(output_markdown_path=str(output_path), report=report)


async def prepend_to_file(path: Path, prefix: str) -> None:
    """Insert `prefix` at the top of `path` without loading the file in memory.

    The prefix and then the original bytes are streamed into ``<path>.tmp``, which
    replaces the original once complete.

    Args:
        path (Path): the file to rewrite
        prefix (str): text to put first
    """
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        async with aiofiles.open(tmp_path, "wb") as out, aiofiles.open(path, "rb") as src:
            await out.write(prefix.encode("utf-8"))
            while True:
                chunk = await src.read(COPY_CHUNK_BYTES)
                if not chunk:
                    break
                await out.write(chunk)
        await aiofiles.os.replace(tmp_path, path)
    except BaseException:
        await _remove_quietly(tmp_path)
        raise


async def export_tree_only(
    rel_paths: Sequence[str],
    target_path: str,
    output_dir: Path,
) -> tuple[str, TreeOnlyReport]:
    """Write a ``tree_<stamp>.md`` document holding only the folder structure.

    Args:
        rel_paths (Sequence[str]): the paths drawn in the tree
        target_path (str): the root as typed by the user
        output_dir (Path): directory receiving the document

    Returns:
        tuple[str, TreeOnlyReport]: the document path and its report
    """
    output_path = await reserve_output_path(output_dir, "tree")
    async with aiofiles.open(output_path, "w", encoding="utf-8", newline="") as handle:
        await handle.write(generate_tree_section(rel_paths, target_path))
    st = await aiofiles.os.stat(output_path)
    logger.info("tree_written", path=str(output_path), bytes=st.st_size, files=len(rel_paths))
    return str(output_path), TreeOnlyReport(included=len(rel_paths), bytes_written=st.st_size)
