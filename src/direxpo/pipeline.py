from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os

from direxpo.config import RunResponse, SkippedFile
from direxpo.exceptions import EmptySelectionError, NoFilesMatchedError, TargetPathError
from direxpo.file_manipulation import discover_files, generate_tree_section, resolve_root
from direxpo.logging import logger
from direxpo.output_construction import export_selected_files, export_tree_only, prepend_to_file
from direxpo.selection import resolve_selection_payload

if TYPE_CHECKING:
    import asyncio

    from direxpo.settings import ExportOptions, Settings


async def validate_root(target_path: str) -> Path:
    """Resolve the target path and make sure it is a readable directory.

    Args:
        target_path (str): the path typed by the user

    Raises:
        TargetPathError: if the path does not exist, is not a directory or cannot be read.

    Returns:
        Path: the absolute root
    """
    root = resolve_root(target_path)
    try:
        st = await aiofiles.os.stat(root)
    except FileNotFoundError as e:
        raise TargetPathError(message=f"Target path does not exist: {target_path}", target_path=target_path) from e
    except PermissionError as e:
        raise TargetPathError(
            message=f"Permission denied reading target path: {target_path}",
            target_path=target_path,
        ) from e
    if not stat.S_ISDIR(st.st_mode):
        raise TargetPathError(message=f"Target path is not a directory: {target_path}", target_path=target_path)
    if not os.access(root, os.R_OK | os.X_OK):
        raise TargetPathError(
            message=f"Permission denied reading target path: {target_path}",
            target_path=target_path,
        )
    return root


async def run_export(
    options: ExportOptions,
    settings: Settings,
    *,
    cancel: asyncio.Event | None = None,
) -> RunResponse:
    """Run one export request end to end.

    Explicit selections go through the selection resolver; otherwise files are
    discovered from the filter/pattern/exclude options. Tree-only requests stop after
    writing the tree; other requests write the Markdown export and, when asked,
    prepend the tree to it.

    Args:
        options (ExportOptions): validated request options
        settings (Settings): server settings (output directory, default size limit)
        cancel (asyncio.Event | None): set to abort between two files

    Raises:
        TargetPathError: if the root is not a usable directory.
        EmptySelectionError: if the selection resolves to nothing.
        NoFilesMatchedError: if discovery finds nothing.

    Returns:
        RunResponse: the body returned to the caller
    """
    root = await validate_root(options.target_path)
    max_size_mb = options.effective_max_size_mb(settings.default_max_size_mb)
    output_dir = settings.output_dir.resolve()

    file_paths: list[str] = []
    skipped: list[SkippedFile] = []

    if options.selection_payload is not None:
        resolved = await resolve_selection_payload(
            root,
            options.selection_payload,
            options.exclude,
            max_size_mb,
            cancel=cancel,
        )
        file_paths = resolved.valid
        skipped = resolved.skipped
        if not file_paths:
            raise EmptySelectionError(skipped=tuple(skipped))
    else:
        discovered = await discover_files(
            root,
            filter_name=options.filter,
            pattern=options.pattern,
            exclude=options.exclude,
            max_size_mb=max_size_mb,
        )
        file_paths = discovered.files
        skipped = discovered.skipped
        if not file_paths:
            raise NoFilesMatchedError

    if options.tree_only:
        output_path, tree_report = await export_tree_only(file_paths, options.target_path, output_dir)
        return RunResponse(
            output_path=output_path,
            report=tree_report,
            exported_count=len(file_paths),
            skipped=skipped,
        )

    result = await export_selected_files(root, file_paths, output_dir, max_size_mb, cancel=cancel)
    output_path = result.output_markdown_path

    if options.include_tree:
        try:
            await prepend_to_file(Path(output_path), generate_tree_section(file_paths, options.target_path) + "\n")
        except OSError as e:
            logger.warning("tree_prepend_failed", output_path=output_path, error=str(e))

    st = await aiofiles.os.stat(output_path)
    report = result.report.model_copy(update={"bytes_written": st.st_size})
    logger.info(
        "run_completed",
        output_path=output_path,
        bytes=st.st_size,
        included=report.included,
        skipped=len(skipped),
    )
    return RunResponse(
        output_path=output_path,
        report=report,
        exported_count=len(file_paths),
        skipped=skipped,
    )
