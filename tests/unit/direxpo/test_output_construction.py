from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from direxpo import output_construction
from direxpo.exceptions import ExportCancelledError, FileReadError
from direxpo.output_construction import (
    MarkdownSink,
    export_selected_files,
    export_tree_only,
    prepend_to_file,
    reserve_output_path,
)

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


def _write(root: Path, rel: str, content: str | bytes) -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8", newline="")


@pytest.fixture
def src(tmp_path: Path) -> Path:
    root = tmp_path / "src"
    root.mkdir()
    return root


@pytest.fixture
def out(tmp_path: Path) -> Path:
    return tmp_path / "out"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_export_writes_sorted_fenced_sections(src: Path, out: Path) -> None:
    _write(src, "b.py", "print('b')")
    _write(src, "a.md", "# A\n")

    result = await export_selected_files(src, ["b.py", "a.md"], out)

    body = Path(result.output_markdown_path).read_text(encoding="utf-8")
    assert body == (
        "# Selected Files Export\n\n"
        "## a.md\n\n```md\n# A\n```\n\n"
        "## b.py\n\n```py\nprint('b')\n```\n\n"
    )
    assert result.report.included == 2  # noqa: PLR2004
    assert result.report.counts.total_matched == 2  # noqa: PLR2004
    assert Path(result.output_markdown_path).name.startswith("selected_")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_export_is_repeatable(src: Path, out: Path) -> None:
    _write(src, "z.txt", "last\r\nline")
    _write(src, "m/n.ts", "const n = 1;\n")

    first = await export_selected_files(src, ["z.txt", "m/n.ts"], out)
    second = await export_selected_files(src, ["m/n.ts", "z.txt"], out)

    assert first.output_markdown_path != second.output_markdown_path
    assert Path(first.output_markdown_path).read_bytes() == Path(second.output_markdown_path).read_bytes()
    assert b"last\r\nline\n```" in Path(first.output_markdown_path).read_bytes()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_export_marks_binary_files(src: Path, out: Path) -> None:
    _write(src, "img.png", b"\x89PNG\x00\x00")
    _write(src, "notes.txt", "hello\n")

    result = await export_selected_files(src, ["img.png", "notes.txt"], out)

    body = Path(result.output_markdown_path).read_text(encoding="utf-8")
    assert "## img.png\n\n> *Binary file — content not exported.*\n\n" in body
    assert "\x00" not in body
    counts = result.report.counts
    assert (counts.included, counts.skipped_binary, counts.skipped_error) == (1, 1, 0)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_export_notes_missing_file_and_continues(src: Path, out: Path) -> None:
    _write(src, "z.txt", "still here\n")

    result = await export_selected_files(src, ["gone.txt", "z.txt"], out)

    body = Path(result.output_markdown_path).read_text(encoding="utf-8")
    assert "## gone.txt\n\n*Error reading file: " in body
    assert body.endswith("## z.txt\n\n```txt\nstill here\n```\n\n")
    assert result.report.counts.skipped_error == 1
    assert result.report.included == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_export_closes_fence_on_mid_read_failure(src: Path, out: Path, mocker: MockerFixture) -> None:
    _write(src, "a.txt", "partial content")
    mocker.patch.object(
        output_construction,
        "_read_chunk",
        side_effect=["partial", FileReadError(message="boom", rel_path="a.txt")],
    )

    result = await export_selected_files(src, ["a.txt"], out)

    body = Path(result.output_markdown_path).read_text(encoding="utf-8")
    assert body == "# Selected Files Export\n\n## a.txt\n\n```txt\npartial\n```\n\n*Error reading file: boom*\n\n"
    assert result.report.counts.skipped_error == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_export_size_guard_counts_large(src: Path, out: Path) -> None:
    _write(src, "big.txt", "x" * 4096)

    result = await export_selected_files(src, ["big.txt"], out, max_size_mb=0.001)

    body = Path(result.output_markdown_path).read_text(encoding="utf-8")
    assert "> *Exceeds max size (0.001MB) — content not exported.*" in body
    assert result.report.counts.skipped_large == 1
    assert result.report.included == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_export_bytes_written_matches_disk(src: Path, out: Path) -> None:
    _write(src, "uni.txt", "héllo ✓ 日本\n")

    result = await export_selected_files(src, ["uni.txt"], out)

    on_disk = Path(result.output_markdown_path).read_bytes()
    assert result.report.bytes_written == len(on_disk)
    assert len(on_disk) > len(on_disk.decode("utf-8"))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_export_cancelled_removes_partial_file(src: Path, out: Path) -> None:
    _write(src, "a.txt", "a")
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(ExportCancelledError):
        await export_selected_files(src, ["a.txt"], out, cancel=cancel)

    assert list(out.glob("selected_*.md")) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_reserve_output_path_avoids_collisions(out: Path, mocker: MockerFixture) -> None:
    mocker.patch.object(output_construction, "export_timestamp", return_value="2024-01-02T030405")
    out.mkdir()
    taken = out / "selected_2024-01-02T030405.md"
    taken.write_text("keep me", encoding="utf-8")

    path = await reserve_output_path(out, "selected")

    assert path != taken
    assert path.name.startswith("selected_2024-01-02T030405_")
    assert path.suffix == ".md"
    assert path.exists()
    assert taken.read_text(encoding="utf-8") == "keep me"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_markdown_sink_drains_at_high_water_mark(mocker: MockerFixture) -> None:
    handle = mocker.AsyncMock()
    sink = MarkdownSink(handle, high_water_mark=10)

    await sink.write("12345")
    assert sink.pending == 5  # noqa: PLR2004
    handle.write.assert_not_called()

    await sink.write("678901")
    handle.write.assert_awaited_once_with("12345678901")
    handle.flush.assert_awaited_once()
    assert sink.pending == 0

    await sink.write("")
    await sink.drain()
    handle.write.assert_awaited_once()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_prepend_to_file_keeps_content(tmp_path: Path) -> None:
    target = tmp_path / "doc.md"
    target.write_text("# Body\n", encoding="utf-8")

    await prepend_to_file(target, "# Tree\n\n")

    assert target.read_text(encoding="utf-8") == "# Tree\n\n# Body\n"
    assert not (tmp_path / "doc.md.tmp").exists()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_prepend_to_missing_file_cleans_up(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        await prepend_to_file(tmp_path / "missing.md", "x")

    assert list(tmp_path.iterdir()) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_export_tree_only(out: Path) -> None:
    output_path, report = await export_tree_only(["src/app.py", "README.md"], "/work/project", out)

    body = Path(output_path).read_text(encoding="utf-8")
    assert Path(output_path).name.startswith("tree_")
    assert body.startswith("# Folder Structure\n\n```text\nproject\n")
    assert report.tree_only is True
    assert report.included == 2  # noqa: PLR2004
    assert report.bytes_written == len(body.encode("utf-8"))
