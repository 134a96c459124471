from __future__ import annotations

import pytest

from direxpo.config import SelectionPayload, SkipReason, normalize_rel


@pytest.mark.unit
@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("src\\app.py", "src/app.py"),
        ("./README.md", "README.md"),
        ("docs/", "docs"),
        ("a/./b", "a/b"),
        ("a//b/", "a/b"),
        (".", ""),
        ("./", ""),
        ("", ""),
        ("../x", "../x"),
        ("a/../b", "a/../b"),
        ("a\\..\\b\\", "a/../b"),
    ],
)
def test_normalize_rel(raw: str, expected: str) -> None:
    assert normalize_rel(raw) == expected


@pytest.mark.unit
def test_selection_payload_collapses_equivalent_paths() -> None:
    payload = SelectionPayload.model_validate({"selectedFolders": ["a/./b", "a//b", "a/b/"], "excludedFiles": None})

    assert payload.selected_folders == frozenset({"a/b"})
    assert payload.excluded_files == frozenset()


@pytest.mark.unit
def test_skip_reason_size_format() -> None:
    assert SkipReason.too_large(1) == "Exceeds max size (1MB)"
    assert SkipReason.too_large(0.5) == "Exceeds max size (0.5MB)"
    assert SkipReason.EXCLUDED == "Excluded by pattern"
