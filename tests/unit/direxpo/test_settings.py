from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from direxpo.settings import ExportOptions, Settings, load_settings


@pytest.mark.unit
def test_load_settings_merges_yaml_env_and_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "direxpo.yaml"
    config.write_text("port: 6000\noutput_dir: exports\ndefault_max_size_mb: 10\n", encoding="utf-8")
    monkeypatch.setenv("DIREXPO_DEFAULT_MAX_SIZE_MB", "20")
    monkeypatch.setenv("DIREXPO_CORS_ORIGINS", "http://localhost:5173, http://127.0.0.1:5173")

    settings = load_settings(config, host="0.0.0.0", log_file=None)  # noqa: S104

    assert settings.port == 6000  # noqa: PLR2004
    assert settings.output_dir == Path("exports")
    assert settings.default_max_size_mb == 20  # noqa: PLR2004
    assert settings.host == "0.0.0.0"  # noqa: S104
    assert settings.cors_origins == ["http://localhost:5173", "http://127.0.0.1:5173"]
    assert not settings.log_file


@pytest.mark.unit
def test_load_settings_rejects_non_mapping_yaml(tmp_path: Path) -> None:
    config = tmp_path / "direxpo.yaml"
    config.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        load_settings(config)


@pytest.mark.unit
def test_export_options_normalizes_exclude_string() -> None:
    options = ExportOptions.model_validate({"targetPath": "/tmp", "exclude": "node_modules, .git\n\n dist ,"})  # noqa: S108

    assert options.exclude == ["node_modules", ".git", "dist"]


@pytest.mark.unit
def test_export_options_normalizes_exclude_list() -> None:
    options = ExportOptions.model_validate({"targetPath": "/tmp", "exclude": [" dist ", "", "   ", 3]})  # noqa: S108

    assert options.exclude == ["dist"]


@pytest.mark.unit
def test_export_options_pattern_implies_glob_filter() -> None:
    options = ExportOptions.model_validate({"targetPath": "/tmp", "pattern": "  *.py "})  # noqa: S108

    assert options.pattern == "*.py"
    assert options.filter == "glob"


@pytest.mark.unit
def test_export_options_rejects_blank_target() -> None:
    with pytest.raises(ValidationError):
        ExportOptions.model_validate({"targetPath": "   "})


@pytest.mark.unit
@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ({}, 50.0),
        ({"maxSizeMb": 1}, 1.0),
        ({"maxSizeMb": 0}, 0.0),
        ({"maxSizeMb": -5}, 0.0),
        ({"maxSize": 2 * 1024 * 1024}, 2.0),
        ({"maxSize": 2 * 1024 * 1024, "maxSizeMb": 3}, 3.0),
        ({"maxSize": 0}, 0.0),
    ],
)
def test_effective_max_size_mb(raw: dict[str, float], expected: float) -> None:
    options = ExportOptions.model_validate({"targetPath": "/tmp", **raw})  # noqa: S108

    assert options.effective_max_size_mb(Settings().default_max_size_mb) == expected


@pytest.mark.unit
def test_export_options_reads_selection_payload() -> None:
    options = ExportOptions.model_validate(
        {
            "targetPath": "/tmp",  # noqa: S108
            "selectionPayload": {
                "selectedFiles": ["src\\app.py", "./README.md"],
                "selectedFolders": ["docs/", "."],
                "excludedFiles": [],
            },
        },
    )

    payload = options.selection_payload
    assert payload is not None
    assert payload.selected_files == frozenset({"src/app.py", "README.md"})
    assert payload.selected_folders == frozenset({"docs", ""})
    assert payload.excluded_folders == frozenset()
