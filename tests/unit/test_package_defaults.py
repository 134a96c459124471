from pathlib import Path

from direxpo import __version__
from direxpo.settings import Settings


def test_settings_defaults() -> None:
    settings = Settings()

    assert settings.output_dir == Path(".output")
    assert settings.port == 5199  # noqa: PLR2004
    assert settings.default_max_size_mb == 50  # noqa: PLR2004
    assert settings.cors_origins == ["*"]
    assert __version__
