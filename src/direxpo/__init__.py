"""direxpo: export selected files of a local directory tree into one Markdown document."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("direxpo")
except PackageNotFoundError:
    # Not installed (running from a source checkout)
    __version__ = "0.1.0-local"

__all__ = ["__version__"]
