"""direxpo: serve the export API used by the web UI.

Usage
-----
Run `direxpo --help` for full options. Common examples:
    - Start the API on the default port (5199):
        uv run direxpo
    - Custom output directory and a YAML config file:
        uv run direxpo --output-dir exports --config direxpo.yaml
    - Log to a file:
        uv run direxpo --log-file direxpo.log
"""

from __future__ import annotations

import argparse
from typing import TYPE_CHECKING

import uvicorn

from direxpo import __version__
from direxpo.api import create_app
from direxpo.logging import setup_logging
from direxpo.settings import load_settings

if TYPE_CHECKING:
    from collections.abc import Sequence

    from direxpo.settings import Settings


def parse_args(argv: Sequence[str] | None = None) -> Settings:
    """Parse command line arguments into settings.

    Command line values win over the YAML config file and ``DIREXPO_*`` variables.

    Args:
        argv (Sequence[str] | None): arguments, ``sys.argv[1:]`` when None

    Returns:
        Settings: the merged settings
    """
    p = argparse.ArgumentParser(
        prog="direxpo",
        description="Export selected files of a directory tree to Markdown through a web API.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--config", type=str, default=None, help="YAML settings file.")
    p.add_argument("--host", type=str, default=None, help="Bind address.")
    p.add_argument("--port", type=int, default=None, help="Bind port.")
    p.add_argument("--output-dir", type=str, default=None, help="Directory receiving exports.")
    p.add_argument(
        "--default-max-size-mb",
        type=float,
        default=None,
        help="Size limit when a request sends none (<= 0 disables it).",
    )
    p.add_argument("--log-file", type=str, default=None, help="Log file path.")
    args = vars(p.parse_args(argv))
    config_file = args.pop("config")
    return load_settings(config_file, **args)


def main(argv: Sequence[str] | None = None) -> int:
    settings = parse_args(argv)
    logger = setup_logging(settings.log_file or None)
    app = create_app(settings)
    logger.info(
        "server_starting",
        host=settings.host,
        port=settings.port,
        output_dir=str(settings.output_dir.resolve()),
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
