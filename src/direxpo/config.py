from __future__ import annotations

import posixpath
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SNIFF_BYTES = 8192
READ_CHUNK_CHARS = 64 * 1024
SINK_HIGH_WATER_MARK = 256 * 1024
BYTES_PER_MB = 1024 * 1024
DEFAULT_MAX_SIZE_MB = 50.0

EXPORT_HEADER = "# Selected Files Export\n\n"
TREE_HEADER = "# Folder Structure"
BINARY_NOTE = "> *Binary file — content not exported.*\n\n"

# Extensions that are always treated as readable text/code.
TEXT_EXTENSIONS: frozenset[str] = frozenset({
    # web
    "html", "htm", "xhtml", "xml", "svg", "css", "scss", "sass", "less",
    "js", "mjs", "cjs", "jsx", "ts", "tsx", "vue", "svelte",
    # backend
    "py", "rb", "php", "java", "kt", "kts", "scala", "groovy",
    "cs", "fs", "fsx", "vb", "cpp", "cc", "cxx", "c", "h", "hpp",
    "go", "rs", "swift", "dart", "m", "mm",
    "lua", "pl", "pm", "r", "jl", "ex", "exs", "erl", "hrl",
    "hs", "lhs", "clj", "cljs", "elm", "ml", "mli",
    # shell
    "sh", "bash", "zsh", "fish", "ps1", "psm1", "psd1", "bat", "cmd",
    # data / config
    "json", "json5", "jsonc", "yaml", "yml", "toml", "ini", "cfg",
    "conf", "config", "env", "properties", "plist",
    # docs
    "md", "mdx", "markdown", "txt", "rst", "adoc", "tex", "csv", "tsv",
    # build / infra
    "dockerfile", "makefile", "cmake", "gradle", "bazel", "bzl",
    "tf", "tfvars", "hcl", "nix", "lock",
    # misc
    "graphql", "gql", "proto", "thrift", "avsc", "wat",
    "sql", "prisma", "pug", "jade", "haml", "ejs", "hbs", "mustache",
    "njk", "twig", "liquid", "erb",
    # editor / project
    "editorconfig", "eslintrc", "prettierrc", "babelrc", "npmrc",
    "gitignore", "gitattributes", "htaccess",
})  # fmt: skip

# File names (lower-cased) that are text even without a known extension.
TEXT_BASENAMES: frozenset[str] = frozenset({
    "dockerfile", "makefile", "gemfile", "rakefile", "procfile",
    "vagrantfile", "brewfile", "jenkinsfile", "caddyfile",
    ".gitignore", ".gitattributes", ".editorconfig", ".npmrc",
    ".env", ".env.local", ".env.example", ".htaccess",
})  # fmt: skip

FILTER_EXTENSIONS: dict[str, frozenset[str]] = {
    "tsx": frozenset({"ts", "tsx", "js", "jsx"}),
    "css": frozenset({"css", "scss", "sass", "less"}),
    "md": frozenset({"md", "markdown"}),
    "json": frozenset({"json"}),
}


class SkipReason(StrEnum):
    """Closed set of reasons attached to a skipped path."""

    INVALID_FOLDER = "Invalid folder path"
    FAILED_FOLDER = "Failed to read folder"
    INVALID_PATH = "Invalid path"
    EXCLUDED = "Excluded by pattern"
    NOT_A_FILE = "Not a file"
    NOT_FOUND = "File not found or inaccessible"
    DESELECTED = "Excluded by selection"
    EMPTY_FOLDER = "No files left in folder after exclusions"

    @staticmethod
    def too_large(max_size_mb: float) -> str:
        """Build the size reason, e.g. ``Exceeds max size (1MB)``."""
        return f"Exceeds max size ({max_size_mb:g}MB)"


class WireModel(BaseModel):
    """Base model exchanging camelCase keys with the web UI."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


def normalize_rel(path: str) -> str:
    """Normalize a UI supplied relative path to its canonical slash-delimited form.

    Redundant separators and ``.`` segments are collapsed and ``.`` becomes the root
    ``""``. Paths holding a ``..`` segment are left uncollapsed so path safety still
    rejects them.
    """
    rel = path.replace("\\", "/")
    if ".." in rel.split("/"):
        return rel.rstrip("/")
    rel = posixpath.normpath(rel) if rel else "."
    return "" if rel == "." else rel


class SkippedFile(WireModel):
    """Audit record for a path that did not make it into the export."""

    rel_path: str = Field(..., description="Path relative to the export root")
    reason: str = Field(..., description="Why the path was skipped")


class SelectionPayload(WireModel):
    """Selection intent sent by the picker: explicit files and folders, plus exclusions."""

    selected_files: frozenset[str] = Field(default_factory=frozenset)
    selected_folders: frozenset[str] = Field(default_factory=frozenset)
    excluded_files: frozenset[str] = Field(default_factory=frozenset)
    excluded_folders: frozenset[str] = Field(default_factory=frozenset)

    @field_validator(
        "selected_files",
        "selected_folders",
        "excluded_files",
        "excluded_folders",
        mode="before",
    )
    @classmethod
    def _normalize_paths(cls, value: object) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [value]
        return frozenset(normalize_rel(str(v)) for v in value)  # type: ignore[union-attr]


class ExportCounts(WireModel):
    total_matched: int = 0
    included: int = 0
    skipped_binary: int = 0
    skipped_large: int = 0
    skipped_error: int = 0


class ExportReport(WireModel):
    """Summary of one export; ``bytes_written`` is the on-disk size of the artifact."""

    included: int = 0
    bytes_written: int = 0
    counts: ExportCounts = Field(default_factory=ExportCounts)


class TreeOnlyReport(WireModel):
    included: int = 0
    bytes_written: int = 0
    tree_only: bool = True


class ExportResult(BaseModel):
    """Output of the export engine."""

    model_config = ConfigDict(frozen=True)

    output_markdown_path: str
    report: ExportReport


class RunResponse(WireModel):
    """Success body of ``POST /api/run``."""

    output_path: str
    report: ExportReport | TreeOnlyReport
    exported_count: int
    skipped: list[SkippedFile] = Field(default_factory=list)


class TreeNode(WireModel):
    type: str
    name: str
    rel_path: str
    size: int | None = None
    has_children: bool | None = None


class TreeResponse(WireModel):
    root: str
    rel: str
    nodes: list[TreeNode] = Field(default_factory=list)
