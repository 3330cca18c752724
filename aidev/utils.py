"""
Utility functions for the sandbox engine.
"""

import re
import shlex
from pathlib import Path


# Mapping of file extensions to language names for syntax highlighting
EXTENSION_LANGUAGE_MAP = {
    ".js": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".html": "html",
    ".css": "css",
    ".scss": "scss",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".md": "markdown",
    ".sh": "bash",
    ".py": "python",
    ".txt": "text",
}

# Special filename mappings (no extension)
FILENAME_LANGUAGE_MAP = {
    "Dockerfile": "dockerfile",
    "Makefile": "makefile",
    ".gitignore": "text",
    ".env": "text",
}


def guess_language_from_filename(path: str) -> str:
    """
    Guess the language of a workspace file for the dashboard editor.

    Args:
        path: File path or filename

    Returns:
        Language name for syntax highlighting, defaults to "text"
    """
    filename = Path(path).name

    if filename in FILENAME_LANGUAGE_MAP:
        return FILENAME_LANGUAGE_MAP[filename]

    suffix = Path(path).suffix.lower()
    return EXTENSION_LANGUAGE_MAP.get(suffix, "text")


def safe_project_name(name: str) -> str:
    """
    Turn a user supplied project name into a container-name-safe slug.

    Docker names allow [a-zA-Z0-9][a-zA-Z0-9_.-]; we keep lowercase letters,
    digits and single hyphens.

    Args:
        name: The project name typed by the user

    Returns:
        A slug usable inside a container name
    """
    # Take first 40 characters
    slug = name[:40].strip().lower()

    # Collapse whitespace and underscores into hyphens
    slug = re.sub(r'[\s_]+', '-', slug)

    # Remove anything Docker would reject
    slug = re.sub(r'[^a-z0-9\-]', '', slug)
    slug = re.sub(r'-{2,}', '-', slug).strip('-')

    if not slug:
        slug = "project"

    return slug


def shell_quote(value: str) -> str:
    """Quote a value for safe interpolation into a bash -c command."""
    return shlex.quote(value)
