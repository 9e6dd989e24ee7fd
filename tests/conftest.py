"""Shared fixtures for the Tree Backup tests."""

from pathlib import Path
from typing import Dict

import pytest


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    """Create files (relative path -> content) under root."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def source_tree(tmp_path):
    """A small project tree with content worth excluding."""
    root = tmp_path / "data" / "project"
    write_tree(
        root,
        {
            "README.md": "hello",
            "src/main.py": "print('hi')\n",
            "src/pkg/util.py": "x = 1\n",
            "node_modules/lib/index.js": "module.exports = 1;\n",
            ".git/HEAD": "ref: refs/heads/main\n",
            "build/out.bin": "0" * 100,
        },
    )
    return root


@pytest.fixture
def destination(tmp_path):
    path = tmp_path / "backup"
    path.mkdir()
    return path
