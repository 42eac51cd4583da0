"""
Pytest configuration for hub tests.

- Ensures the repository root is on sys.path so `import hub_core` resolves
  without an install.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parent.parent
    root_str = str(repo_root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


_ensure_repo_root_on_syspath()


def pytest_configure(config):  # noqa: D401
    """Pytest entry to ensure env defaults helpful for fast tests."""
    # Keep config lookups away from any real add-on paths
    os.environ.setdefault("CONFIG_PATH", str(Path(__file__).resolve().parent / "_missing.yaml"))
