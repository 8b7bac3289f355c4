from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Import qsrls from the local src tree, not from an installed copy.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Drop QSRLS_* settings of the caller and keep the mirror store under tmp_path."""
    for name in list(os.environ):
        if name.startswith("QSRLS_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))
