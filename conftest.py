# SPDX-License-Identifier: MIT
"""Pytest environment setup.

Ensure the repository root is importable so tests can resolve in-tree
packages without installing them, and isolate controller settings from the
developer's environment.
"""

from __future__ import annotations

import os
import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("CANARYGATE_"):
            monkeypatch.delenv(key, raising=False)
