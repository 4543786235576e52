"""Pytest configuration.

Tests run against the working tree without an editable install. When `pytest`
is executed without the repository root on `sys.path`, imports like
`import book_core` would fail.

This file ensures the repository root is importable.
"""

from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
