from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import pytest

# Ensure repository root is on sys.path so the package imports without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from stageguard.guardrail import Guardrail  # noqa: E402
from stageguard.testkit import guardrail_for  # noqa: E402


@pytest.fixture
def guardrail_factory() -> Callable[..., Guardrail]:
    return guardrail_for
