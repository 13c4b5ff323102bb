"""Per-invocation scratch resources for local-inference evaluators."""

from __future__ import annotations

import secrets
import shutil
import tempfile
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path


def generate_session_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@asynccontextmanager
async def scratch_directory(prefix: str) -> AsyncIterator[Path]:
    """Create a temporary directory removed on every exit path, cancellation included."""

    path = Path(tempfile.mkdtemp(prefix=f"stageguard-{prefix}-"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


__all__ = ["generate_session_id", "scratch_directory"]
