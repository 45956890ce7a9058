import sys
from pathlib import Path

import pytest


# Ensure octoargosync-api and the engine adapters are importable as plain modules.
API_DIR = Path(__file__).resolve().parents[1]
ADAPTERS_DIR = API_DIR.parent / "engine-adapters"
for path in (API_DIR, ADAPTERS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))


@pytest.fixture
def anyio_backend():
    return "asyncio"
