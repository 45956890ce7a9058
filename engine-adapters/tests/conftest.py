import sys
from pathlib import Path

import pytest


ADAPTERS_DIR = Path(__file__).resolve().parents[1]
if str(ADAPTERS_DIR) not in sys.path:
    sys.path.insert(0, str(ADAPTERS_DIR))


@pytest.fixture
def anyio_backend():
    return "asyncio"
