from __future__ import annotations

import sys
from pathlib import Path

import pytest
from aiohttp.test_utils import unused_port

# Ensure `import mediaplayer` works when running `pytest` from repo root.
SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from mediaplayer.config import ApiConfig  # noqa: E402


@pytest.fixture
def api_config() -> ApiConfig:
    return ApiConfig(host="127.0.0.1", port=unused_port())
