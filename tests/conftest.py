from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="session")
def app():
    # Must be set before the cached Settings instance is built.
    os.environ["PUBLIC_BASE_URL"] = "https://relay.example.com"
    os.environ["TWILIO_CALL_API_KEY"] = "secret"
    os.environ["LOG_LEVEL"] = "DEBUG"

    import importlib

    from config.settings import get_settings

    get_settings.cache_clear()
    sys.modules.pop("main", None)

    main = importlib.import_module("main")
    return main.app
