"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from config.settings import get_settings

if TYPE_CHECKING:  # pragma: no cover
    from calls.factory import CallSessionFactory


@lru_cache(maxsize=1)
def _session_factory() -> CallSessionFactory:
    # Built on first use so the app starts without Deepgram or LLM credentials.
    from calls.factory import CallSessionFactory

    return CallSessionFactory.from_settings(get_settings())


def get_session_factory() -> CallSessionFactory:
    return _session_factory()
