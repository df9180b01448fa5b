"""wpcheck test configuration."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest


@pytest.fixture(autouse=True)
def _clean_state() -> Iterator[None]:
    """Restore default configuration and clear the report cache for every test."""
    from wpcheck.engine import _config
    from wpcheck.engine import clear_cache as _clear

    saved = dict(_config)
    level = logging.getLogger("wpcheck").level
    _clear()
    yield
    _config.clear()
    _config.update(saved)
    logging.getLogger("wpcheck").setLevel(level)
    _clear()
