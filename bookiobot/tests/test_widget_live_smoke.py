from __future__ import annotations

import os

import pytest

from bookiobot.config import load_settings
from bookiobot.slot_finder import SlotFinder
from bookiobot.widget_api import WidgetClient

# Opt-in: hits the real public widget API.
#   BOOKIO_LIVE_SERVICE_ID=<id> pytest -m live
pytestmark = pytest.mark.live


@pytest.mark.skipif(not os.getenv("BOOKIO_LIVE_SERVICE_ID"), reason="BOOKIO_LIVE_SERVICE_ID is not set")
def test_live_soonest_slot_search_completes() -> None:
    settings = load_settings()
    widget = WidgetClient(settings)
    try:
        result = SlotFinder(widget, settings).find_soonest_slot(os.environ["BOOKIO_LIVE_SERVICE_ID"], max_months=1)
    finally:
        widget.close()

    assert result.calls_made >= 1
    if result.found:
        assert result.time
        assert result.days_from_now >= 0
