# tests/services/test_side_effects.py
"""Best-effort side effect policy."""

import logging

import pytest

from leadrouter.services.side_effects import run_best_effort


async def succeed():
    return "ok"


async def explode():
    raise RuntimeError("downstream unavailable")


class TestRunBestEffort:

    @pytest.mark.asyncio
    async def test_success(self):
        assert await run_best_effort("noop", succeed()) is True

    @pytest.mark.asyncio
    async def test_failure_is_contained_and_logged(self, caplog):
        with caplog.at_level(logging.WARNING, logger="leadrouter.services.side_effects"):
            assert await run_best_effort("crm_contact_update", explode(), "contact-1") is False

        assert "crm_contact_update (contact-1)" in caplog.text
        assert "downstream unavailable" in caplog.text
