# backend/leadrouter/services/side_effects.py
"""
Best-effort side effects

CRM write-back and alert delivery run after the routing commit. Their failures
are logged and reported as False; they never propagate into the routing result.
Contrast with AssignmentExecutor's commit path, where failures roll back and raise.
"""

import logging
from typing import Awaitable, Optional

logger = logging.getLogger(__name__)


async def run_best_effort(name: str, awaitable: Awaitable, context: Optional[str] = None) -> bool:
    """
    Await a side effect, containing any failure.

    Returns True on success, False when the side effect raised.
    """
    label = f"{name} ({context})" if context else name
    try:
        await awaitable
        return True
    except Exception as e:
        logger.warning(f"Best-effort side effect {label} failed: {e}", exc_info=True)
        return False
