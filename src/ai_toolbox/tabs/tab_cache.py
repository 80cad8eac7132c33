# src/ai_toolbox/tabs/tab_cache.py

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)

TabBlob = dict[str, Any]


class TabStateCache:
    """
    Working state of each tab, kept outside the views that render it.

    A view may be attached and detached many times while its tab stays open;
    the entry lives until clear_tab_state is called.

    The cache makes no assumption about the shape of a blob. A key missing from
    get_tab_state() means "never set"; stored None values are returned as None.
    """

    def __init__(self) -> None:
        self._states: dict[str, TabBlob] = {}

    def get_tab_state(self, tab_id: str) -> TabBlob | None:
        state = self._states.get(tab_id)
        return None if state is None else dict(state)

    def set_tab_state(self, tab_id: str, blob: Mapping[str, Any]) -> None:
        self._states[tab_id] = dict(blob)
        logger.debug("Tab state replaced tab=%s keys=%s", tab_id, sorted(blob))

    def update_tab_state(self, tab_id: str, patch: Mapping[str, Any]) -> TabBlob:
        """Shallow-merge `patch` into the tab's blob (created if absent)."""
        merged = {**self._states.get(tab_id, {}), **patch}
        self._states[tab_id] = merged
        return dict(merged)

    def clear_tab_state(self, tab_id: str) -> None:
        if self._states.pop(tab_id, None) is not None:
            logger.debug("Tab state cleared tab=%s", tab_id)

    def tab_ids(self) -> list[str]:
        return list(self._states)
