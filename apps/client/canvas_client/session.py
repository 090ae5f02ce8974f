"""High-level participant session over the API client, state and submitter."""

from __future__ import annotations

import logging
from typing import Any, Optional

from canvas_client.api import CanvasApiClient, CanvasClientError, NotFoundError
from canvas_client.state import CanvasState, LedgerSnapshot, Mark, PlacementNotAllowedError, SessionPhase
from canvas_client.submitter import FailureCallback, PlacementSubmitter


logger = logging.getLogger(__name__)


class CanvasSession:
    def __init__(
        self,
        api: CanvasApiClient,
        state: Optional[CanvasState] = None,
        on_failure: Optional[FailureCallback] = None,
        **submitter_options: Any,
    ):
        self.api = api
        self.state = state or CanvasState()
        self.submitter = PlacementSubmitter(
            api,
            self.state,
            on_failure=on_failure,
            on_snapshot=self._after_snapshot,
            **submitter_options,
        )

    async def __aenter__(self) -> "CanvasSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def token(self) -> Optional[str]:
        return self.api.token

    async def start(self, stored_token: Optional[str] = None) -> SessionPhase:
        """Restore a stored identity, or move to color selection without one."""
        self.submitter.start()
        if not stored_token:
            self.state.begin_identity_selection()
            return self.state.phase

        self.api.token = stored_token
        try:
            snapshot = await self.api.get_participant()
        except NotFoundError:
            logger.info("Stored session is gone; selecting a new identity")
            self.api.token = None
            self.state.drop_identity()
            return self.state.phase

        self.state.identity_created(snapshot)
        if not snapshot.revealed:
            self.state.load_own_marks(await self.api.list_own_placements())
        await self._after_snapshot(snapshot)
        return self.state.phase

    async def choose_color(self, color_label: str) -> LedgerSnapshot:
        snapshot = await self.api.init_participant(color_label)
        self.state.identity_created(snapshot)
        return snapshot

    def place(self, x: float, y: float) -> Optional[Mark]:
        """Render a provisional mark and queue it. None when no capacity is left."""
        try:
            mark = self.state.add_provisional(x, y)
        except PlacementNotAllowedError:
            return None
        self.submitter.submit(mark)
        return mark

    async def reveal(self) -> bool:
        result = await self.api.reveal()
        if self.state.adopt(result.snapshot):
            await self._after_snapshot(result.snapshot)
        return result.revealed

    async def refresh(self) -> LedgerSnapshot:
        snapshot = await self.api.get_participant()
        if self.state.adopt(snapshot):
            await self._after_snapshot(snapshot)
        return snapshot

    async def _after_snapshot(self, snapshot: LedgerSnapshot) -> None:
        if not self.state.claim_revealed_fetch():
            return
        try:
            marks = await self.api.list_all_placements()
        except NotFoundError:
            self.api.token = None
            self.state.drop_identity()
            return
        except CanvasClientError as exc:
            logger.warning("Fetching revealed canvas failed, will retry on next snapshot: %s", exc)
            self.state.release_revealed_fetch()
            return
        self.state.load_revealed_marks(marks)
        logger.info("Loaded %s revealed marks", len(marks))

    async def drain(self) -> None:
        await self.submitter.drain()

    async def close(self) -> None:
        await self.submitter.stop()
