"""
HTTP client for the Blind Canvas API.

Quota and credit rejections are returned as results carrying the server
snapshot. Everything else that is not a success becomes an exception whose
type tells the caller what to do next: retry, discard identity, or give up.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from canvas_client.state import LedgerSnapshot, Mark


logger = logging.getLogger(__name__)

STATUS_ACCEPTED = "accepted"
STATUS_NO_FREE_CAPACITY = "no_free_capacity"
STATUS_INSUFFICIENT_CREDITS = "insufficient_credits"

_REJECTION_CODES = {
    "NO_FREE_CAPACITY": STATUS_NO_FREE_CAPACITY,
    "INSUFFICIENT_CREDITS": STATUS_INSUFFICIENT_CREDITS,
}


class CanvasClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class TransientError(CanvasClientError):
    """Network failure, timeout, 5xx or 429. Safe to retry with the same keys."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, status_code, detail)
        self.retry_after = retry_after


class NotFoundError(CanvasClientError):
    """Participant unknown or session token rejected; restart identity selection."""


class ValidationError(CanvasClientError):
    pass


class NotRevealedError(CanvasClientError):
    pass


@dataclass
class PlacementResult:
    status: str
    snapshot: LedgerSnapshot
    accepted: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_ACCEPTED


@dataclass
class RevealResult:
    revealed: bool
    snapshot: LedgerSnapshot


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return body["detail"]
    return body


class CanvasApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "CanvasApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, json: Any = None) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json, headers=self._headers())
        except httpx.TransportError as exc:
            raise TransientError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status >= 500 or status == 429:
            raise TransientError(
                f"{method} {path} returned {status}",
                status_code=status,
                detail=_detail(response),
                retry_after=_parse_retry_after(response),
            )
        if status in (401, 404):
            raise NotFoundError(f"{method} {path} returned {status}", status_code=status, detail=_detail(response))
        if status == 422:
            raise ValidationError(f"{method} {path} rejected input", status_code=status, detail=_detail(response))
        return response

    def _rejection(self, response: httpx.Response) -> Optional[PlacementResult]:
        detail = _detail(response)
        if not isinstance(detail, dict):
            return None
        status = _REJECTION_CODES.get(str(detail.get("error")))
        if status is None or not isinstance(detail.get("snapshot"), dict):
            return None
        return PlacementResult(
            status=status,
            snapshot=LedgerSnapshot.from_payload(detail["snapshot"]),
            accepted=list(detail.get("accepted") or []),
        )

    def _unexpected(self, response: httpx.Response) -> CanvasClientError:
        return CanvasClientError(
            f"Unexpected response {response.status_code}",
            status_code=response.status_code,
            detail=_detail(response),
        )

    # Session

    async def list_colors(self) -> List[str]:
        response = await self._request("GET", "/session/colors")
        return list(response.json().get("colors") or [])

    async def init_participant(self, color_label: str) -> LedgerSnapshot:
        response = await self._request("POST", "/session/init", json={"color_label": color_label})
        if response.status_code != 200:
            raise self._unexpected(response)
        payload = response.json()
        self.token = payload["session_token"]
        return LedgerSnapshot.from_payload(payload)

    async def get_participant(self) -> LedgerSnapshot:
        response = await self._request("GET", "/session/me")
        if response.status_code != 200:
            raise self._unexpected(response)
        return LedgerSnapshot.from_payload(response.json())

    async def reveal(self) -> RevealResult:
        response = await self._request("POST", "/session/reveal")
        if response.status_code == 200:
            return RevealResult(revealed=True, snapshot=LedgerSnapshot.from_payload(response.json()))
        detail = _detail(response)
        if response.status_code == 409 and isinstance(detail, dict) and detail.get("error") == "QUOTA_NOT_MET":
            return RevealResult(revealed=False, snapshot=LedgerSnapshot.from_payload(detail["snapshot"]))
        raise self._unexpected(response)

    # Placements

    async def place_one(self, mark: Mark) -> PlacementResult:
        body = {"x": mark.x, "y": mark.y, "idempotency_key": mark.idempotency_key, "phase": mark.phase}
        response = await self._request("POST", "/placements", json=body)
        if response.status_code == 200:
            payload = response.json()
            placement = payload.get("placement")
            return PlacementResult(
                status=STATUS_ACCEPTED,
                snapshot=LedgerSnapshot.from_payload(payload["snapshot"]),
                accepted=[placement] if placement else [],
            )
        rejection = self._rejection(response)
        if rejection is None:
            raise self._unexpected(response)
        return rejection

    async def place_batch(self, marks: Sequence[Mark]) -> PlacementResult:
        body = {
            "placements": [
                {"x": mark.x, "y": mark.y, "idempotency_key": mark.idempotency_key, "phase": mark.phase}
                for mark in marks
            ]
        }
        response = await self._request("POST", "/placements/batch", json=body)
        if response.status_code == 200:
            payload = response.json()
            return PlacementResult(
                status=STATUS_ACCEPTED,
                snapshot=LedgerSnapshot.from_payload(payload["snapshot"]),
                accepted=list(payload.get("accepted") or []),
            )
        rejection = self._rejection(response)
        if rejection is None:
            raise self._unexpected(response)
        return rejection

    async def list_all_placements(self) -> List[Mark]:
        response = await self._request("GET", "/placements/all")
        if response.status_code == 403:
            raise NotRevealedError("Canvas not revealed yet", status_code=403, detail=_detail(response))
        if response.status_code != 200:
            raise self._unexpected(response)
        return [Mark.from_payload(item) for item in response.json()]

    async def list_own_placements(self) -> List[Mark]:
        response = await self._request("GET", "/placements/mine")
        if response.status_code != 200:
            raise self._unexpected(response)
        return [Mark.from_payload(item) for item in response.json()]
