"""Async HTTP client that drives the claim lifecycle against the API."""

from __future__ import annotations

from typing import Any
from uuid import UUID

import httpx
from loguru import logger

from otw_api.core.settings import settings
from otw_api.services.flash_offers.errors import ClaimErrorCode

from .claim_state import ClaimEvent, ClaimState, ClaimView, reduce


class ClaimClient:
    """One claim flow for one offer and one signed-in user.

    A submit after a timeout or transport failure first re-queries
    ``claims/me`` so a claim that completed server-side is never re-submitted;
    if that query fails too, the view stays in ``ERROR`` and nothing is posted.
    An ``ALREADY_CLAIMED`` rejection is reconciled the same way so the token
    of an existing claim is shown.
    """

    def __init__(
        self,
        *,
        offer_id: UUID,
        user_id: UUID,
        base_url: str = "http://localhost:8000",
        remaining: int | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._offer_id = offer_id
        self._user_id = user_id
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds or settings.claim_client_timeout_seconds,
            transport=transport,
        )
        self._view = ClaimView.initial(remaining)
        self._in_flight = False

    @property
    def view(self) -> ClaimView:
        return self._view

    @property
    def _claims_path(self) -> str:
        return f"/api/v1/flash-offers/{self._offer_id}/claims"

    @property
    def _headers(self) -> dict[str, str]:
        return {"X-Session-User": str(self._user_id)}

    async def __aenter__(self) -> "ClaimClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _apply(self, event: ClaimEvent) -> ClaimView:
        previous = self._view.state
        self._view = reduce(self._view, event)
        if self._view.state is not previous:
            logger.debug(
                "Claim state transition",
                offer_id=str(self._offer_id),
                event=event.type.value,
                previous=previous.value,
                state=self._view.state.value,
            )
        return self._view

    async def submit(self) -> ClaimView:
        if self._in_flight:
            return self._view
        self._in_flight = True
        try:
            if self._view.needs_status_check:
                if not await self._sync_status():
                    return self._view
                if self._view.state is not ClaimState.CLAIMABLE:
                    return self._view

            if self._apply(ClaimEvent.submit()).state is not ClaimState.LOADING:
                return self._view

            try:
                response = await self._http.post(self._claims_path, headers=self._headers)
            except httpx.TimeoutException:
                logger.warning("Claim request timed out", offer_id=str(self._offer_id))
                return self._apply(ClaimEvent.timeout())
            except httpx.HTTPError as exc:
                logger.warning("Claim request failed", offer_id=str(self._offer_id), error=str(exc))
                return self._apply(ClaimEvent.failed())
            view = self._apply(_event_from_claim_response(response))
            if view.error_code is ClaimErrorCode.ALREADY_CLAIMED:
                await self._sync_status()
            return self._view
        finally:
            self._in_flight = False

    async def refresh(self) -> ClaimView:
        """Re-query the server; used on screen refocus and before retries."""

        if self._in_flight:
            return self._view
        self._in_flight = True
        try:
            await self._sync_status()
        finally:
            self._in_flight = False
        return self._view

    async def _sync_status(self) -> bool:
        try:
            response = await self._http.get(f"{self._claims_path}/me", headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Claim status sync failed", offer_id=str(self._offer_id), error=str(exc))
            return False
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Claim status sync returned an unreadable body", offer_id=str(self._offer_id))
            return False
        status = payload.get("status")
        remaining = payload.get("remainingClaims")
        if status in ("reserved", "redeemed"):
            event = ClaimEvent.status_synced(
                token=payload.get("token"),
                expires_at=payload.get("expiresAt"),
                remaining=remaining,
            )
        elif status == "expired":
            event = ClaimEvent.status_synced(expired=True, remaining=remaining)
        else:
            event = ClaimEvent.status_synced(remaining=remaining)
        self._apply(event)
        return True


def _event_from_claim_response(response: httpx.Response) -> ClaimEvent:
    try:
        payload = response.json()
    except ValueError:
        return ClaimEvent.failed()
    if not isinstance(payload, dict):
        return ClaimEvent.failed()

    if payload.get("status") == "reserved" and payload.get("token"):
        return ClaimEvent.reserved(payload["token"], payload.get("expiresAt"))
    if payload.get("status") == "error":
        try:
            code = ClaimErrorCode(payload.get("code"))
        except ValueError:
            return ClaimEvent.failed(payload.get("message"))
        return ClaimEvent.rejected(code, payload.get("message"))
    return ClaimEvent.failed()


__all__ = ["ClaimClient"]
