from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.api.dependencies.security import require_dispatch_api_key
from otw_api.api.dependencies.session import require_member_session, require_venue_staff
from otw_api.db.session import get_session
from otw_api.models.flash_offer import FlashOffer
from otw_api.models.user import User
from otw_api.services.flash_offers import ClaimErrorCode, ClaimService, OfferNotFoundError, RedemptionError
from otw_api.services.notifications import NotificationDispatchEngine, PushDeliveryProvider, build_push_provider

router = APIRouter(prefix="/flash-offers", tags=["Flash Offers"])

CLAIM_ERROR_STATUS: dict[ClaimErrorCode, int] = {
    ClaimErrorCode.NOT_CHECKED_IN: status.HTTP_403_FORBIDDEN,
    ClaimErrorCode.OFFER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ClaimErrorCode.ALREADY_CLAIMED: status.HTTP_409_CONFLICT,
    ClaimErrorCode.OFFER_FULL: status.HTTP_409_CONFLICT,
    ClaimErrorCode.OFFER_EXPIRED: status.HTTP_410_GONE,
    ClaimErrorCode.TEMPORARILY_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

REDEMPTION_ERROR_STATUS: dict[str, int] = {
    "invalid_token": status.HTTP_404_NOT_FOUND,
    "already_redeemed": status.HTTP_409_CONFLICT,
    "expired": status.HTTP_410_GONE,
}


class ClaimStatusResponse(BaseModel):
    status: Literal["none", "reserved", "redeemed", "expired"]
    token: str | None = None
    expires_at: datetime | None = Field(default=None, serialization_alias="expiresAt")
    redeemed_at: datetime | None = Field(default=None, serialization_alias="redeemedAt")
    remaining_claims: int = Field(..., serialization_alias="remainingClaims")


class RedeemRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=16)


class RedeemedClaimResponse(BaseModel):
    id: UUID
    offer_id: UUID
    user_id: UUID
    status: str
    redeemed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class DispatchRequest(BaseModel):
    offer_id: UUID = Field(..., alias="offerId")
    dry_run: bool = Field(default=False, alias="dryRun")

    model_config = ConfigDict(populate_by_name=True)


def get_push_provider() -> PushDeliveryProvider:
    return build_push_provider()


@router.post(
    "/{offer_id}/claims",
    status_code=status.HTTP_201_CREATED,
    summary="Claim a flash offer",
)
async def claim_flash_offer(
    offer_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> JSONResponse:
    """Reserve one claim for the signed-in user and return a redemption token."""

    user_id = user.id
    result = await ClaimService(session).claim(user_id, offer_id)
    if result.status == "reserved":
        return JSONResponse(status_code=status.HTTP_201_CREATED, content=result.as_payload())
    return JSONResponse(status_code=CLAIM_ERROR_STATUS[result.code], content=result.as_payload())


@router.get(
    "/{offer_id}/claims/me",
    summary="Current user's claim for an offer",
)
async def get_my_claim(
    offer_id: UUID,
    user: User = Depends(require_member_session),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user_id = user.id
    offer = await session.get(FlashOffer, offer_id)
    if offer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Offer not found")

    remaining = max(offer.max_claims - offer.claimed_count, 0)
    claim = await ClaimService(session).get_claim_status(user_id, offer_id)
    if claim is None:
        response = ClaimStatusResponse(status="none", remaining_claims=remaining)
    else:
        response = ClaimStatusResponse(
            status=claim.status,
            token=claim.token,
            expires_at=claim.expires_at,
            redeemed_at=claim.redeemed_at,
            remaining_claims=remaining,
        )
    return response.model_dump(mode="json", by_alias=True)


@router.post(
    "/{offer_id}/claims/redeem",
    response_model=RedeemedClaimResponse,
    summary="Redeem a claim token at the venue",
)
async def redeem_flash_offer_claim(
    offer_id: UUID,
    payload: RedeemRequest,
    staff: User = Depends(require_venue_staff),
    session: AsyncSession = Depends(get_session),
) -> RedeemedClaimResponse:
    staff_user_id = staff.id
    try:
        claim = await ClaimService(session).redeem(offer_id, payload.token.strip(), staff_user_id=staff_user_id)
    except RedemptionError as exc:
        raise HTTPException(
            status_code=REDEMPTION_ERROR_STATUS.get(exc.reason, status.HTTP_400_BAD_REQUEST),
            detail={"reason": exc.reason, "message": str(exc)},
        ) from exc
    return RedeemedClaimResponse.model_validate(claim)


@router.post(
    "/dispatch",
    dependencies=[Depends(require_dispatch_api_key)],
    summary="Send push notifications for a new flash offer",
)
async def dispatch_flash_offer(
    payload: DispatchRequest,
    session: AsyncSession = Depends(get_session),
    provider: PushDeliveryProvider = Depends(get_push_provider),
) -> dict[str, Any]:
    """Run the notification fan-out once; repeated calls for the same offer are skipped."""

    engine = NotificationDispatchEngine(session, provider=provider)
    try:
        summary = await engine.dispatch(payload.offer_id, dry_run=payload.dry_run)
    except OfferNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Offer not found") from exc
    return summary.as_dict()
