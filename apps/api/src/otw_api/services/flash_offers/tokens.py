"""Redemption token generation."""

from __future__ import annotations

import secrets
from typing import Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from otw_api.core.settings import settings
from otw_api.models.flash_offer import FlashOfferClaim

from .errors import TokenIssuanceExhaustedError

RandomBelow = Callable[[int], int]


class TokenIssuer:
    """Draw fixed-length numeric tokens that are unique within one offer."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        length: int | None = None,
        max_attempts: int | None = None,
        randbelow: RandomBelow | None = None,
    ) -> None:
        self._session = db_session
        self._length = length or settings.flash_offer_token_length
        self._max_attempts = max_attempts or settings.flash_offer_token_max_attempts
        self._randbelow = randbelow or secrets.randbelow

    def draw(self) -> str:
        return str(self._randbelow(10**self._length)).zfill(self._length)

    async def issue(self, offer_id: UUID) -> str:
        for attempt in range(1, self._max_attempts + 1):
            token = self.draw()
            # The (offer_id, token) constraint spans redeemed claims too, so check them all.
            taken = await self._session.scalar(
                select(FlashOfferClaim.id).where(
                    FlashOfferClaim.offer_id == offer_id,
                    FlashOfferClaim.token == token,
                )
            )
            if taken is None:
                return token
            logger.debug("Redemption token collision", offer_id=str(offer_id), attempt=attempt)

        raise TokenIssuanceExhaustedError(self._max_attempts)


__all__ = ["TokenIssuer"]
