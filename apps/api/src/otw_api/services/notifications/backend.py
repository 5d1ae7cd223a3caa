"""Push delivery providers for flash offer notifications."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Protocol, Sequence
from uuid import UUID

import httpx
from loguru import logger

from otw_api.core.settings import Settings, settings as default_settings

from .payload import PushPayload


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    INVALID_TOKEN = "invalid_token"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True, slots=True)
class PushMessage:
    token: str
    user_id: UUID
    payload: PushPayload


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    token: str
    status: DeliveryStatus
    error_code: str | None = None


class PushDeliveryProvider(Protocol):
    """Sends one batch and reports an outcome per token."""

    name: str
    max_batch_size: int

    async def send(self, batch: Sequence[PushMessage]) -> List[DeliveryOutcome]:
        ...


OutcomeScript = Callable[[PushMessage, int], DeliveryStatus]


@dataclass
class InMemoryPushProvider:
    """Records batches instead of sending them; outcomes can be scripted per token."""

    max_batch_size: int = 500
    outcomes: Dict[str, List[DeliveryStatus]] = field(default_factory=dict)
    script: OutcomeScript | None = None
    delay_seconds: float = 0.0
    name: str = "memory"
    batches: List[List[PushMessage]] = field(default_factory=list)
    attempts: Dict[str, int] = field(default_factory=dict)
    in_flight: int = 0
    max_in_flight: int = 0

    async def send(self, batch: Sequence[PushMessage]) -> List[DeliveryOutcome]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            self.batches.append(list(batch))
            return [self._outcome_for(message) for message in batch]
        finally:
            self.in_flight -= 1

    @property
    def sent_messages(self) -> List[PushMessage]:
        return [message for batch in self.batches for message in batch]

    def _outcome_for(self, message: PushMessage) -> DeliveryOutcome:
        attempt = self.attempts.get(message.token, 0)
        self.attempts[message.token] = attempt + 1
        if self.script is not None:
            status = self.script(message, attempt)
        else:
            scripted = self.outcomes.get(message.token)
            if scripted:
                status = scripted[min(attempt, len(scripted) - 1)]
            else:
                status = DeliveryStatus.SUCCESS
        error_code = None if status is DeliveryStatus.SUCCESS else status.value
        return DeliveryOutcome(token=message.token, status=status, error_code=error_code)


_INVALID_TOKEN_ERRORS = frozenset({"UNREGISTERED", "INVALID_ARGUMENT", "SENDER_ID_MISMATCH", "NOT_FOUND"})


def classify_fcm_error(status_code: int, body: Mapping[str, object] | None) -> tuple[DeliveryStatus, str]:
    """Map an FCM v1 error response to a delivery status and error code."""

    error = body.get("error") if isinstance(body, Mapping) else None
    code = ""
    if isinstance(error, Mapping):
        for detail in error.get("details") or []:
            if isinstance(detail, Mapping) and detail.get("errorCode"):
                code = str(detail["errorCode"])
                break
        if not code:
            code = str(error.get("status") or "")

    if code in _INVALID_TOKEN_ERRORS or status_code == 404:
        return DeliveryStatus.INVALID_TOKEN, code or "UNREGISTERED"
    # Quota, server and auth errors say nothing about the token itself.
    return DeliveryStatus.TRANSIENT_FAILURE, code or f"HTTP_{status_code}"


class FCMPushProvider:
    """Firebase Cloud Messaging HTTP v1 sender.

    FCM v1 accepts one message per request, so a batch is fanned out over a
    shared client. In-flight requests are capped per provider instance by
    ``max_concurrent_requests``, across every batch the dispatcher runs at once.
    """

    name = "fcm"
    max_batch_size = 500

    def __init__(
        self,
        *,
        project_id: str,
        access_token: str,
        base_url: str = "https://fcm.googleapis.com",
        timeout_seconds: float = 10.0,
        max_concurrent_requests: int = 50,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = f"/v1/projects/{project_id}/messages:send"
        self._access_token = access_token
        self._client = client
        self._base_url = base_url
        self._timeout = timeout_seconds
        self._max_concurrent_requests = max(max_concurrent_requests, 1)
        self._request_slots = asyncio.Semaphore(self._max_concurrent_requests)

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "FCMPushProvider":
        config = config or default_settings
        if not config.fcm_project_id or not config.fcm_access_token:
            raise ValueError("FCM push provider requires fcm_project_id and fcm_access_token")
        return cls(
            project_id=config.fcm_project_id,
            access_token=config.fcm_access_token,
            base_url=config.fcm_base_url,
            timeout_seconds=config.fcm_timeout_seconds,
            max_concurrent_requests=config.fcm_max_concurrent_requests,
        )

    async def send(self, batch: Sequence[PushMessage]) -> List[DeliveryOutcome]:
        if self._client is not None:
            return await self._send_all(self._client, batch)
        limits = httpx.Limits(
            max_connections=self._max_concurrent_requests,
            max_keepalive_connections=self._max_concurrent_requests,
        )
        async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, limits=limits) as client:
            return await self._send_all(client, batch)

    async def _send_all(self, client: httpx.AsyncClient, batch: Sequence[PushMessage]) -> List[DeliveryOutcome]:
        return list(await asyncio.gather(*(self._send_one(client, message) for message in batch)))

    async def _send_one(self, client: httpx.AsyncClient, message: PushMessage) -> DeliveryOutcome:
        try:
            async with self._request_slots:
                response = await client.post(
                    self._endpoint,
                    json=message.payload.to_fcm_message(message.token),
                    headers={"Authorization": f"Bearer {self._access_token}"},
                )
        except httpx.TimeoutException:
            return DeliveryOutcome(token=message.token, status=DeliveryStatus.TRANSIENT_FAILURE, error_code="TIMEOUT")
        except httpx.HTTPError as exc:
            logger.warning("FCM request failed", error=str(exc))
            return DeliveryOutcome(
                token=message.token,
                status=DeliveryStatus.TRANSIENT_FAILURE,
                error_code="NETWORK_ERROR",
            )

        if response.is_success:
            return DeliveryOutcome(token=message.token, status=DeliveryStatus.SUCCESS)

        try:
            body = response.json()
        except ValueError:
            body = None
        status, code = classify_fcm_error(response.status_code, body)
        return DeliveryOutcome(token=message.token, status=status, error_code=code)


def build_push_provider(config: Settings | None = None) -> PushDeliveryProvider:
    config = config or default_settings
    if config.push_provider == "fcm":
        return FCMPushProvider.from_settings(config)
    return InMemoryPushProvider(max_batch_size=config.flash_offer_dispatch_batch_size)


__all__ = [
    "DeliveryOutcome",
    "DeliveryStatus",
    "FCMPushProvider",
    "InMemoryPushProvider",
    "PushDeliveryProvider",
    "PushMessage",
    "build_push_provider",
    "classify_fcm_error",
]
