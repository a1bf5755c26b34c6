"""
Notification Client
===================

Fire-and-forget client for the notification collaborator (email delivery).
Handles:
- Magic link delivery
- Witness confirmation requests and resends
- Claim decision notices

A failed dispatch is logged and reported as False. It never undoes the
state transition that triggered it.
"""

import enum
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from holeinone.core.config import settings

logger = structlog.get_logger()


class NotificationCommand(str, enum.Enum):
    SEND_MAGIC_LINK = "send_magic_link"
    SEND_WITNESS_REQUEST = "send_witness_request"
    RESEND_WITNESS_REQUEST = "resend_witness_request"
    CLAIM_DECISION = "claim_decision"


class NotificationRequest(BaseModel):
    command: NotificationCommand
    to: str
    data: dict[str, Any] = {}


class NotificationClient:
    """
    Client for the notification API.
    Logs instead of sending when not configured.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        enabled: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url or settings.NOTIFY_API_URL
        self.api_key = api_key or settings.NOTIFY_API_KEY
        self._enabled = settings.NOTIFY_ENABLED if enabled is None else enabled
        self._client = httpx.AsyncClient(
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
            transport=transport,
        )

        if self.enabled:
            logger.info("notification_client_initialized", mode="live", api_url=self.api_url)
        else:
            logger.info("notification_client_initialized", mode="logging_only")

    @property
    def enabled(self) -> bool:
        """Check if the notification API is configured"""
        return self._enabled and bool(self.api_url)

    async def send(self, request: NotificationRequest) -> bool:
        """Send a command to the notification API, or log it if disabled"""
        if not self.enabled:
            logger.info(
                "notification_logged",
                command=request.command.value,
                to=request.to,
                mode="disabled",
            )
            return True

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self._client.post(
                f"{self.api_url}/api/v1/notifications",
                json=request.model_dump(mode="json"),
                headers=headers,
            )
            if response.is_success:
                logger.debug("notification_sent", command=request.command.value)
                return True
            logger.warning(
                "notification_failed",
                command=request.command.value,
                status_code=response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error("notification_error", command=request.command.value, error=str(e))
            return False

    # ==================== Commands ====================

    async def send_magic_link(self, email: str, url: str, expires_at: str) -> bool:
        return await self.send(NotificationRequest(
            command=NotificationCommand.SEND_MAGIC_LINK,
            to=email,
            data={"url": url, "expires_at": expires_at},
        ))

    async def send_witness_request(
        self,
        email: str,
        witness_name: str,
        url: str,
        expires_at: str,
        resend: bool = False,
    ) -> bool:
        command = (
            NotificationCommand.RESEND_WITNESS_REQUEST
            if resend
            else NotificationCommand.SEND_WITNESS_REQUEST
        )
        return await self.send(NotificationRequest(
            command=command,
            to=email,
            data={"witness_name": witness_name, "url": url, "expires_at": expires_at},
        ))

    async def notify_claim_decision(
        self,
        player_id: str,
        entry_id: str,
        decision: str,
        notes: Optional[str] = None,
    ) -> bool:
        """Tell the player a staff decision was made on their win claim."""
        return await self.send(NotificationRequest(
            command=NotificationCommand.CLAIM_DECISION,
            to=player_id,
            data={"entry_id": entry_id, "decision": decision, "notes": notes},
        ))

    async def close(self):
        await self._client.aclose()
