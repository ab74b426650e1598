from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from .utils import mask_sender

logger = logging.getLogger("pustakabot.notifier")


class Notifier(Protocol):
    async def send_direct(self, to: str, message: str) -> bool:
        ...


class GatewayNotifier:
    """Push a message to a sender through the transport gateway's send-direct route."""

    def __init__(self, gateway_url: str, timeout_sec: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        """Purpose: Configure the gateway endpoint and HTTP client.
        Inputs/Outputs: Inputs are the send-direct URL, a timeout, and an optional client.
        Side Effects / State: Creates an httpx.AsyncClient when none is supplied.
        Dependencies: Uses httpx.
        Failure Modes: None at init.
        If Removed: Session-timeout notices cannot leave the core service.
        Testing Notes: Inject a client with httpx.MockTransport to observe requests.
        """
        self._gateway_url = gateway_url
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)
        self._owns_client = client is None

    async def send_direct(self, to: str, message: str) -> bool:
        """Purpose: Deliver one message; never raises.
        Inputs/Outputs: Inputs are the recipient id and text; output is True on 2xx.
        Side Effects / State: One HTTP POST to the gateway.
        Dependencies: Uses httpx.AsyncClient.post.
        Failure Modes: Transport errors and non-2xx responses are logged and return False.
        If Removed: The idle sweep has nobody to hand its notices to.
        Testing Notes: A 500 from the gateway returns False without raising.
        """
        try:
            response = await self._client.post(self._gateway_url, json={"to": to, "message": message})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("send-direct failed to=%s error=%s", mask_sender(to), exc)
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
