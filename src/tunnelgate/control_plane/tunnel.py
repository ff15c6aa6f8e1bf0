"""Client for the per-user tunnel endpoints that host deployable forms."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from ..common.errors import RemoteServiceError, TunnelUnreachableError

LOGGER = structlog.get_logger("tunnelgate.tunnel")

TUNNEL_HEADERS = {
    "bypass-tunnel-reminder": "true",
    "User-Agent": "tunnelgate-control-plane",
    "Content-Type": "application/json",
}


@dataclass
class TunnelResponse:
    status_code: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class TunnelClient:
    """Posts form actions to ``https://{username}{suffix}.{host}/{action}/{slot}``."""

    def __init__(self, http_client: httpx.AsyncClient, host: str = "loca.lt", suffix: str = "7890") -> None:
        self._http = http_client
        self.host = host
        self.suffix = suffix

    def identifier(self, username: str) -> str:
        return f"{username}{self.suffix}"

    def url(self, username: str, action: str, slot: int) -> str:
        return f"https://{self.identifier(username)}.{self.host}/{action}/{slot}"

    async def perform(self, username: str, action: str, slot: int, form_data: dict[str, Any]) -> TunnelResponse:
        url = self.url(username, action, slot)
        try:
            response = await self._http.post(url, json=form_data, headers=TUNNEL_HEADERS)
        except httpx.ConnectError as exc:
            LOGGER.warning("Tunnel host unreachable", action=action, form_number=slot, tunnel=self.identifier(username))
            raise TunnelUnreachableError(
                "Tunnel host could not be reached",
                error={"code": "ENOTFOUND", "host": f"{self.identifier(username)}.{self.host}"},
            ) from exc
        except httpx.HTTPError as exc:
            LOGGER.error("Tunnel request failed", action=action, form_number=slot, error_type=type(exc).__name__)
            raise RemoteServiceError("Tunnel request failed", status_code=500) from exc
        LOGGER.info("Tunnel action completed", action=action, form_number=slot, status=response.status_code)
        return TunnelResponse(status_code=response.status_code, body=_decode(response))

    async def start(self, username: str, slot: int, form_data: dict[str, Any]) -> TunnelResponse:
        return await self.perform(username, "start", slot, form_data)

    async def update(self, username: str, slot: int, form_data: dict[str, Any]) -> TunnelResponse:
        return await self.perform(username, "update", slot, form_data)

    async def stop(self, username: str, slot: int) -> TunnelResponse:
        return await self.perform(username, "stop", slot, {})


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"message": response.text}
