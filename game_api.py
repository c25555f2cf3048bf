"""Token-scoped client for the Bibendo serious-gaming API.

Calls are plain ``requests`` GETs pushed onto a worker thread so the event
loop keeps serving other requests while the upstream answers.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import requests

from errors import UpstreamError

LOGGER = logging.getLogger("notebook.game_api")

DEFAULT_BASE_URL = "https://serious-gaming-platform.appspot.com/api"


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class GameApiClient:
    """Thin wrapper over the upstream endpoints the sync pipeline needs."""

    def __init__(self, base_url: Optional[str] = None, *, timeout: Optional[float] = None) -> None:
        self.base_url = (base_url or os.getenv("BIBENDO_API_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else _env_float("GAME_API_TIMEOUT", 30.0)

    # ------------------------------------------------------------------
    async def _get(self, endpoint: str, token: str) -> Any:
        url = f"{self.base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            response = await asyncio.to_thread(
                requests.get, url, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            LOGGER.warning("Upstream request failed for %s: %s", endpoint, exc)
            raise UpstreamError(f"game platform unreachable for {endpoint}") from exc

        if not 200 <= response.status_code < 300:
            LOGGER.warning("Upstream %s answered %s", endpoint, response.status_code)
            raise UpstreamError(
                f"game platform answered {response.status_code} for {endpoint}",
                upstream_status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"game platform sent invalid JSON for {endpoint}") from exc

    @staticmethod
    def _list_field(payload: Any, key: str, endpoint: str) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict) or not isinstance(payload.get(key), list):
            raise UpstreamError(f"unexpected payload from {endpoint}: missing '{key}'")
        return [entry for entry in payload[key] if isinstance(entry, dict)]

    # ------------------------------------------------------------------
    async def account_details(self, token: str) -> Dict[str, Any]:
        payload = await self._get("/account/accountDetails", token)
        return payload if isinstance(payload, dict) else {}

    async def check_token(self, token: str) -> bool:
        """2xx from the account endpoint means the token is valid; anything else does not."""
        try:
            await self._get("/account/accountDetails", token)
        except UpstreamError:
            return False
        return True

    async def list_games(self, token: str) -> List[Dict[str, Any]]:
        return self._list_field(await self._get("/game/list", token), "games", "/game/list")

    async def list_runs(self, token: str, game_id: str) -> List[Dict[str, Any]]:
        endpoint = f"/runs/{game_id}/list"
        return self._list_field(await self._get(endpoint, token), "items", endpoint)

    async def list_items(self, token: str, game_id: str) -> List[Dict[str, Any]]:
        endpoint = f"/generalItems/gameId/{game_id}"
        return self._list_field(await self._get(endpoint, token), "generalItems", endpoint)

    async def list_responses(self, token: str, run_id: str, item_id: str) -> List[Dict[str, Any]]:
        endpoint = f"/run/response/runId/{run_id}/item/{item_id}/me"
        payload = await self._get(endpoint, token)
        if isinstance(payload, dict) and "responses" not in payload:
            # Items the learner never answered come back without the key.
            return []
        return self._list_field(payload, "responses", endpoint)
