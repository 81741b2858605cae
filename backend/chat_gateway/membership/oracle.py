"""Membership oracle client.

The main web application owns chapter membership. The gateway asks it which
rooms a user belongs to before every join (and every HTTP fallback post):

    GET {base_url}/users/{userId}/rooms
    -> {"success": true, "chapters": [{"id": "7", ...}, ...]}

The policy is fail-closed. A network error, a timeout, a non-2xx status,
``success: false`` or a malformed body all raise ``TransientUpstreamError``
and the caller must deny access. Nothing is retried here; a client may
simply issue the join again.
"""
import asyncio
import logging
from typing import FrozenSet, Optional
from urllib.parse import quote

import httpx

from chat_gateway.config import MembershipSettings
from chat_gateway.errors import AuthorizationError, TransientUpstreamError

logger = logging.getLogger(__name__)


class MembershipOracle:
    """Asks the membership API which rooms a user belongs to."""

    def __init__(
        self,
        base_url: str,
        rooms_path: str = "/users/{user_id}/rooms",
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rooms_path = rooms_path
        self.timeout_seconds = timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: MembershipSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "MembershipOracle":
        return cls(
            base_url=settings.base_url,
            rooms_path=settings.rooms_path,
            timeout_seconds=settings.timeout_seconds,
            transport=transport,
        )

    async def get_rooms_for_user(self, user_id: str) -> FrozenSet[str]:
        """Return the ids of every room ``user_id`` belongs to.

        Raises:
            TransientUpstreamError: On any failure to get an authoritative answer.
        """
        try:
            # Bounds the whole exchange, not just each socket operation
            return await asyncio.wait_for(
                self._fetch_rooms(user_id), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            logger.warning(f"[Oracle] Membership lookup for user {user_id} timed out")
            raise TransientUpstreamError("membership check timed out") from exc

    async def _fetch_rooms(self, user_id: str) -> FrozenSet[str]:
        path = self.rooms_path.format(user_id=quote(str(user_id), safe=""))
        try:
            resp = await self._client.get(path)
        except httpx.TimeoutException as exc:
            logger.warning(f"[Oracle] Membership lookup for user {user_id} timed out")
            raise TransientUpstreamError("membership check timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning(f"[Oracle] Membership lookup for user {user_id} failed: {exc}")
            raise TransientUpstreamError("membership check failed") from exc

        if not resp.is_success:
            logger.warning(
                f"[Oracle] Membership lookup for user {user_id} returned {resp.status_code}"
            )
            raise TransientUpstreamError(f"membership check failed ({resp.status_code})")

        try:
            data = resp.json()
        except ValueError as exc:
            logger.warning(f"[Oracle] Membership response for user {user_id} is not JSON")
            raise TransientUpstreamError("membership check failed") from exc

        chapters = data.get("chapters") if isinstance(data, dict) else None
        if not isinstance(data, dict) or data.get("success") is not True or not isinstance(chapters, list):
            logger.warning(f"[Oracle] Membership response for user {user_id} was not successful")
            raise TransientUpstreamError("membership check failed")

        return frozenset(
            str(chapter["id"])
            for chapter in chapters
            if isinstance(chapter, dict) and chapter.get("id") is not None
        )

    async def authorize(self, user_id: str, room_id: str) -> None:
        """Succeed only if ``user_id`` is a member of ``room_id``.

        Raises:
            AuthorizationError: The user is not a member.
            TransientUpstreamError: Membership could not be determined.
        """
        rooms = await self.get_rooms_for_user(user_id)
        if str(room_id) not in rooms:
            raise AuthorizationError("not a member of this chapter")

    async def aclose(self) -> None:
        await self._client.aclose()
