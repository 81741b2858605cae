"""User directory client.

Message records carry the sender's display name and avatar so clients can
render them without a second lookup. Those come from the main web
application, never from the client:

    GET {base_url}/users/{userId}
    -> {"user": {"id": 42, "name": "Ann Lee", "profilePhotoUrl": "https://..."}}

Unlike the membership oracle this lookup is best-effort. Any failure (network
error, timeout, 404, odd body) yields ``None`` and the caller falls back to
the name the client supplied, then to ``"User"``.
"""
import asyncio
import logging
from typing import Optional
from urllib.parse import quote

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from chat_gateway.config import DirectorySettings

logger = logging.getLogger(__name__)


class UserProfile(BaseModel):
    """The parts of a user record that are denormalised into messages."""
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    avatarUrl: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("profilePhotoUrl", "profile_photo_url", "avatarUrl"),
    )


class UserDirectory:
    """Looks up sender profiles in the main application's user API."""

    def __init__(
        self,
        base_url: str,
        user_path: str = "/users/{user_id}",
        timeout_seconds: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_path = user_path
        self.timeout_seconds = timeout_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: DirectorySettings,
        default_base_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "UserDirectory":
        return cls(
            base_url=settings.base_url or default_base_url,
            user_path=settings.user_path,
            timeout_seconds=settings.timeout_seconds,
            transport=transport,
        )

    async def lookup(self, user_id: str) -> Optional[UserProfile]:
        """Return the profile of ``user_id``, or None if it cannot be had."""
        try:
            return await asyncio.wait_for(self._fetch(user_id), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"[Directory] Profile lookup for user {user_id} timed out")
            return None

    async def _fetch(self, user_id: str) -> Optional[UserProfile]:
        path = self.user_path.format(user_id=quote(str(user_id), safe=""))
        try:
            resp = await self._client.get(path)
        except httpx.HTTPError as exc:
            logger.warning(f"[Directory] Profile lookup for user {user_id} failed: {exc}")
            return None

        if resp.status_code == 404:
            logger.debug(f"[Directory] No profile for user {user_id}")
            return None
        if not resp.is_success:
            logger.warning(f"[Directory] Profile lookup for user {user_id} returned {resp.status_code}")
            return None

        try:
            data = resp.json()
            return UserProfile.model_validate(data["user"])
        except (ValueError, KeyError, TypeError, PydanticValidationError):
            logger.warning(f"[Directory] Unexpected profile response for user {user_id}")
            return None

    async def aclose(self) -> None:
        await self._client.aclose()
