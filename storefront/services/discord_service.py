import asyncio
import logging
from typing import Any, Dict, Optional, Tuple
import aiohttp
from ..config import Config
from ..utils.formatters import format_role_duration

logger = logging.getLogger(__name__)

# Discord JSON error code returned when a user does not accept DMs
CANNOT_MESSAGE_USER = 50007

class DiscordError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.code = code

class DirectMessagesBlocked(DiscordError):
    pass

class DiscordClient:
    """Minimal Discord REST client for role grants and direct messages.

    Rate limited calls (429) are retried after the `retry_after` Discord
    sends, up to max_retries times and only when the wait is at most
    max_retry_wait seconds.
    """

    def __init__(self, token: str = Config.DISCORD_BOT_TOKEN,
                 api_url: str = Config.DISCORD_API_URL,
                 timeout: float = Config.EXTERNAL_CALL_TIMEOUT,
                 max_retries: int = 2, max_retry_wait: float = 5.0):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.max_retries = max_retries
        self.max_retry_wait = max_retry_wait

    @staticmethod
    def _retry_after(data: Any, header: Optional[str]) -> float:
        value = data.get("retry_after") if isinstance(data, dict) else None
        if value is None:
            value = header
        try:
            return max(float(value), 0.0)
        except (TypeError, ValueError):
            return 1.0

    async def _send(self, method: str, path: str, json: Optional[Dict[str, Any]],
                    headers: Dict[str, str]) -> Tuple[int, Any, Optional[str]]:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(
                    method, f"{self.api_url}{path}", json=json, headers=headers
                ) as response:
                    if response.status == 204:
                        return response.status, None, None
                    data = await response.json(content_type=None)
                    return response.status, data, response.headers.get("Retry-After")
        except aiohttp.ClientError as e:
            raise DiscordError(f"Discord {method} {path} failed: {e}")
        except asyncio.TimeoutError:
            raise DiscordError(f"Discord {method} {path} timed out")

    async def _request(self, method: str, path: str,
                       json: Optional[Dict[str, Any]] = None,
                       reason: Optional[str] = None) -> Optional[Dict[str, Any]]:
        headers = {"Authorization": f"Bot {self.token}"}
        if reason:
            headers["X-Audit-Log-Reason"] = reason

        for attempt in range(self.max_retries + 1):
            status, data, retry_header = await self._send(method, path, json, headers)

            if status == 429 and attempt < self.max_retries:
                retry_after = self._retry_after(data, retry_header)
                if retry_after <= self.max_retry_wait:
                    logger.warning(f"Discord rate limited {method} {path}, retrying in {retry_after:.2f}s")
                    await asyncio.sleep(retry_after)
                    continue

            if status >= 400:
                code = data.get("code") if isinstance(data, dict) else None
                message = data.get("message") if isinstance(data, dict) else None
                error_cls = DirectMessagesBlocked if code == CANNOT_MESSAGE_USER else DiscordError
                raise error_cls(
                    f"Discord {method} {path} failed with {status}: {message}",
                    status=status,
                    code=code
                )
            return data

    async def assign_role(self, guild_id: str, user_id: str, role_id: str,
                          duration_days: Optional[int] = None):
        """Add a role to a guild member"""
        await self._request(
            "PUT", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}",
            reason=f"Shop purchase: {format_role_duration(duration_days)}"
        )
        logger.info(f"Role {role_id} assigned to {user_id} in guild {guild_id}")

    async def remove_role(self, guild_id: str, user_id: str, role_id: str):
        await self._request(
            "DELETE", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}",
            reason="Role subscription expired"
        )
        logger.info(f"Role {role_id} removed from {user_id} in guild {guild_id}")

    async def send_direct_notice(self, user_id: str, content: str):
        """Open (or reuse) the DM channel with a user and post a message.

        Raises DirectMessagesBlocked when the user does not accept DMs.
        """
        channel = await self._request("POST", "/users/@me/channels", json={"recipient_id": user_id})
        await self._request("POST", f"/channels/{channel['id']}/messages", json={"content": content})
