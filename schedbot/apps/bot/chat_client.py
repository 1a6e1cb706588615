"""Chat platform REST adapter consumed by the notification and update paths."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Set, Tuple

import aiohttp

logger = logging.getLogger(__name__)


class ChatTransportError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        if self.status is None or self.retry_after is not None:
            return True
        return self.status == 429 or self.status >= 500


class ChatClient(Protocol):
    async def send_message(
        self, channel_id: str, content: str, *, reply_to: Optional[str] = None
    ) -> str: ...

    async def edit_message(self, channel_id: str, message_id: str, content: str) -> None: ...

    async def delete_message(self, channel_id: str, message_id: str) -> None: ...

    async def resolve_mention(self, token: str, guild_id: str) -> Optional[str]: ...


class HttpChatClient:
    """aiohttp client for a Discord-style bot REST API."""

    def __init__(self, base_url: str, token: str, *, timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._role_cache: Dict[str, Set[str]] = {}

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._token)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Authorization": f"Bot {self._token}"},
            )
        return self._session

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, Any]:
        if not self.configured:
            raise ChatTransportError("CHAT_API_BASE / CHAT_BOT_TOKEN are not configured")

        url = f"{self._base_url}{path}"
        try:
            async with self._get_session().request(method, url, json=payload) as resp:
                status = resp.status
                try:
                    data = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    data = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ChatTransportError(f"{method} {path} failed: {exc}") from exc

        if status == 429:
            retry_after = None
            if isinstance(data, dict):
                try:
                    retry_after = float(data.get("retry_after"))
                except (TypeError, ValueError):
                    retry_after = None
            raise ChatTransportError(
                f"{method} {path} rate limited", status=status, retry_after=retry_after or 1.0
            )
        if status >= 400:
            raise ChatTransportError(f"{method} {path} returned {status}", status=status)
        return status, data

    async def send_message(
        self, channel_id: str, content: str, *, reply_to: Optional[str] = None
    ) -> str:
        payload: Dict[str, Any] = {
            "content": content,
            "allowed_mentions": {"parse": ["everyone", "roles", "users"]},
        }
        if reply_to:
            payload["message_reference"] = {"message_id": reply_to, "fail_if_not_exists": False}
        _status, data = await self._request("POST", f"/channels/{channel_id}/messages", payload)
        return str((data or {}).get("id", ""))

    async def edit_message(self, channel_id: str, message_id: str, content: str) -> None:
        await self._request(
            "PATCH", f"/channels/{channel_id}/messages/{message_id}", {"content": content}
        )

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        try:
            await self._request("DELETE", f"/channels/{channel_id}/messages/{message_id}")
        except ChatTransportError as exc:
            if exc.status != 404:
                raise

    async def resolve_mention(self, token: str, guild_id: str) -> Optional[str]:
        if token in {"@everyone", "@here"}:
            return token
        kind, _, target = token.lstrip("@").partition(":")
        if not target:
            return None
        if kind == "role":
            roles = await self._guild_roles(guild_id)
            return f"<@&{target}>" if target in roles else None
        if kind == "user":
            try:
                await self._request("GET", f"/guilds/{guild_id}/members/{target}")
            except ChatTransportError as exc:
                if exc.status == 404:
                    return None
                raise
            return f"<@{target}>"
        return None

    async def _guild_roles(self, guild_id: str) -> Set[str]:
        cached = self._role_cache.get(guild_id)
        if cached is not None:
            return cached
        _status, data = await self._request("GET", f"/guilds/{guild_id}/roles")
        roles = {str(item.get("id")) for item in data or [] if isinstance(item, dict)}
        self._role_cache[guild_id] = roles
        return roles

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


__all__ = ["ChatClient", "ChatTransportError", "HttpChatClient"]
