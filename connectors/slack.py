"""
SlackConnector — OAuth2 (v2) for Slack workspaces.

Slack answers every Web API call with HTTP 200 and an ``ok`` flag, so all
responses are checked for ``ok: false``.  Workspaces with token rotation
enabled return a refresh token and an ``expires_in``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from connectors.base import (
    BaseConnector,
    ToolHandler,
    classify_refresh_response,
    refresh_error_from_payload,
    refresh_payload,
    refreshed_grant,
    transport_refresh_error,
)
from connectors.errors import AuthExchangeError, ProviderCallError
from connectors.schemas import AuthKind, Credential, TokenGrant, ToolDefinition, ToolParameter

logger = logging.getLogger(__name__)

_SLACK_AUTH_URL = "https://slack.com/oauth/v2/authorize"
_SLACK_API = "https://slack.com/api"


class SlackConnector(BaseConnector):
    """OAuth2 connector for Slack."""

    @property
    def provider_id(self) -> str:
        return "slack"

    @property
    def display_name(self) -> str:
        return "Slack"

    @property
    def category(self) -> str:
        return "communication"

    @property
    def auth_kind(self) -> AuthKind:
        return AuthKind.OAUTH2

    @property
    def description(self) -> str:
        return "Team communication and collaboration platform"

    @property
    def required_settings(self) -> List[str]:
        return ["slack_client_id", "slack_client_secret"]

    @property
    def scopes(self) -> List[str]:
        return ["channels:read", "channels:history", "chat:write", "users:read"]

    def get_auth_url(self, tenant_id: str, state: str) -> str:
        params = {
            "client_id": self.settings.slack_client_id,
            "scope": ",".join(self.scopes),
            "redirect_uri": self._redirect_uri(),
            "state": state,
        }
        return f"{_SLACK_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, code: str, state: str) -> TokenGrant:
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{_SLACK_API}/oauth.v2.access",
                    data={
                        "client_id": self.settings.slack_client_id,
                        "client_secret": self.settings.slack_client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(),
                    },
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AuthExchangeError(f"Slack code exchange failed: {exc}") from exc

        if not isinstance(data, dict) or not data.get("ok"):
            error = data.get("error") if isinstance(data, dict) else None
            raise AuthExchangeError(f"Slack OAuth error: {error or 'OAuth failed'}")
        if not data.get("access_token"):
            raise AuthExchangeError("Slack OAuth response carried no access_token")

        team = data.get("team") or {}
        expires_in = data.get("expires_in")
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=TokenGrant.expiry_from(expires_in) if expires_in else None,
            account_label=team.get("name", ""),
            metadata={
                "teamId": team.get("id"),
                "teamName": team.get("name"),
                "displayName": team.get("name"),
                "botUserId": data.get("bot_user_id"),
            },
        )

    async def refresh_token(self, credential: Credential) -> TokenGrant:
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{_SLACK_API}/oauth.v2.access",
                    data={
                        "client_id": self.settings.slack_client_id,
                        "client_secret": self.settings.slack_client_secret,
                        "grant_type": "refresh_token",
                        "refresh_token": credential.refresh_token,
                    },
                )
        except httpx.HTTPError as exc:
            raise transport_refresh_error(self.provider_id, exc) from exc

        classify_refresh_response(self.provider_id, resp)
        data = refresh_payload(self.provider_id, resp)
        if not data.get("ok"):
            raise refresh_error_from_payload(
                self.provider_id, {"error": data.get("error") or "invalid_refresh_token"}
            )
        return refreshed_grant(self.provider_id, data, 43200)

    async def revoke(self, credential: Credential) -> bool:
        try:
            data = await self._api("auth.revoke", credential)
            return bool(data.get("revoked"))
        except (ProviderCallError, httpx.HTTPError):
            logger.warning("Slack token revocation failed", exc_info=True)
            return False

    # ── Tools ───────────────────────────────────────────────────────────

    def list_tools(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(
                name="slack_list_channels",
                description="List Slack channels",
                category="communication",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="limit", type="number", description="Max channels", default=100),
                ],
            ),
            ToolDefinition(
                name="slack_send_message",
                description="Send a message to a Slack channel",
                category="communication",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="channel", type="string", description="Channel ID or name", required=True),
                    ToolParameter(name="text", type="string", description="Message text", required=True),
                    ToolParameter(name="thread_ts", type="string", description="Thread timestamp for replies"),
                ],
            ),
            ToolDefinition(
                name="slack_get_channel_history",
                description="Get message history from a channel",
                category="communication",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="channel", type="string", description="Channel ID", required=True),
                    ToolParameter(name="limit", type="number", description="Max messages", default=50),
                ],
            ),
        ]

    def tool_handlers(self) -> Dict[str, ToolHandler]:
        return {
            "slack_list_channels": self._list_channels,
            "slack_send_message": self._send_message,
            "slack_get_channel_history": self._channel_history,
        }

    async def _api(
        self,
        method: str,
        credential: Optional[Credential],
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if credential is None or not credential.access_token:
            raise ProviderCallError("No access token. Please connect Slack.")
        async with self._client() as client:
            resp = await client.post(
                f"{_SLACK_API}/{method}",
                headers={"Authorization": f"Bearer {credential.access_token}"},
                json=payload or {},
            )
        resp.raise_for_status()
        data = resp.json()
        if not data.get("ok"):
            raise ProviderCallError(data.get("error", "Slack API error"))
        return data

    async def _list_channels(self, params: Dict[str, Any], credential: Optional[Credential]) -> List[Dict[str, Any]]:
        data = await self._api("conversations.list", credential, {"limit": params.get("limit", 100)})
        return data.get("channels", [])

    async def _send_message(self, params: Dict[str, Any], credential: Optional[Credential]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"channel": params["channel"], "text": params["text"]}
        if params.get("thread_ts"):
            body["thread_ts"] = params["thread_ts"]
        data = await self._api("chat.postMessage", credential, body)
        return {"channel": data.get("channel"), "ts": data.get("ts")}

    async def _channel_history(self, params: Dict[str, Any], credential: Optional[Credential]) -> List[Dict[str, Any]]:
        data = await self._api(
            "conversations.history",
            credential,
            {"channel": params["channel"], "limit": params.get("limit", 50)},
        )
        return data.get("messages", [])
