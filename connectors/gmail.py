"""
GmailConnector — OAuth2 web flow and mail tools for Gmail.

Uses Google's OAuth2 to get per-tenant Gmail access without the tenant
sharing any credentials with the application.  Token endpoints are called
with ``httpx``; mail operations go through ``googleapiclient``, whose sync
calls are offloaded with ``asyncio.to_thread()`` so they never block the
event loop.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from connectors.base import (
    BaseConnector,
    ToolHandler,
    classify_refresh_response,
    refresh_payload,
    refreshed_grant,
    transport_refresh_error,
)
from connectors.errors import AuthExchangeError, ProviderCallError
from connectors.schemas import AuthKind, Credential, TokenGrant, ToolDefinition, ToolParameter

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


def _parse_message(msg: Dict) -> Dict[str, Any]:
    """Extract useful fields from a Gmail API message resource."""
    headers = {h["name"]: h["value"] for h in msg.get("payload", {}).get("headers", [])}
    snippet = msg.get("snippet", "")
    body = ""
    payload = msg.get("payload", {})
    if payload.get("body", {}).get("data"):
        body = base64.urlsafe_b64decode(payload["body"]["data"]).decode(errors="replace")
    elif payload.get("parts"):
        for part in payload["parts"]:
            if part.get("mimeType") == "text/plain" and part.get("body", {}).get("data"):
                body = base64.urlsafe_b64decode(part["body"]["data"]).decode(errors="replace")
                break

    return {
        "id": msg.get("id"),
        "thread_id": msg.get("threadId"),
        "from": headers.get("From", ""),
        "to": headers.get("To", ""),
        "subject": headers.get("Subject", ""),
        "date": headers.get("Date", ""),
        "snippet": snippet,
        "body": body[:5000] if body else snippet,
        "labels": msg.get("labelIds", []),
    }


def _build_mime_message(
    sender: str,
    to: str,
    subject: str,
    body: str,
    cc: Optional[str] = None,
) -> str:
    """Create a base64url-encoded RFC 2822 message."""
    mime = MIMEMultipart()
    mime["to"] = to
    mime["from"] = sender
    mime["subject"] = subject
    if cc:
        mime["cc"] = cc
    mime.attach(MIMEText(body, "plain"))
    return base64.urlsafe_b64encode(mime.as_bytes()).decode()


class GmailConnector(BaseConnector):
    """OAuth2 connector for Gmail."""

    @property
    def provider_id(self) -> str:
        return "gmail"

    @property
    def display_name(self) -> str:
        return "Gmail"

    @property
    def category(self) -> str:
        return "email"

    @property
    def auth_kind(self) -> AuthKind:
        return AuthKind.OAUTH2

    @property
    def description(self) -> str:
        return "Read, search and send mail from a Google account"

    @property
    def required_settings(self) -> List[str]:
        return ["google_client_id", "google_client_secret"]

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.send",
            "https://www.googleapis.com/auth/userinfo.email",
        ]

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(self, tenant_id: str, state: str) -> str:
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "state": state,
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, code: str, state: str) -> TokenGrant:
        """Exchange auth code for tokens and look up the account address."""
        try:
            async with self._client() as client:
                token_resp = await client.post(
                    _GOOGLE_TOKEN_URL,
                    data={
                        "code": code,
                        "client_id": self.settings.google_client_id,
                        "client_secret": self.settings.google_client_secret,
                        "redirect_uri": self._redirect_uri(),
                        "grant_type": "authorization_code",
                    },
                )
                token_data = token_resp.json()
                if token_resp.is_error or "error" in token_data:
                    raise AuthExchangeError(
                        f"Google OAuth error: {token_data.get('error_description') or token_data.get('error') or token_resp.status_code}"
                    )

                headers = {"Authorization": f"Bearer {token_data['access_token']}"}
                user_resp = await client.get(_GOOGLE_USERINFO_URL, headers=headers)
                user_resp.raise_for_status()
                user_info = user_resp.json()
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            raise AuthExchangeError(f"Google code exchange failed: {exc}") from exc

        return TokenGrant(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_at=TokenGrant.expiry_from(token_data.get("expires_in", 3600)),
            account_label=user_info.get("email", ""),
            metadata={
                "email": user_info.get("email"),
                "displayName": user_info.get("name"),
                "scopes": token_data.get("scope", "").split(),
            },
        )

    async def refresh_token(self, credential: Credential) -> TokenGrant:
        """Use refresh token to get a new access token."""
        try:
            async with self._client() as client:
                resp = await client.post(
                    _GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.settings.google_client_id,
                        "client_secret": self.settings.google_client_secret,
                        "refresh_token": credential.refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
        except httpx.HTTPError as exc:
            raise transport_refresh_error(self.provider_id, exc) from exc

        classify_refresh_response(self.provider_id, resp)
        # Google rarely rotates the refresh token
        return refreshed_grant(self.provider_id, refresh_payload(self.provider_id, resp), 3600)

    async def revoke(self, credential: Credential) -> bool:
        """Revoke the token at Google."""
        try:
            async with self._client() as client:
                resp = await client.post(
                    _GOOGLE_REVOKE_URL,
                    params={"token": credential.refresh_token or credential.access_token},
                )
                return resp.status_code == 200
        except httpx.HTTPError:
            logger.warning("Google token revocation failed", exc_info=True)
            return False

    # ── Tools ───────────────────────────────────────────────────────────

    def list_tools(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(
                name="gmail_search_messages",
                description="Search Gmail messages using Gmail search syntax",
                category="email",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="query", type="string", description="Gmail search query", required=True),
                    ToolParameter(name="max_results", type="number", description="Max messages (1-50)", default=10),
                ],
            ),
            ToolDefinition(
                name="gmail_get_message",
                description="Fetch one message with its body",
                category="email",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="message_id", type="string", description="Gmail message id", required=True),
                ],
            ),
            ToolDefinition(
                name="gmail_send_message",
                description="Send a plain-text email",
                category="email",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="to", type="string", description="Recipient address", required=True),
                    ToolParameter(name="subject", type="string", description="Subject line", required=True),
                    ToolParameter(name="body", type="string", description="Message body", required=True),
                    ToolParameter(name="cc", type="string", description="Cc addresses"),
                ],
            ),
        ]

    def tool_handlers(self) -> Dict[str, ToolHandler]:
        return {
            "gmail_search_messages": self._search_messages,
            "gmail_get_message": self._get_message,
            "gmail_send_message": self._send_message,
        }

    async def _service(self, credential: Optional[Credential]):
        if credential is None or not credential.access_token:
            raise ProviderCallError("No access token. Please connect Gmail.")
        creds = Credentials(token=credential.access_token)
        return await asyncio.to_thread(
            build, "gmail", "v1", credentials=creds, cache_discovery=False
        )

    async def _search_messages(self, params: Dict[str, Any], credential: Optional[Credential]) -> List[Dict[str, Any]]:
        service = await self._service(credential)
        max_results = max(1, min(int(params.get("max_results", 10)), 50))
        listing = await asyncio.to_thread(
            service.users().messages().list(
                userId="me", q=params["query"], maxResults=max_results
            ).execute
        )
        messages = []
        for ref in listing.get("messages", []):
            msg = await asyncio.to_thread(
                service.users().messages().get(userId="me", id=ref["id"], format="full").execute
            )
            messages.append(_parse_message(msg))
        return messages

    async def _get_message(self, params: Dict[str, Any], credential: Optional[Credential]) -> Dict[str, Any]:
        service = await self._service(credential)
        msg = await asyncio.to_thread(
            service.users().messages().get(userId="me", id=params["message_id"], format="full").execute
        )
        return _parse_message(msg)

    async def _send_message(self, params: Dict[str, Any], credential: Optional[Credential]) -> Dict[str, Any]:
        service = await self._service(credential)
        raw = _build_mime_message(
            credential.account_label,
            params["to"],
            params["subject"],
            params["body"],
            params.get("cc"),
        )
        sent = await asyncio.to_thread(
            service.users().messages().send(userId="me", body={"raw": raw}).execute
        )
        logger.info("Gmail message sent from %s (id=%s)", credential.account_label, sent.get("id"))
        return {"id": sent.get("id"), "thread_id": sent.get("threadId")}
