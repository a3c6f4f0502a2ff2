"""
OpenAIConnector — bring-your-own API key for the OpenAI API.

No OAuth: the tenant pastes a key, ``validate_credentials`` checks it
against ``/models`` before anything is stored.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from connectors.base import BaseConnector, ToolHandler
from connectors.errors import AuthExchangeError, ProviderCallError
from connectors.schemas import AuthKind, Credential, TokenGrant, ToolDefinition, ToolParameter

logger = logging.getLogger(__name__)


class OpenAIConnector(BaseConnector):
    """API-key connector for OpenAI."""

    @property
    def provider_id(self) -> str:
        return "openai"

    @property
    def display_name(self) -> str:
        return "OpenAI"

    @property
    def category(self) -> str:
        return "ai"

    @property
    def auth_kind(self) -> AuthKind:
        return AuthKind.API_KEY

    @property
    def description(self) -> str:
        return "Chat completions and model listing with your own key"

    @property
    def credential_fields(self) -> List[str]:
        return ["api_key"]

    def _base_url(self) -> str:
        return self.settings.openai_api_base.rstrip("/")

    async def validate_credentials(self, secrets: Dict[str, str]) -> TokenGrant:
        grant = await super().validate_credentials(secrets)
        headers = {"Authorization": f"Bearer {secrets['api_key']}"}
        if secrets.get("organization"):
            headers["OpenAI-Organization"] = secrets["organization"]
        try:
            async with self._client() as client:
                resp = await client.get(f"{self._base_url()}/models", headers=headers)
        except httpx.HTTPError as exc:
            raise AuthExchangeError(f"OpenAI key check failed: {exc}") from exc

        if resp.status_code in (401, 403):
            raise AuthExchangeError("OpenAI rejected the API key")
        if resp.is_error:
            raise AuthExchangeError(f"OpenAI key check returned {resp.status_code}")

        grant.account_label = secrets.get("organization", "")
        grant.metadata = {"displayName": secrets.get("organization") or "OpenAI"}
        return grant

    # ── Tools ───────────────────────────────────────────────────────────

    def list_tools(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(
                name="openai_list_models",
                description="List models available to the key",
                category="ai",
                provider_id=self.provider_id,
            ),
            ToolDefinition(
                name="openai_chat_completion",
                description="Run a chat completion",
                category="ai",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="prompt", type="string", description="User message", required=True),
                    ToolParameter(name="model", type="string", description="Model name", default="gpt-4o-mini"),
                    ToolParameter(name="system", type="string", description="System prompt"),
                    ToolParameter(name="temperature", type="number", description="Sampling temperature", default=0.7),
                ],
            ),
        ]

    def tool_handlers(self) -> Dict[str, ToolHandler]:
        return {
            "openai_list_models": self._list_models,
            "openai_chat_completion": self._chat_completion,
        }

    async def _request(
        self,
        method: str,
        path: str,
        credential: Optional[Credential],
        **kwargs: Any,
    ) -> Dict[str, Any]:
        api_key = credential.extra_secrets.get("api_key") if credential else None
        if not api_key:
            raise ProviderCallError("No API key. Please connect OpenAI.")
        async with self._client() as client:
            resp = await client.request(
                method,
                f"{self._base_url()}{path}",
                headers={"Authorization": f"Bearer {api_key}"},
                **kwargs,
            )
        if resp.is_error:
            raise ProviderCallError(f"OpenAI API {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    async def _list_models(self, params: Dict[str, Any], credential: Optional[Credential]) -> List[str]:
        data = await self._request("GET", "/models", credential)
        return sorted(m["id"] for m in data.get("data", []))

    async def _chat_completion(self, params: Dict[str, Any], credential: Optional[Credential]) -> Dict[str, Any]:
        messages = []
        if params.get("system"):
            messages.append({"role": "system", "content": params["system"]})
        messages.append({"role": "user", "content": params["prompt"]})
        data = await self._request(
            "POST",
            "/chat/completions",
            credential,
            json={
                "model": params.get("model", "gpt-4o-mini"),
                "messages": messages,
                "temperature": params.get("temperature", 0.7),
            },
        )
        choice = (data.get("choices") or [{}])[0]
        return {
            "content": choice.get("message", {}).get("content", ""),
            "model": data.get("model"),
            "usage": data.get("usage", {}),
        }
