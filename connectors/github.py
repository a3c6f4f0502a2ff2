"""
GitHubConnector — OAuth2 for GitHub API access.

Uses the GitHub App OAuth flow to get per-tenant tokens; apps with
"Expire user authorization tokens" enabled also hand out refresh tokens.
Supports repository listing and issue management via the REST API.
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

# GitHub OAuth2 endpoints
_GH_AUTH_URL = "https://github.com/login/oauth/authorize"
_GH_TOKEN_URL = "https://github.com/login/oauth/access_token"
_GH_API = "https://api.github.com"


class GitHubConnector(BaseConnector):
    """OAuth2 connector for GitHub."""

    @property
    def provider_id(self) -> str:
        return "github"

    @property
    def display_name(self) -> str:
        return "GitHub"

    @property
    def category(self) -> str:
        return "developer"

    @property
    def auth_kind(self) -> AuthKind:
        return AuthKind.OAUTH2

    @property
    def description(self) -> str:
        return "Repositories, issues and pull requests"

    @property
    def required_settings(self) -> List[str]:
        return ["github_client_id", "github_client_secret"]

    @property
    def scopes(self) -> List[str]:
        return ["repo", "read:user", "user:email"]

    def get_auth_url(self, tenant_id: str, state: str) -> str:
        params = {
            "client_id": self.settings.github_client_id,
            "redirect_uri": self._redirect_uri(),
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{_GH_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, code: str, state: str) -> TokenGrant:
        """Exchange auth code for token and fetch the user profile."""
        try:
            async with self._client() as client:
                token_resp = await client.post(
                    _GH_TOKEN_URL,
                    data={
                        "client_id": self.settings.github_client_id,
                        "client_secret": self.settings.github_client_secret,
                        "code": code,
                        "redirect_uri": self._redirect_uri(),
                    },
                    headers={"Accept": "application/json"},
                )
                token_resp.raise_for_status()
                token_data = token_resp.json()

                # GitHub reports a bad or reused code as 200 + error payload
                if "error" in token_data:
                    raise AuthExchangeError(
                        f"GitHub OAuth error: {token_data.get('error_description', token_data['error'])}"
                    )

                user_resp = await client.get(
                    f"{_GH_API}/user",
                    headers={
                        "Authorization": f"Bearer {token_data['access_token']}",
                        "Accept": "application/vnd.github+json",
                    },
                )
                user_resp.raise_for_status()
                user = user_resp.json()
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            raise AuthExchangeError(f"GitHub code exchange failed: {exc}") from exc

        expires_in = token_data.get("expires_in")
        return TokenGrant(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_at=TokenGrant.expiry_from(expires_in) if expires_in else None,
            account_label=user.get("login", ""),
            metadata={
                "login": user.get("login"),
                "displayName": user.get("name"),
                "email": user.get("email"),
                "scopes": [s for s in token_data.get("scope", "").split(",") if s],
            },
        )

    async def refresh_token(self, credential: Credential) -> TokenGrant:
        try:
            async with self._client() as client:
                resp = await client.post(
                    _GH_TOKEN_URL,
                    data={
                        "client_id": self.settings.github_client_id,
                        "client_secret": self.settings.github_client_secret,
                        "refresh_token": credential.refresh_token,
                        "grant_type": "refresh_token",
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise transport_refresh_error(self.provider_id, exc) from exc

        classify_refresh_response(self.provider_id, resp)
        data = refresh_payload(self.provider_id, resp)
        payload_error = refresh_error_from_payload(self.provider_id, data)
        if payload_error is not None:
            raise payload_error

        return refreshed_grant(self.provider_id, data, 28800)

    async def revoke(self, credential: Credential) -> bool:
        """Revoke the token via GitHub's OAuth application API."""
        try:
            async with self._client() as client:
                resp = await client.request(
                    "DELETE",
                    f"{_GH_API}/applications/{self.settings.github_client_id}/token",
                    auth=(self.settings.github_client_id, self.settings.github_client_secret),
                    json={"access_token": credential.access_token},
                )
                return resp.status_code == 204
        except httpx.HTTPError:
            logger.warning("GitHub token revocation failed", exc_info=True)
            return False

    async def check_connection(self, credential: Credential) -> Dict[str, Any]:
        user = await self._api("GET", "/user", credential)
        return {"login": user.get("login"), "displayName": user.get("name")}

    # ── Tools ───────────────────────────────────────────────────────────

    def list_tools(self) -> List[ToolDefinition]:
        return [
            ToolDefinition(
                name="github_list_repos",
                description="List repositories of the connected user",
                category="developer",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="per_page", type="number", description="Page size", default=30),
                    ToolParameter(name="sort", type="string", description="created | updated | pushed | full_name", default="updated"),
                ],
            ),
            ToolDefinition(
                name="github_list_issues",
                description="List open issues of a repository",
                category="developer",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="repo", type="string", description="owner/name", required=True),
                    ToolParameter(name="state", type="string", description="open | closed | all", default="open"),
                ],
            ),
            ToolDefinition(
                name="github_create_issue",
                description="Open a new issue",
                category="developer",
                provider_id=self.provider_id,
                parameters=[
                    ToolParameter(name="repo", type="string", description="owner/name", required=True),
                    ToolParameter(name="title", type="string", description="Issue title", required=True),
                    ToolParameter(name="body", type="string", description="Issue body"),
                ],
            ),
        ]

    def tool_handlers(self) -> Dict[str, ToolHandler]:
        return {
            "github_list_repos": self._list_repos,
            "github_list_issues": self._list_issues,
            "github_create_issue": self._create_issue,
        }

    async def _api(
        self,
        method: str,
        path: str,
        credential: Optional[Credential],
        **kwargs: Any,
    ) -> Any:
        if credential is None or not credential.access_token:
            raise ProviderCallError("No access token. Please connect GitHub.")
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Accept": "application/vnd.github+json",
        }
        async with self._client() as client:
            resp = await client.request(method, f"{_GH_API}{path}", headers=headers, **kwargs)
        if resp.is_error:
            raise ProviderCallError(f"GitHub API {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    async def _list_repos(self, params: Dict[str, Any], credential: Optional[Credential]) -> List[Dict[str, Any]]:
        repos = await self._api(
            "GET",
            "/user/repos",
            credential,
            params={"per_page": params.get("per_page", 30), "sort": params.get("sort", "updated")},
        )
        return [
            {
                "full_name": r.get("full_name"),
                "private": r.get("private"),
                "description": r.get("description"),
                "url": r.get("html_url"),
            }
            for r in repos
        ]

    async def _list_issues(self, params: Dict[str, Any], credential: Optional[Credential]) -> List[Dict[str, Any]]:
        issues = await self._api(
            "GET",
            f"/repos/{params['repo']}/issues",
            credential,
            params={"state": params.get("state", "open")},
        )
        return [
            {"number": i.get("number"), "title": i.get("title"), "state": i.get("state"), "url": i.get("html_url")}
            for i in issues
        ]

    async def _create_issue(self, params: Dict[str, Any], credential: Optional[Credential]) -> Dict[str, Any]:
        issue = await self._api(
            "POST",
            f"/repos/{params['repo']}/issues",
            credential,
            json={"title": params["title"], "body": params.get("body", "")},
        )
        return {"number": issue.get("number"), "url": issue.get("html_url")}
