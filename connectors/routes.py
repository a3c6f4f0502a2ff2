"""
Integration API routes — catalog, OAuth connect/callback, connections,
health checks, tools.

Route prefix: /api/v1/integrations
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field

from connectors.errors import IntegrationError
from connectors.schemas import (
    AccountSummary,
    ConnectionStatus,
    HealthReport,
    ToolDefinition,
    ToolResult,
)
from connectors.service import IntegrationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["integrations"])

_STATUS_BY_KIND = {
    "unknown_provider": 404,
    "unknown_tool": 404,
    "not_found": 404,
    "not_connected": 409,
    "not_configured": 400,
    "reauth_required": 401,
    "refresh_transient": 503,
    "auth_exchange_failed": 502,
    "provider_call_failed": 502,
    "internal_error": 500,
}


def get_service(request: Request) -> IntegrationService:
    return request.app.state.integrations


def _error_body(message: str, kind: str) -> Dict[str, Any]:
    return {"success": False, "error": message, "kind": kind}


def register_error_handlers(app: FastAPI) -> None:
    """Render every ``IntegrationError`` as ``{success, error, kind}``."""

    @app.exception_handler(IntegrationError)
    async def integration_error_handler(request: Request, exc: IntegrationError) -> JSONResponse:
        logger.debug("%s %s → %s: %s", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(status_code=exc.http_status, content=_error_body(exc.message, exc.kind))


# ── Request bodies ─────────────────────────────────────────────────────


class ApiKeyConnectRequest(BaseModel):
    credentials: Dict[str, str]
    account_label: Optional[str] = None


class InvokeRequest(BaseModel):
    tool: str
    params: Dict[str, Any] = Field(default_factory=dict)
    provider: Optional[str] = None
    account_id: Optional[str] = None


# ── Catalog ────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(service: IntegrationService = Depends(get_service)) -> List[Dict[str, Any]]:
    """All registered integrations and whether each is configured."""
    return service.list_providers()


@router.get("/tools")
async def list_tools(
    provider: Optional[str] = Query(None),
    service: IntegrationService = Depends(get_service),
) -> List[ToolDefinition]:
    return service.list_tools(provider)


# ── OAuth flow ─────────────────────────────────────────────────────────


@router.get("/{provider}/connect/{tenant_id}")
async def connect(
    provider: str,
    tenant_id: str,
    service: IntegrationService = Depends(get_service),
) -> RedirectResponse:
    """Send the browser to the provider's consent screen."""
    url = await service.start_auth(tenant_id, provider)
    return RedirectResponse(url, status_code=302)


@router.get("/callback/{provider}")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    service: IntegrationService = Depends(get_service),
) -> RedirectResponse:
    """
    Provider redirects here after consent.

    Always answers with a redirect back to the dashboard; a failure carries
    its kind as ``?error=`` and never the raw provider text.
    """
    outcome = await service.handle_callback(provider, code=code, state=state, error=error)
    return RedirectResponse(service.callback_redirect_url(outcome), status_code=302)


# ── Connections ────────────────────────────────────────────────────────


@router.get("/connected/{tenant_id}")
async def list_connections(
    tenant_id: str,
    service: IntegrationService = Depends(get_service),
) -> Dict[str, ConnectionStatus]:
    return await service.list_connections(tenant_id)


@router.get("/{provider}/status/{tenant_id}")
async def connection_status(
    provider: str,
    tenant_id: str,
    service: IntegrationService = Depends(get_service),
) -> ConnectionStatus:
    return await service.get_status(tenant_id, provider)


@router.post("/{provider}/api-key/{tenant_id}")
async def connect_api_key(
    provider: str,
    tenant_id: str,
    body: ApiKeyConnectRequest,
    service: IntegrationService = Depends(get_service),
) -> AccountSummary:
    return await service.connect_api_key(tenant_id, provider, body.credentials, body.account_label)


@router.post("/{provider}/{tenant_id}/{account_id}/primary")
async def set_primary(
    provider: str,
    tenant_id: str,
    account_id: str,
    service: IntegrationService = Depends(get_service),
) -> AccountSummary:
    return await service.set_primary(tenant_id, provider, account_id)


@router.delete("/{provider}/{tenant_id}/{account_id}")
async def disconnect(
    provider: str,
    tenant_id: str,
    account_id: str,
    service: IntegrationService = Depends(get_service),
) -> Dict[str, Any]:
    """Revoke and soft-delete one connected account."""
    account = await service.disconnect(tenant_id, provider, account_id)
    return {"success": True, "provider": provider, "account_id": str(account.id)}


# ── Health ─────────────────────────────────────────────────────────────


@router.get("/health/{tenant_id}")
async def connection_health(
    tenant_id: str,
    service: IntegrationService = Depends(get_service),
) -> HealthReport:
    """Validate every connected account of the tenant."""
    return await service.health(tenant_id)


@router.post("/{provider}/{tenant_id}/{account_id}/test")
async def check_connection(
    provider: str,
    tenant_id: str,
    account_id: str,
    service: IntegrationService = Depends(get_service),
) -> Dict[str, Any]:
    """Validate one account against the provider; a failed check is still a 200."""
    check = await service.test_connection(tenant_id, provider, account_id)
    return {"success": check.success, **check.model_dump(mode="json")}


# ── Tools ──────────────────────────────────────────────────────────────


@router.post("/invoke/{tenant_id}")
async def invoke_tool(
    tenant_id: str,
    body: InvokeRequest,
    service: IntegrationService = Depends(get_service),
) -> JSONResponse:
    result: ToolResult = await service.invoke_tool(
        tenant_id,
        body.tool,
        body.params,
        provider_id=body.provider,
        account_id=body.account_id,
    )
    if result.success:
        return JSONResponse(content=result.model_dump(mode="json"))
    status_code = _STATUS_BY_KIND.get(result.error_kind or "", 400)
    return JSONResponse(
        status_code=status_code,
        content={**_error_body(result.error or "", result.error_kind or ""), "metadata": result.metadata},
    )
