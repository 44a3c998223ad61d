"""OAuth 2.0 endpoints.

This module contains the HTTP surface of the authorization server:
- Discovery metadata (/.well-known/*)
- Authorization endpoint (/authorize)
- Token endpoint (/oauth/token)

The :class:`~oauth.provider.AuthorizationServer` instance lives on
``app.state.auth_server``.
"""

import json
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse

from oauth.provider import AuthorizationServer, OAuthError

logger = logging.getLogger(__name__)

# Router for OAuth endpoints
router = APIRouter(tags=["oauth"])


def get_auth_server(request: Request) -> AuthorizationServer:
    return request.app.state.auth_server


def get_base_url(request: Request) -> str:
    """Public base URL: ``SERVER_URL`` when configured, else the request's own host."""
    configured = getattr(request.app.state, "server_url", None)
    if configured:
        return configured
    return f"{request.url.scheme}://{request.headers.get('host', request.url.netloc)}"


def error_response(error: OAuthError) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code)


# ============== Discovery Endpoints ==============

@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server(
    request: Request,
    auth_server: AuthorizationServer = Depends(get_auth_server),
):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    return auth_server.describe_metadata(get_base_url(request))


@router.get("/.well-known/oauth-protected-resource")
async def oauth_protected_resource(request: Request):
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    base_url = get_base_url(request)
    return {
        "resource": f"{base_url}/mcp",
        "authorization_servers": [base_url],
        "bearer_methods_supported": ["header"],
    }


# ============== Authorization Flow ==============

@router.get("/authorize")
async def authorize(
    client_id: str = "",
    redirect_uri: str = "",
    state: str = "",
    response_type: str = "code",
    code_challenge: str = "",
    code_challenge_method: str = "S256",
    auth_server: AuthorizationServer = Depends(get_auth_server),
):
    """OAuth 2.0 Authorization Endpoint - redirects straight back with a code."""
    try:
        location = auth_server.authorize(
            client_id=client_id,
            redirect_uri=redirect_uri,
            state=state or None,
            response_type=response_type,
            code_challenge=code_challenge or None,
            code_challenge_method=code_challenge_method,
        )
    except OAuthError as e:
        return error_response(e)
    return RedirectResponse(url=location, status_code=302)


# ============== Token Endpoint ==============

@router.post("/oauth/token")
async def token(
    request: Request,
    grant_type: str = Form(None),
    code: str = Form(None),
    redirect_uri: str = Form(None),
    client_id: str = Form(None),
    client_secret: str = Form(None),
    code_verifier: str = Form(None),
    auth_server: AuthorizationServer = Depends(get_auth_server),
):
    """OAuth 2.0 Token Endpoint (form-encoded or JSON body)."""
    # Form bodies are already consumed; only JSON bodies can be read here
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if grant_type is None and content_type == "application/json":
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse({"error": "invalid_request"}, status_code=400)
        if not isinstance(data, dict):
            return JSONResponse({"error": "invalid_request"}, status_code=400)
        grant_type = data.get("grant_type")
        code = data.get("code")
        redirect_uri = data.get("redirect_uri")
        client_id = data.get("client_id")
        client_secret = data.get("client_secret")
        code_verifier = data.get("code_verifier")

    logger.debug(f"[TOKEN] grant_type: {grant_type}")

    try:
        body = auth_server.exchange(
            grant_type,
            code=code,
            redirect_uri=redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
            code_verifier=code_verifier,
        )
    except OAuthError as e:
        return error_response(e)
    return JSONResponse(body, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})
