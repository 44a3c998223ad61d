"""OAuth 2.0 authorization server for a single static client.

Supports the authorization_code grant (with optional S256 PKCE) and the
client_credentials grant. Codes and tokens are opaque random strings kept
in process memory; a background sweep evicts expired ones.
"""

import base64
import hashlib
import logging
import secrets
import time
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import anyio

from oauth.stores import AccessToken, AuthorizationCode, ExpiringStore

logger = logging.getLogger(__name__)

AUTHORIZATION_CODE_TTL = 5 * 60
ACCESS_TOKEN_TTL = 60 * 60


class OAuthError(Exception):
    """An OAuth error response (RFC 6749 section 5.2)."""

    def __init__(self, error: str, status_code: int = 400, description: Optional[str] = None):
        self.error = error
        self.status_code = status_code
        self.description = description
        super().__init__(f"{error}: {description}" if description else error)

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


def _matches(provided: Optional[str], expected: str) -> bool:
    if not isinstance(provided, str):
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())


def s256_challenge(code_verifier: str) -> str:
    """PKCE S256 transform of a code verifier."""
    digest = hashlib.sha256(code_verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def _is_absolute_uri(uri: str) -> bool:
    parts = urlsplit(uri)
    return bool(parts.scheme and parts.netloc) and not any(ch.isspace() for ch in uri)


def _with_query(url: str, params: dict) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


class AuthorizationServer:
    """Issues and validates bearer tokens for one configured client."""

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        now_fn: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self._now = now_fn
        self.codes: ExpiringStore[AuthorizationCode] = ExpiringStore(now_fn)
        self.tokens: ExpiringStore[AccessToken] = ExpiringStore(now_fn)

    @property
    def configured(self) -> bool:
        return bool(self.client_id)

    def _check_client_id(self, client_id: Optional[str]) -> None:
        if not self.configured or not _matches(client_id, self.client_id):
            raise OAuthError("invalid_client", 401)

    def _check_client_secret(self, client_secret: Optional[str]) -> None:
        if not self.configured or not _matches(client_secret, self.client_secret):
            raise OAuthError("invalid_client", 401)

    # ============== Discovery ==============

    def describe_metadata(self, base_url: str) -> dict:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
        return {
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/authorize",
            "token_endpoint": f"{base_url}/oauth/token",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "client_credentials"],
            "token_endpoint_auth_methods_supported": ["client_secret_post"],
            "code_challenge_methods_supported": ["S256"],
        }

    # ============== Authorization ==============

    def authorize(
        self,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        state: Optional[str] = None,
        response_type: str = "code",
        code_challenge: Optional[str] = None,
        code_challenge_method: str = "S256",
    ) -> str:
        """Mint an authorization code and return the redirect URL carrying it."""
        if not self.configured or not _matches(client_id, self.client_id):
            logger.info("[AUTHORIZE] Rejected: unknown client_id")
            raise OAuthError("invalid_client", 400)
        if not redirect_uri:
            raise OAuthError("invalid_request", 400, "redirect_uri is required")
        if not _is_absolute_uri(redirect_uri):
            raise OAuthError("invalid_request", 400, "redirect_uri must be an absolute URI")
        if response_type != "code":
            raise OAuthError("unsupported_response_type", 400)
        if code_challenge and code_challenge_method != "S256":
            raise OAuthError("invalid_request", 400, "only S256 code challenges are supported")

        code = secrets.token_urlsafe(32)
        self.codes.insert(code, AuthorizationCode(
            code=code,
            client_id=client_id,
            redirect_uri=redirect_uri,
            expires_at=self._now() + AUTHORIZATION_CODE_TTL,
            code_challenge=code_challenge or None,
        ))

        params = {"code": code}
        if state:
            params["state"] = state
        logger.info("[AUTHORIZE] Authorization code issued")
        return _with_query(redirect_uri, params)

    # ============== Token ==============

    def _mint_token(self) -> dict:
        token = secrets.token_urlsafe(32)
        self.tokens.insert(token, AccessToken(token=token, expires_at=self._now() + ACCESS_TOKEN_TTL))
        return {"access_token": token, "token_type": "Bearer", "expires_in": ACCESS_TOKEN_TTL}

    def exchange_authorization_code(
        self,
        code: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        code_verifier: Optional[str] = None,
    ) -> dict:
        # The code is consumed before any further check so it can never be replayed
        stored = self.codes.remove(code) if isinstance(code, str) and code else None
        if stored is None or stored.is_expired(self._now()):
            logger.info("[TOKEN] Rejected: unknown or expired authorization code")
            raise OAuthError("invalid_grant", 400)
        if stored.client_id != client_id or stored.redirect_uri != redirect_uri:
            logger.info("[TOKEN] Rejected: client_id or redirect_uri mismatch")
            raise OAuthError("invalid_grant", 400)
        if stored.code_challenge:
            if not isinstance(code_verifier, str) or not _matches(s256_challenge(code_verifier), stored.code_challenge):
                raise OAuthError("invalid_grant", 400, "PKCE verification failed")
        self._check_client_secret(client_secret)

        logger.info("[TOKEN] Access token issued (authorization_code)")
        return self._mint_token()

    def exchange_client_credentials(self, client_id: Optional[str], client_secret: Optional[str]) -> dict:
        self._check_client_id(client_id)
        self._check_client_secret(client_secret)
        logger.info("[TOKEN] Access token issued (client_credentials)")
        return self._mint_token()

    def exchange(self, grant_type: Optional[str], **fields: Optional[str]) -> dict:
        """Token endpoint dispatch on ``grant_type``."""
        if grant_type == "authorization_code":
            return self.exchange_authorization_code(
                code=fields.get("code"),
                client_id=fields.get("client_id"),
                client_secret=fields.get("client_secret"),
                redirect_uri=fields.get("redirect_uri"),
                code_verifier=fields.get("code_verifier"),
            )
        if grant_type == "client_credentials":
            return self.exchange_client_credentials(fields.get("client_id"), fields.get("client_secret"))
        logger.debug(f"[TOKEN] Unsupported grant_type: {grant_type}")
        raise OAuthError("unsupported_grant_type", 400)

    def validate_token(self, token: str) -> bool:
        """True for a token this server issued that has not yet expired."""
        return self.tokens.lookup(token) is not None

    # ============== Expiry ==============

    def sweep_expired(self) -> tuple[int, int]:
        codes = self.codes.sweep_expired()
        tokens = self.tokens.sweep_expired()
        if codes or tokens:
            logger.debug(f"[SWEEP] Removed {codes} expired codes and {tokens} expired tokens")
        return codes, tokens

    async def run_sweeper(self, interval: float) -> None:
        """Sweep expired codes and tokens every ``interval`` seconds, forever."""
        while True:
            await anyio.sleep(interval)
            self.sweep_expired()
