"""skipper_shared.github_app — GitHub App installation token minting.

Authenticates to GitHub using the RS256 JWT → installation access token flow.
The App private key lives in SSM Parameter Store (SecureString).

Two caches are kept per execution context (one ``GitHubAppCredentials``
instance per warm Lambda container):
    - the signing key PEM, re-read from SSM once its TTL elapses (default 24h)
    - installation tokens per installation id, reused until they are within
      the refresh buffer of their expiry (default 60s)

Losing either cache on a cold start only costs one extra SSM read / mint.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import jwt
from botocore.exceptions import BotoCoreError, ClientError

from skipper_shared.aws_clients import _get_ssm
from skipper_shared.errors import InvalidInput, SecretUnavailable, UpstreamAuthError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

GITHUB_API_BASE = os.environ.get("GITHUB_API_BASE", "https://api.github.com")
GITHUB_API_VERSION = "2022-11-28"
GITHUB_USER_AGENT = "skipper"

DEFAULT_KEY_TTL_SECONDS: float = 24 * 3600.0
DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS: float = 60.0

JWT_CLOCK_SKEW_SECONDS = 60
JWT_LIFETIME_SECONDS = 9 * 60  # GitHub rejects app JWTs living past 10 minutes

_MAX_ERROR_BODY = 500


@dataclass(frozen=True)
class InstallationToken:
    token: str
    expires_at: float  # unix epoch seconds

    def is_fresh(self, now: float, refresh_buffer: float) -> bool:
        return now < self.expires_at - refresh_buffer


# ---------------------------------------------------------------------------
# App JWT
# ---------------------------------------------------------------------------


def build_app_jwt(app_id: str, private_key_pem: str, now: Optional[float] = None) -> str:
    """Generate a short-lived RS256 JWT for the GitHub App.

    GitHub requires:
    - iat: issued at (backdated 60s to tolerate clock skew)
    - exp: expiration (max 10 minutes from iat)
    - iss: GitHub App ID
    """
    app_id = str(app_id).strip()
    if not app_id.isdigit():
        raise InvalidInput("github app id must be numeric", "GITHUB_APP_ID")
    private_key_pem = (private_key_pem or "").strip()
    if not private_key_pem:
        raise SecretUnavailable("github app private key is empty")

    issued = int(time.time() if now is None else now)
    payload = {
        "iat": issued - JWT_CLOCK_SKEW_SECONDS,
        "exp": issued + JWT_LIFETIME_SECONDS,
        "iss": app_id,
    }
    return jwt.encode(payload, private_key_pem, algorithm="RS256")


# ---------------------------------------------------------------------------
# GitHub REST
# ---------------------------------------------------------------------------


def github_api_request(
    method: str,
    path: str,
    token: str,
    token_type: str = "bearer",
    body: Optional[Dict[str, Any]] = None,
    api_base: str = GITHUB_API_BASE,
    timeout: float = 10,
) -> Dict[str, Any]:
    """Call the GitHub REST API and return the decoded JSON object.

    ``token_type`` is ``bearer`` for app JWTs and ``token`` for installation
    tokens. Non-2xx responses and transport failures raise UpstreamAuthError.
    """
    scheme = "Bearer" if token_type == "bearer" else "token"
    headers = {
        "Accept": "application/vnd.github+json",
        "Authorization": f"{scheme} {token}",
        "User-Agent": GITHUB_USER_AGENT,
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
    }
    data = None
    if body is not None:
        headers["Content-Type"] = "application/json"
        data = json.dumps(body).encode("utf-8")

    req = urllib.request.Request(f"{api_base}{path}", method=method, data=data, headers=headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            text = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace").strip()
        if len(detail) > _MAX_ERROR_BODY:
            detail = detail[:_MAX_ERROR_BODY] + "..."
        logger.error("GitHub API %s %s failed: %s %s", method, path, exc.code, detail)
        raise UpstreamAuthError(
            f"GitHub API {method} {path} failed ({exc.code}): {detail}", status=exc.code
        ) from exc
    except urllib.error.URLError as exc:
        logger.error("GitHub API %s %s unreachable: %s", method, path, exc.reason)
        raise UpstreamAuthError(f"GitHub API {method} {path} unreachable: {exc.reason}") from exc

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise UpstreamAuthError(f"GitHub API {method} {path} returned invalid JSON") from exc
    if not isinstance(parsed, dict):
        raise UpstreamAuthError(f"GitHub API {method} {path} returned non-object JSON")
    return parsed


def create_installation_access_token(installation_id: int, app_jwt: str) -> InstallationToken:
    """Exchange an App JWT for an installation access token.

    POST /app/installations/{installation_id}/access_tokens
    """
    data = github_api_request(
        "POST",
        f"/app/installations/{installation_id}/access_tokens",
        token=app_jwt,
    )
    token = data.get("token")
    expires_at = data.get("expires_at")
    if not isinstance(token, str) or not token or not isinstance(expires_at, str):
        raise UpstreamAuthError("invalid installation access token response")
    return InstallationToken(token=token, expires_at=_parse_github_timestamp(expires_at))


def fetch_repository_installation_id(repo: str, app_jwt: str) -> int:
    """Resolve the App installation id for ``owner/name``.

    GET /repos/{owner}/{repo}/installation
    """
    repo = (repo or "").strip().strip("/")
    if repo.count("/") != 1:
        raise InvalidInput(f"repository must be owner/name: {repo}", "repo")
    data = github_api_request("GET", f"/repos/{repo}/installation", token=app_jwt)
    installation_id = data.get("id")
    if isinstance(installation_id, bool) or not isinstance(installation_id, int):
        raise UpstreamAuthError(f"invalid installation response for {repo}")
    return installation_id


def _parse_github_timestamp(value: str) -> float:
    try:
        parsed = dt.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise UpstreamAuthError(f"invalid installation token expiry: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.timestamp()


# ---------------------------------------------------------------------------
# Secret store
# ---------------------------------------------------------------------------


def read_secure_parameter(name: str, ssm: Any = None) -> str:
    """Read an SSM SecureString parameter (decrypted).

    Raises SecretUnavailable when the parameter is missing or empty.
    """
    client = ssm or _get_ssm()
    try:
        resp = client.get_parameter(Name=name, WithDecryption=True)
    except ClientError as exc:
        code = str(exc.response.get("Error", {}).get("Code") or "")
        if code == "ParameterNotFound":
            raise SecretUnavailable(f"ssm parameter not found: {name}") from exc
        raise
    except BotoCoreError as exc:
        raise SecretUnavailable(f"ssm parameter unreadable: {name}: {exc}") from exc
    value = str(((resp.get("Parameter") or {}).get("Value")) or "").strip()
    if not value:
        raise SecretUnavailable(f"ssm parameter empty: {name}")
    return value


# ---------------------------------------------------------------------------
# Credentials cache object
# ---------------------------------------------------------------------------


class GitHubAppCredentials:
    """Mints installation tokens with a signing-key cache and a token cache.

    Collaborators are injectable so the caches can be exercised without SSM
    or GitHub. Both caches are plain read-then-write: one instance belongs to
    one execution context and is never shared across threads.
    """

    def __init__(
        self,
        app_id: str,
        private_key_parameter: str,
        key_ttl_seconds: float = DEFAULT_KEY_TTL_SECONDS,
        token_refresh_buffer_seconds: float = DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS,
        read_private_key: Optional[Callable[[str], str]] = None,
        build_jwt: Callable[..., str] = build_app_jwt,
        exchange_token: Callable[[int, str], InstallationToken] = create_installation_access_token,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app_id = str(app_id or "").strip()
        self.private_key_parameter = str(private_key_parameter or "").strip()
        self.key_ttl_seconds = key_ttl_seconds
        self.token_refresh_buffer_seconds = token_refresh_buffer_seconds
        self._read_private_key = read_private_key or read_secure_parameter
        self._build_jwt = build_jwt
        self._exchange_token = exchange_token
        self._clock = clock

        self._signing_key: Optional[str] = None
        self._signing_key_loaded_at: float = 0.0
        self._tokens: Dict[int, InstallationToken] = {}

    def signing_key(self) -> str:
        """Private key PEM, reloaded from the secret store once the TTL elapses."""
        now = self._clock()
        if self._signing_key and (now - self._signing_key_loaded_at) < self.key_ttl_seconds:
            return self._signing_key
        if not self.private_key_parameter:
            raise SecretUnavailable("GITHUB_APP_PRIVATE_KEY_SSM_PARAMETER not set")

        value = (self._read_private_key(self.private_key_parameter) or "").strip()
        if not value:
            raise SecretUnavailable(f"ssm parameter empty: {self.private_key_parameter}")
        self._signing_key = value
        self._signing_key_loaded_at = now
        logger.info("Loaded GitHub App signing key from %s", self.private_key_parameter)
        return value

    def app_jwt(self) -> str:
        if not self.app_id:
            raise InvalidInput("GITHUB_APP_ID environment variable not set", "GITHUB_APP_ID")
        return self._build_jwt(self.app_id, self.signing_key(), now=self._clock())

    def mint_installation_token(self, installation_id: int) -> str:
        """Installation access token, served from cache while still fresh."""
        if (
            isinstance(installation_id, bool)
            or not isinstance(installation_id, int)
            or installation_id <= 0
        ):
            raise InvalidInput("installation id must be positive integer", "installation.id")

        cached = self._tokens.get(installation_id)
        if cached and cached.is_fresh(self._clock(), self.token_refresh_buffer_seconds):
            return cached.token

        minted = self._exchange_token(installation_id, self.app_jwt())
        self._tokens[installation_id] = minted
        logger.info(
            "Minted installation token for installation %s (expires_at=%s)",
            installation_id, int(minted.expires_at),
        )
        return minted.token

    def installation_id_for_repository(self, repo: str) -> int:
        return fetch_repository_installation_id(repo, self.app_jwt())
