"""Credential stores, header injection and service tokens.

Credentials are never written into configuration. A ``CredentialReference``
names a store and retrieval parameters; ``CredentialStuffer`` looks the
secret up at connection time and turns it into request headers.

Stored values may be:
    - a plain string                -> ``Authorization: Bearer <value>``
    - JSON with ``headers``         -> those headers verbatim
    - JSON with ``access_token`` or ``token`` -> ``Authorization: Bearer <token>``
"""

import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from jose import JWTError, jwt

from relay.config import CredentialReference, McpToolConfig
from relay_constants import NANGO_HOST

logger = logging.getLogger(__name__)

SERVICE_TOKEN_TTL_SECONDS = 300
SERVICE_TOKEN_ISSUER = "agent-relay"
SERVICE_TOKEN_ALGORITHM = "HS256"


class CredentialResolutionError(Exception):
    """Raised when a credential reference cannot be resolved."""
    pass


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class CredentialStore(Protocol):
    id: str

    async def get(self, key: str) -> Optional[str]:
        ...


class MemoryCredentialStore:
    """Process-local credential store. Useful for tests and single-tenant CLIs."""

    def __init__(self, store_id: str = "memory-default", values: Optional[Dict[str, str]] = None):
        self.id = store_id
        self._values: Dict[str, str] = dict(values or {})

    async def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> bool:
        return self._values.pop(key, None) is not None


class EnvCredentialStore:
    """Reads credentials from environment variables, optionally prefixed."""

    def __init__(self, store_id: str = "env-default", prefix: str = ""):
        self.id = store_id
        self.prefix = prefix

    async def get(self, key: str) -> Optional[str]:
        return os.getenv(f"{self.prefix}{key}")


class CredentialStoreRegistry:
    def __init__(self, *stores: CredentialStore):
        self._stores: Dict[str, CredentialStore] = {}
        for store in stores:
            self.register(store)

    def register(self, store: CredentialStore) -> None:
        self._stores[store.id] = store

    def get(self, store_id: str) -> CredentialStore:
        store = self._stores.get(store_id)
        if store is None:
            raise CredentialResolutionError(f"Credential store not found: {store_id}")
        return store

    def __contains__(self, store_id: str) -> bool:
        return store_id in self._stores


def default_registry() -> CredentialStoreRegistry:
    return CredentialStoreRegistry(MemoryCredentialStore(), EnvCredentialStore())


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------

_TEMPLATE_VAR = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


def render_header_template(value: str, context: Mapping[str, Any]) -> str:
    """Fill ``{{headers.x-user-id}}``-style placeholders from *context*.

    Raises:
        CredentialResolutionError: a placeholder has no value.
    """

    def _lookup(match: "re.Match") -> str:
        current: Any = context
        for part in match.group(1).split("."):
            if not isinstance(current, Mapping) or part not in current:
                raise CredentialResolutionError(f"Template variable not found: {match.group(1)}")
            current = current[part]
        return str(current)

    return _TEMPLATE_VAR.sub(_lookup, value)


def credential_to_headers(raw: str) -> Dict[str, str]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"Authorization": f"Bearer {raw}"}

    if isinstance(parsed, dict):
        if isinstance(parsed.get("headers"), dict):
            return {str(k): str(v) for k, v in parsed["headers"].items()}
        token = parsed.get("access_token") or parsed.get("token")
        if token:
            return {"Authorization": f"Bearer {token}"}
    if isinstance(parsed, str):
        return {"Authorization": f"Bearer {parsed}"}
    raise CredentialResolutionError("Stored credential has no usable token or headers")


def is_nango_server(url: str) -> bool:
    return NANGO_HOST in url


@dataclass(frozen=True)
class ResolvedMcpServer:
    url: str
    headers: Dict[str, str]
    server_type: str  # "nango" | "generic"


class CredentialStuffer:
    """Injects resolved credentials into outbound request headers."""

    def __init__(self, registry: CredentialStoreRegistry):
        self.registry = registry

    async def _lookup(self, reference: CredentialReference) -> Dict[str, str]:
        store = self.registry.get(reference.credential_store_id)
        key = reference.retrieval_params.get("key") or reference.id
        raw = await store.get(key)
        if raw is None:
            raise CredentialResolutionError(
                f"Credential {reference.id} not found in store {reference.credential_store_id}"
            )
        return credential_to_headers(raw)

    async def get_credential_headers(
        self,
        reference: Optional[CredentialReference] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        """Static *headers* merged with credential headers (credentials win)."""
        resolved = dict(headers or {})
        if reference is not None:
            resolved.update(await self._lookup(reference))
        return resolved

    async def build_mcp_server_config(
        self,
        tool: McpToolConfig,
        reference: Optional[CredentialReference] = None,
        forwarded_headers: Optional[Mapping[str, str]] = None,
    ) -> ResolvedMcpServer:
        """Connection settings for *tool*: server, tool and credential headers, then forwarded headers."""
        server_type = "nango" if is_nango_server(tool.server.url) else "generic"
        headers = {**tool.server.headers, **tool.headers}
        if reference is not None:
            headers.update(await self._lookup(reference))
            if server_type == "nango":
                headers.setdefault("Provider-Config-Key", reference.retrieval_params.get("providerConfigKey", ""))
                headers.setdefault("Connection-Id", reference.retrieval_params.get("connectionId", ""))
        if forwarded_headers:
            headers.update(forwarded_headers)
        logger.debug("Built %s MCP server config for %s (%d headers)", server_type, tool.name, len(headers))
        return ResolvedMcpServer(url=tool.server.url, headers=headers, server_type=server_type)


# ---------------------------------------------------------------------------
# Service tokens
# ---------------------------------------------------------------------------

class ServiceTokenMinter:
    """Short-lived HS256 tokens scoped to one ``(origin agent, target agent)`` hop.

    Args:
        secret: Signing secret (``RELAY_SERVICE_TOKEN_SECRET``).
        ttl_seconds: Token lifetime, five minutes by default.
    """

    def __init__(self, secret: str, ttl_seconds: int = SERVICE_TOKEN_TTL_SECONDS):
        if not secret:
            raise CredentialResolutionError("A service token secret is required to mint delegation tokens")
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    def mint(self, tenant_id: str, project_id: str, origin_agent_id: str, target_agent_id: str) -> str:
        now = int(time.time())
        claims = {
            "iss": SERVICE_TOKEN_ISSUER,
            "sub": origin_agent_id,
            "aud": target_agent_id,
            "tenantId": tenant_id,
            "projectId": project_id,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "jti": uuid.uuid4().hex,
        }
        logger.debug("Minting service token %s -> %s", origin_agent_id, target_agent_id)
        return jwt.encode(claims, self._secret, algorithm=SERVICE_TOKEN_ALGORITHM)

    def verify(self, token: str, target_agent_id: str) -> Dict[str, Any]:
        """Decode *token*, enforcing signature, expiry, issuer and audience."""
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[SERVICE_TOKEN_ALGORITHM],
                audience=target_agent_id,
                issuer=SERVICE_TOKEN_ISSUER,
            )
        except JWTError as e:
            raise CredentialResolutionError(f"Invalid service token: {e}") from e
