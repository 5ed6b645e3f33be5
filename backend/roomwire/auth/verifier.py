"""Identity verifiers for WebSocket handshakes.

Token issuance belongs to the content-management backend. The chat layer
only turns a credential into a verified ``(participant_id, display_name)``
pair, either by checking a shared-secret JWT locally or by asking the
backend's "who am I" endpoint.

Usage:
    verifier = build_verifier(get_config())
    identity = await verifier.verify(token)
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
import jwt

from roomwire.chat.errors import AuthError
from roomwire.config import AppSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """A verified identity.

    Attributes:
        participant_id: Stable user id from the identity provider.
        display_name: Name shown to other participants.
    """
    participant_id: str
    display_name: str


class IdentityVerifier(ABC):
    """Abstract base class for credential verification."""

    @abstractmethod
    async def verify(self, credential: str) -> Identity:
        """Verify a credential.

        Raises:
            AuthError: The credential is invalid, expired or unknown.
        """


class JWTIdentityVerifier(IdentityVerifier):
    """Verifies HMAC-signed JWTs minted by the CMS backend.

    The ``sub`` claim is the participant id; ``name`` (or ``username``) is the
    display name, falling back to the id.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm

    async def verify(self, credential: str) -> Identity:
        try:
            claims = jwt.decode(
                credential,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthError("token expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthError(f"invalid token: {e}") from e

        participant_id = str(claims["sub"])
        display_name = claims.get("name") or claims.get("username") or participant_id
        return Identity(participant_id=participant_id, display_name=str(display_name))


class HTTPIdentityVerifier(IdentityVerifier):
    """Resolves a bearer credential through the CMS "who am I" endpoint.

    The endpoint must answer 200 with a JSON body holding ``id`` (or ``_id``)
    and ``username`` (or ``name``).
    """

    def __init__(self, identity_url: str, timeout: float = 5.0) -> None:
        self.identity_url = identity_url
        self.timeout = timeout

    async def verify(self, credential: str) -> Identity:
        headers = {"Authorization": f"Bearer {credential}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(self.identity_url, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"[Auth] Identity endpoint unreachable: {e}")
            raise AuthError("identity service unavailable") from e

        if resp.status_code != 200:
            raise AuthError("invalid token or user not found")

        data = resp.json()
        participant_id = data.get("id") or data.get("_id")
        if not participant_id:
            raise AuthError("identity response has no user id")
        display_name = data.get("username") or data.get("name") or str(participant_id)
        return Identity(participant_id=str(participant_id), display_name=str(display_name))


def build_verifier(config: AppSettings) -> IdentityVerifier:
    """Create the verifier selected by ``auth.verifier``."""
    if config.auth.verifier == "http":
        return HTTPIdentityVerifier(
            config.auth.identity_url, timeout=config.auth.timeout_seconds
        )
    return JWTIdentityVerifier(
        config.secrets.jwt.secret_key, algorithm=config.secrets.jwt.algorithm
    )
