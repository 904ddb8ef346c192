"""Anonymous credential issuance via the identity toolkit REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from timeline_comments.core.errors import RemoteUnavailable, TimelineError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Opaque credential pair identifying one installation."""

    id: str
    token: str


class CredentialError(TimelineError):
    """The identity service refused to issue a credential."""


class AnonymousCredentialProvider:
    """Signs up a new anonymous account and returns its ``(id, token)`` pair."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://identitytoolkit.googleapis.com/v1",
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def sign_up(self) -> Actor:
        """Create an anonymous account.

        Raises:
            CredentialError: If the service answers with an error payload.
            RemoteUnavailable: If the service cannot be reached.
        """
        if not self._api_key:
            raise CredentialError("Identity API key is not configured")
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    "/accounts:signUp",
                    params={"key": self._api_key},
                    json={"returnSecureToken": True},
                )
                data = resp.json()
        except httpx.HTTPError as e:
            raise RemoteUnavailable(f"Anonymous sign-up failed: {e}") from e
        except ValueError as e:
            raise RemoteUnavailable("Anonymous sign-up returned invalid JSON") from e

        if not isinstance(data, dict):
            raise CredentialError("Anonymous sign-up returned an unexpected payload")

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise CredentialError(message or "Anonymous sign-up rejected")

        local_id = data.get("localId")
        id_token = data.get("idToken")
        if not local_id or not id_token:
            raise CredentialError("Anonymous sign-up returned no credential")

        logger.info(f"Signed up anonymous actor {local_id}")
        return Actor(id=local_id, token=id_token)
