"""Client for the credential broker that issues short-lived session secrets."""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from voice_roleplay.errors import CredentialMalformed, CredentialUnavailable
from voice_roleplay.models import ClientSecretResponse, SessionCredential, SessionTemplate

logger = logging.getLogger(__name__)


class CredentialBroker:
    """
    Requests a SessionCredential from the broker's POST /session endpoint.

    Args:
        url: Full URL of the broker endpoint
        template: Session template parameters forwarded to the broker
        timeout: Request timeout in seconds
        transport: Optional httpx transport (used by tests)
    """

    def __init__(
        self,
        url: str,
        template: Optional[SessionTemplate] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.template = template or SessionTemplate()
        self.timeout = timeout
        self._transport = transport

    async def request_credential(self) -> SessionCredential:
        """
        Fetch a fresh credential.

        Raises:
            CredentialUnavailable: broker unreachable or status >= 400
            CredentialMalformed: body is not a valid client secret
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    json=self.template.model_dump(exclude_none=True),
                )
        except httpx.HTTPError as e:
            logger.error("Credential broker unreachable: %s", e)
            raise CredentialUnavailable(f"Credential broker unreachable: {e}") from e

        if response.status_code >= 400:
            logger.error("Credential broker returned status %s", response.status_code)
            raise CredentialUnavailable(
                f"Failed to get session: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = ClientSecretResponse.model_validate_json(response.content)
        except ValidationError as e:
            logger.error("Invalid credential response: %s", e)
            raise CredentialMalformed(
                "Invalid session response", status_code=response.status_code
            ) from e

        credential = SessionCredential.from_response(body)
        logger.info("Credential issued, expires at %s", credential.expires_at.isoformat())
        return credential
