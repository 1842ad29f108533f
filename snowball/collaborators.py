"""
Narrow adapters to services outside the snowball engine.

- KarmaProvider: submitter karma, consumed only as a gating input
- EmailTransport: outbound email. Transports raise raw errors
  (httpx exceptions, asyncio.TimeoutError); the distribution scheduler
  classifies them.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
import httpx
import logging

from core.config import settings
from core.exceptions import DatastoreUnavailableError

logger = logging.getLogger(__name__)


# ============================================================================
# Karma
# ============================================================================

class KarmaProvider(ABC):
    @abstractmethod
    async def get_user_karma(self, user_id: str) -> int:
        pass


class StaticKarmaProvider(KarmaProvider):
    """Fixed karma table, for tests and deployments without a karma service"""

    def __init__(self, karma: Optional[Dict[str, int]] = None, default: int = 0):
        self.karma = dict(karma or {})
        self.default = default

    async def get_user_karma(self, user_id: str) -> int:
        return self.karma.get(user_id, self.default)


class HttpKarmaProvider(KarmaProvider):
    """
    Karma lookup over HTTP.

    Expects GET {base_url}/users/{user_id}/karma -> {"karma": <int>}.
    An unknown user (404) has karma 0.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.KARMA_SERVICE_URL or "").rstrip("/")
        if not self.base_url:
            raise ValueError("KARMA_SERVICE_URL is not configured")
        self.timeout = timeout or settings.KARMA_SERVICE_TIMEOUT
        self.client = client

    async def get_user_karma(self, user_id: str) -> int:
        url = f"{self.base_url}/users/{user_id}/karma"
        try:
            if self.client is not None:
                response = await self.client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, timeout=self.timeout)

            if response.status_code == 404:
                return 0
            response.raise_for_status()
            return int(response.json().get("karma", 0))

        except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as e:
            logger.error(f"Karma service unavailable for user {user_id}: {str(e)}")
            raise DatastoreUnavailableError(
                "Karma service unavailable",
                context={"user_id": user_id, "url": url},
                original_exception=e
            )


# ============================================================================
# Email transport
# ============================================================================

class EmailTransport(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> Optional[str]:
        """Deliver one message. Returns the provider message id when available."""
        pass


class HttpEmailTransport(EmailTransport):
    """SendGrid-style JSON mail API"""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url or settings.EMAIL_API_URL
        self.api_key = api_key or settings.EMAIL_API_KEY
        self.from_email = from_email or settings.EMAIL_FROM
        self.from_name = from_name or settings.EMAIL_FROM_NAME
        self.client = client

    def _payload(self, to: str, subject: str, body: str) -> Dict:
        return {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": [{"type": "text/html", "value": body}],
        }

    async def send(self, to: str, subject: str, body: str) -> Optional[str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = self._payload(to, subject, body)
        if self.client is not None:
            response = await self.client.post(self.api_url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.api_url, json=payload, headers=headers)

        response.raise_for_status()
        return response.headers.get("X-Message-Id")
