"""Evolution API client to send WhatsApp text messages (async)

- Retry with exponential backoff, only when the request never reached the
  gateway (connection errors); timeouts and HTTP errors are not retried since
  the message may already have been delivered
- Health check reported by /ready
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

# Retry configuration for connection failures
MAX_RETRIES = 2
INITIAL_RETRY_DELAY = 2.0  # seconds
MAX_RETRY_DELAY = 16.0  # seconds
HEALTH_CHECK_TIMEOUT = 5.0  # seconds

# Typing indicator shown before the text is delivered
PRESENCE_DELAY_MS = 1000


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


def mask_phone(number: Optional[str]) -> str:
    if not number:
        return "<none>"
    return f"{number[:8]}..."


class EvolutionSender:
    """Client for the Evolution API sendText endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 30.0,
        max_retries: int = MAX_RETRIES,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize Evolution sender

        Args:
            api_url: Evolution API base URL (e.g., https://evolution.example.com)
            api_key: Global API key sent in the `apikey` header
            timeout: Request timeout in seconds
            max_retries: Attempts per send when the connection fails
            client: Injected httpx client (tests)
        """
        self.api_url = (api_url or "").rstrip("/")
        self.api_key = api_key
        self.max_retries = max(max_retries, 1)
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_headers(self) -> dict:
        return {"Content-Type": "application/json", "apikey": self.api_key}

    async def check_health(self) -> Tuple[bool, dict]:
        """
        Check if the Evolution API answers.

        Returns:
            Tuple of (is_healthy, data)
        """
        if not self.api_url:
            return False, {"error": "No API URL"}

        try:
            response = await self.client.get(
                f"{self.api_url}/",
                headers=self._get_headers(),
                timeout=HEALTH_CHECK_TIMEOUT
            )
            if response.status_code == 200:
                return True, {"status": response.status_code}
            logger.warning(f"Evolution health check failed: HTTP {response.status_code}")
            return False, {"error": f"HTTP {response.status_code}"}
        except httpx.TimeoutException:
            logger.warning("Evolution health check timeout")
            return False, {"error": "timeout"}
        except httpx.HTTPError as e:
            logger.warning(f"Evolution health check error: {e}")
            return False, {"error": str(e)}

    async def send_text(self, instance_name: str, number: str, text: str) -> SendResult:
        """
        Send a text message through an Evolution instance.

        Args:
            instance_name: Evolution instance connected to the company's number
            number: Recipient phone number (digits with country code)
            text: Message body

        Returns:
            SendResult with the gateway message id on success
        """
        if not self.api_url:
            return SendResult(False, error="Evolution API URL not configured")
        if not number:
            return SendResult(False, error="Recipient has no phone number")

        payload = {
            "number": number,
            "text": text,
            "options": {"delay": PRESENCE_DELAY_MS, "presence": "composing"}
        }
        url = f"{self.api_url}/message/sendText/{instance_name}"

        delay = INITIAL_RETRY_DELAY
        last_error = None

        for attempt in range(self.max_retries):
            try:
                response = await self.client.post(url, json=payload, headers=self._get_headers())
            except httpx.ConnectError as e:
                last_error = f"connection error: {e}"
                logger.warning(f"Send attempt {attempt + 1}/{self.max_retries} connection failed")
                if attempt < self.max_retries - 1:
                    logger.info(f"Retrying in {delay}s...")
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, MAX_RETRY_DELAY)
                continue
            except httpx.TimeoutException as e:
                logger.warning(f"Send to {mask_phone(number)} timed out: {e}")
                return SendResult(False, error=f"timeout: {e}")
            except httpx.HTTPError as e:
                logger.warning(f"Send to {mask_phone(number)} failed: {e}")
                return SendResult(False, error=str(e))

            return self._parse_response(response, number)

        logger.error(f"All {self.max_retries} send attempts failed. Last error: {last_error}")
        return SendResult(False, error=last_error)

    def _parse_response(self, response: httpx.Response, number: str) -> SendResult:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400:
            error = data.get("error") or data.get("message") or f"HTTP {response.status_code}"
            logger.warning(f"Evolution rejected message to {mask_phone(number)}: {error}")
            return SendResult(False, error=str(error))

        if data.get("error"):
            logger.warning(f"Evolution returned error for {mask_phone(number)}: {data['error']}")
            return SendResult(False, error=str(data["error"]))

        message_id = (data.get("key") or {}).get("id")
        logger.info(f"Message sent to {mask_phone(number)} (id: {message_id})")
        return SendResult(True, message_id=message_id)
