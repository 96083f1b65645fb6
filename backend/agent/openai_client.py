"""
OpenAI client for message personalization.

Two surfaces:
- Assistants v2 REST endpoints (threads, messages, runs) over httpx, used for
  persistent per-conversation threads.
- Stateless chat completions through the AsyncOpenAI SDK.

Completion calls return the dict shape {"answer", "token_usage", "error"}.
"""

import logging
from typing import Dict, List, Optional

import httpx
from openai import AsyncOpenAI

from agent.polling import poll_until

logger = logging.getLogger(__name__)

RUN_TERMINAL_STATES = {"completed", "failed", "cancelled", "expired", "requires_action", "incomplete"}


class OpenAIClient:
    """Thin async wrapper over the OpenAI APIs the personalization chain needs."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        chat_client: Optional[AsyncOpenAI] = None,
    ):
        """
        Args:
            api_key: Bearer credential
            base_url: API root (no trailing slash)
            timeout: Per-request timeout in seconds
            http_client: Injected httpx client (tests)
            chat_client: Injected AsyncOpenAI client (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "OpenAI-Beta": "assistants=v2",
        }
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        self.chat_client = chat_client or AsyncOpenAI(
            api_key=api_key, base_url=self.base_url, timeout=timeout
        )

    async def close(self):
        await self.http.aclose()
        await self.chat_client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _request(self, method: str, path: str, json: Optional[dict] = None, params: Optional[dict] = None) -> dict:
        response = await self.http.request(
            method,
            f"{self.base_url}{path}",
            headers=self.headers,
            json=json,
            params=params,
        )
        response.raise_for_status()
        return response.json()

    # Threads

    async def create_thread(self) -> str:
        data = await self._request("POST", "/threads", json={})
        return data["id"]

    async def add_message(self, thread_id: str, content: str, role: str = "user") -> dict:
        return await self._request(
            "POST", f"/threads/{thread_id}/messages",
            json={"role": role, "content": content},
        )

    async def list_messages(self, thread_id: str, limit: int = 20, order: str = "desc") -> List[dict]:
        data = await self._request(
            "GET", f"/threads/{thread_id}/messages",
            params={"limit": limit, "order": order},
        )
        return data.get("data", [])

    @staticmethod
    def message_text(message: dict) -> str:
        """First text block of a thread message, or ''."""
        for block in message.get("content") or []:
            if block.get("type") == "text":
                return (block.get("text") or {}).get("value", "")
        return ""

    async def latest_assistant_message(self, thread_id: str) -> Optional[str]:
        for message in await self.list_messages(thread_id, limit=1, order="desc"):
            if message.get("role") == "assistant":
                return self.message_text(message)
        return None

    async def thread_history(self, thread_id: str, limit: int = 20) -> List[Dict[str, str]]:
        """Thread messages as chat-completion messages, oldest first."""
        messages = await self.list_messages(thread_id, limit=limit, order="desc")
        history = []
        for message in reversed(messages):
            text = self.message_text(message)
            if text:
                history.append({"role": message.get("role", "user"), "content": text})
        return history

    # Runs

    async def create_run(self, thread_id: str, assistant_id: str) -> dict:
        return await self._request(
            "POST", f"/threads/{thread_id}/runs",
            json={"assistant_id": assistant_id},
        )

    async def retrieve_run(self, thread_id: str, run_id: str) -> dict:
        return await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")

    async def wait_for_run(self, thread_id: str, run_id: str, max_attempts: int = 30, interval: float = 1.0) -> dict:
        """
        Poll a run until it reaches a terminal state.

        Returns:
            The last run payload; its status is "in_progress"/"queued" when
            the attempt budget ran out.
        """
        outcome = await poll_until(
            lambda: self.retrieve_run(thread_id, run_id),
            lambda run: run.get("status") in RUN_TERMINAL_STATES,
            max_attempts=max_attempts,
            interval=interval,
        )
        if not outcome.satisfied:
            logger.warning(f"Run {run_id} still {outcome.value.get('status')} after {outcome.attempts} polls")
        return outcome.value

    # Completions

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 200,
    ) -> Dict:
        """
        Chat completion.

        Returns dict with: answer, token_usage, error
        """
        try:
            response = await self.chat_client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except Exception as e:
            logger.warning(f"Chat completion failed (model={model}): {e}")
            return {"answer": None, "token_usage": None, "error": str(e)}

        answer = response.choices[0].message.content if response.choices else ""

        token_usage = {
            "prompt": response.usage.prompt_tokens,
            "completion": response.usage.completion_tokens,
            "total": response.usage.total_tokens
        } if response.usage else None

        return {
            "answer": answer,
            "token_usage": token_usage,
            "error": None
        }
