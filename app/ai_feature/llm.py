"""
LLM CLIENT - talk to a chat-completions endpoint

Works with:
    - Azure OpenAI / AI Foundry deployments (api-key header, api-version query)
    - Any OpenAI-compatible server (bearer token, /chat/completions)

Everything else in ai_feature only needs `complete(messages)`, so tests
swap this class for a scripted fake.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import settings
from app.ai_feature.errors import LLMError

logger = logging.getLogger(__name__)


class LLMClient:
    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        deployment: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.endpoint = (endpoint or settings.LLM_ENDPOINT or "").rstrip("/")
        self.api_key = api_key or settings.LLM_API_KEY
        self.deployment = deployment or settings.LLM_DEPLOYMENT
        self.api_version = (
            api_version if api_version is not None else settings.LLM_API_VERSION
        )
        self.timeout = timeout or settings.LLM_TIMEOUT_SECONDS

    def _request_target(self) -> tuple[str, Dict[str, str], Dict[str, str]]:
        """Build url, headers and query params for the configured flavour."""
        headers = {"Content-Type": "application/json"}
        params: Dict[str, str] = {}

        if self.api_version:
            url = (
                f"{self.endpoint}/openai/deployments/{self.deployment}"
                "/chat/completions"
            )
            params["api-version"] = self.api_version
            if self.api_key:
                headers["api-key"] = self.api_key
        else:
            url = f"{self.endpoint}/chat/completions"
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"

        return url, headers, params

    async def complete(
        self, messages: List[Dict[str, str]], *, json_mode: bool = False
    ) -> str:
        """
        Send a chat completion and return the assistant text.

        Args:
            messages: [{"role": "system"|"user"|"assistant", "content": "..."}]
            json_mode: ask the model for a JSON object reply

        Raises:
            LLMError: not configured, transport failure, non-2xx or empty reply
        """
        if not self.endpoint:
            raise LLMError("model endpoint is not configured")

        url, headers, params = self._request_target()
        body: Dict[str, Any] = {"messages": messages, "temperature": 0}
        if not self.api_version:
            body["model"] = self.deployment
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url, json=body, headers=headers, params=params
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Model call failed with {e.response.status_code}")
            raise LLMError(
                f"model endpoint returned {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Model call failed: {e}")
            raise LLMError(f"model endpoint unreachable: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("model reply has no message content") from e

        if not content:
            raise LLMError("model reply is empty")
        return content


# ============================================================================
# Parsing helpers for model output
# ============================================================================

_FENCE = re.compile(r"```(?:json|sql)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)


def strip_fence(text: str) -> str:
    raw = (text or "").strip()
    match = _FENCE.search(raw)
    return match.group(1).strip() if match else raw


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """
    Pull one JSON object out of a model reply.

    Accepts fenced blocks and objects surrounded by prose.
    Returns None when nothing parses to a dict.
    """
    raw = strip_fence(text)
    candidates = [raw]
    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])

    for candidate in candidates:
        try:
            obj = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


def extract_sql(text: str) -> str:
    """
    Clean a model reply down to the SQL statement.

    Example:
        "Here you go:\\n```sql\\nSELECT 1;\\n```\\nNotes: ..." -> "SELECT 1"
    """
    sql = strip_fence(text)
    sql = re.split(r"(?im)^\s*notes?\s*:", sql, maxsplit=1)[0].strip()
    match = re.search(r"(?is)\b(with|select)\b", sql)
    if match:
        sql = sql[match.start() :].strip()
    return sql.rstrip().rstrip(";").strip()


_client: Optional[LLMClient] = None


def get_llm() -> LLMClient:
    """FastAPI dependency: one client per process."""
    global _client
    if _client is None:
        _client = LLMClient()
    return _client
