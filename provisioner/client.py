"""Minimal client for the OpenAI-compatible API served by vLLM.

Used for the readiness check and the post-install smoke test; it is not
a general SDK.
"""

import logging
from typing import List, Optional

import requests

logger = logging.getLogger(__name__)


class InferenceClient:
    def __init__(self, base_url: str, timeout: float = 30.0, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path: str, payload: dict) -> dict:
        resp = requests.post(
            f"{self.base_url}{path}",
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def list_models(self) -> List[str]:
        """GET /v1/models, returning the served model ids."""
        resp = requests.get(f"{self.base_url}/v1/models", headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        return [m.get("id") for m in resp.json().get("data", [])]

    def chat(
        self,
        model: str,
        messages: List[dict],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
    ) -> dict:
        """POST /v1/chat/completions (non-streaming)."""
        payload = {"model": model, "messages": messages, "stream": False}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature
        if top_p is not None:
            payload["top_p"] = top_p
        return self._post("/v1/chat/completions", payload)

    def complete(self, model: str, prompt: str, max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None) -> dict:
        """POST /v1/completions (non-streaming)."""
        payload = {"model": model, "prompt": prompt, "stream": False}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature
        return self._post("/v1/completions", payload)


def smoke_test(base_url: str, model: str) -> tuple[bool, str]:
    """Ask the served model to say hello.

    Returns:
        Tuple of (success, message for the user)
    """
    client = InferenceClient(base_url)
    try:
        models = client.list_models()
        if model not in models:
            return False, f"{model} is not served (available: {', '.join(models) or 'none'})"
        reply = client.chat(model, [{"role": "user", "content": "Say hello!"}], max_tokens=32)
    except requests.HTTPError as e:
        return False, f"API returned {e.response.status_code}: {e.response.text[:200]}"
    except requests.RequestException as e:
        return False, f"Failed to connect to {base_url}: {e}"

    try:
        content = reply["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return False, f"Unexpected response: {str(reply)[:200]}"
    logger.debug(f"Smoke test reply: {content}")
    return True, content.strip()
