from __future__ import annotations

from typing import Any, Protocol

from openai import OpenAI

from estatecrm.core.config import get_settings


class ChatCompletionClient(Protocol):
    def complete(self, system_prompt: str, user_prompt: str, *, json_mode: bool = True) -> str: ...


class OpenAIChatClient:
    def __init__(self, api_key: str, model: str, timeout: float) -> None:
        self.model = model
        self._client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def complete(self, system_prompt: str, user_prompt: str, *, json_mode: bool = True) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.7,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = self._client.chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""


_client: OpenAIChatClient | None = None


def get_chat_client() -> ChatCompletionClient | None:
    global _client

    settings = get_settings()
    if not settings.openai_api_key:
        return None
    if _client is None or _client.model != settings.openai_model:
        _client = OpenAIChatClient(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout=settings.openai_timeout_seconds,
        )
    return _client
