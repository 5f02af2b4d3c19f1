import json
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


class LLMClient:
    """Minimal OpenAI-compatible chat client."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if isinstance(content, str):
                if not content.strip():
                    continue
                cleaned_content: Any = content
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": cleaned_content})
        return sanitized

    def _normalize_error_text(self, detail: str) -> str:
        text = detail or ""
        for _ in range(2):
            try:
                parsed = json.loads(text)
            except Exception:
                break
            if isinstance(parsed, dict):
                found = False
                for key in ("error", "detail", "message"):
                    val = parsed.get(key)
                    if isinstance(val, dict):
                        val = val.get("message")
                    if isinstance(val, str) and val.strip():
                        text = val
                        found = True
                        break
                if not found:
                    break
            elif isinstance(parsed, str):
                text = parsed
            else:
                break
        return text

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        response_format: Optional[dict] = None,
        timeout: Optional[float] = None,
        base_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not str(model or "").strip():
            raise ValueError("model is required")
        url = f"{(base_url or self.base_url).rstrip('/')}/chat/completions"
        payload: Dict[str, Any] = {"model": model, "messages": cleaned, "stream": False}
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if response_format:
            payload["response_format"] = response_format
        request_kwargs: Dict[str, Any] = {"json": payload, "headers": self._headers()}
        if timeout is not None:
            request_kwargs["timeout"] = timeout
        try:
            resp = await self.client.post(url, **request_kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response) if exc.response is not None else ""
            logger.warning(
                "[llm] %s rejected request (%s): %s",
                model,
                exc.response.status_code if exc.response is not None else "?",
                self._normalize_error_text(detail)[:500],
            )
            raise
        data = resp.json()
        try:
            choices = data.get("choices") or []
            if choices:
                message = choices[0].get("message") or {}
                content = message.get("content")
                if content is None or content == "":
                    fallback = message.get("reasoning") or message.get("reasoning_content")
                    if fallback:
                        message["content"] = fallback
                        choices[0]["message"] = message
        except Exception:
            pass
        return data

    async def close(self) -> None:
        await self.client.aclose()


def message_content(response: Any) -> str:
    """Text of the first choice of a chat completion payload, or ''."""
    if not isinstance(response, dict):
        return ""
    choices = response.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    return content if isinstance(content, str) else ""
