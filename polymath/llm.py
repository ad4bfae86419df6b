"""
Polymath Brain - LLM Capability

``generate(prompt) -> text`` and ``generate_image(prompt) -> url`` behind one
small interface, with a process-wide request pacer and rate-limit retry.
Agents never talk to LangChain / OpenAI directly; they go through
``safe_invoke_llm`` which turns any failure or malformed JSON into ``None``.
"""

from __future__ import annotations

import json
import re
import threading
import time
from typing import Any, Callable, Dict, Optional

import openai
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from loguru import logger


PLACEHOLDER_IMAGE_URL = "https://via.placeholder.com/1024x1024?text=Image+Mockup"
PROMPT_PREVIEW_CHARS = 240


class LLMClient:
    """Text / image generation capability"""

    enabled: bool = True

    def generate(self, prompt: str, system: Optional[str] = None) -> str:
        raise NotImplementedError

    def generate_image(self, prompt: str) -> str:
        raise NotImplementedError


class NullLLMClient(LLMClient):
    """Used when no API key is configured; agents take their fallbacks"""

    enabled = False

    def generate(self, prompt: str, system: Optional[str] = None) -> str:
        return f"LLM disabled. Prompt preview: {prompt[:PROMPT_PREVIEW_CHARS]}"

    def generate_image(self, prompt: str) -> str:
        return PLACEHOLDER_IMAGE_URL


class ChatLLMClient(LLMClient):
    """
    OpenAI-compatible chat model through LangChain, images through the
    ``openai`` SDK.
    """

    def __init__(
        self,
        api_key: str,
        api_base: Optional[str] = None,
        chat_model: str = "gpt-4o-mini",
        image_model: str = "dall-e-3",
        temperature: float = 0.7,
        request_timeout: float = 45.0,
        max_tokens: int = 4000,
        chat: Optional[Any] = None,
        images: Optional[Any] = None,
    ):
        self.chat_model = chat_model
        self.image_model = image_model
        # Rate-limit retries happen in PacedLLMClient, not inside the SDKs
        self._chat = chat or ChatOpenAI(
            model=chat_model,
            temperature=temperature,
            api_key=api_key,
            base_url=api_base,
            timeout=request_timeout,
            max_tokens=max_tokens,
            max_retries=0,
        )
        self._images = images or openai.OpenAI(
            api_key=api_key,
            base_url=api_base,
            timeout=request_timeout,
            max_retries=0,
        ).images

    def generate(self, prompt: str, system: Optional[str] = None) -> str:
        messages = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))
        response = self._chat.invoke(messages)
        content = getattr(response, "content", response)
        return content if isinstance(content, str) else str(content)

    def generate_image(self, prompt: str) -> str:
        response = self._images.generate(
            model=self.image_model,
            prompt=prompt,
            n=1,
            size="1024x1024",
        )
        data = getattr(response, "data", None) or []
        return (getattr(data[0], "url", None) or "") if data else ""


class RequestPacer:
    """
    Serialises outbound calls and keeps ``min_interval`` seconds between the
    end of one request and the start of the next.
    """

    def __init__(
        self,
        min_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_finished: Optional[float] = None

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        with self._lock:
            if self._last_finished is not None:
                wait = self.min_interval - (self._clock() - self._last_finished)
                if wait > 0:
                    self._sleep(wait)
            try:
                return fn(*args, **kwargs)
            finally:
                self._last_finished = self._clock()


_default_pacer = RequestPacer()


def get_default_pacer() -> RequestPacer:
    """The process-wide pacer shared by every session"""
    return _default_pacer


def configure_default_pacer(min_interval: float) -> RequestPacer:
    _default_pacer.min_interval = max(0.0, float(min_interval))
    return _default_pacer


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, openai.RateLimitError):
        return True
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(getattr(error, "response", None), "status_code", None)
    if status == 429:
        return True
    message = str(error).lower()
    return "rate limit" in message or "429" in message


class PacedLLMClient(LLMClient):
    """
    Wraps a client with the shared pacer; retries rate-limit failures only,
    up to ``max_attempts`` with exponential backoff (1s, 2s, ...).
    """

    def __init__(
        self,
        inner: LLMClient,
        pacer: Optional[RequestPacer] = None,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inner = inner
        self.pacer = pacer or get_default_pacer()
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return getattr(self.inner, "enabled", True)

    def generate(self, prompt: str, system: Optional[str] = None) -> str:
        return self._with_retry(self.inner.generate, prompt, system)

    def generate_image(self, prompt: str) -> str:
        return self._with_retry(self.inner.generate_image, prompt)

    def _with_retry(self, fn: Callable[..., Any], *args) -> Any:
        for attempt in range(self.max_attempts):
            try:
                return self.pacer.call(fn, *args)
            except Exception as e:
                if not is_rate_limit_error(e) or attempt == self.max_attempts - 1:
                    raise
                delay = self.backoff_base * (2 ** attempt)
                logger.warning(f"Rate limited (attempt {attempt + 1}/{self.max_attempts}), retrying in {delay:.1f}s")
                self._sleep(delay)
        raise RuntimeError("unreachable")


_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*|\s*```$")


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", (text or "").strip()).strip()


def _clean_json_response(text: str) -> str:
    """Ultra-robust JSON cleaner"""
    if not text:
        return "{}"
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL)
    text = strip_code_fences(text)
    # 尝试找到第一个 { 和最后一个 }
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1:
        text = text[start:end + 1]
    return text.strip()


def parse_json_response(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Outermost JSON object in an LLM reply, or None"""
    if not text or not text.strip():
        return None
    try:
        data = json.loads(_clean_json_response(text))
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def safe_generate(llm: Optional[LLMClient], prompt: str, system: Optional[str] = None) -> str:
    """Raw text, or "" when the capability is disabled or fails"""
    if llm is None or not getattr(llm, "enabled", True):
        return ""
    try:
        return llm.generate(prompt, system) or ""
    except Exception as e:
        logger.warning(f"⚠️ LLM Invoke Failed: {e}")
        return ""


def safe_invoke_llm(
    llm: Optional[LLMClient],
    prompt: str,
    system: Optional[str] = None,
    default: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """
    ⚡ 安全调用 LLM 的包装器
    Any transport error, empty reply or non-JSON reply yields ``default``.
    """
    content = safe_generate(llm, prompt, system)
    if not content:
        return default
    data = parse_json_response(content)
    if data is None:
        logger.warning(f"⚠️ JSON Parse Failed. Content: {content[:50]}...")
        return default
    return data


__all__ = [
    "PLACEHOLDER_IMAGE_URL",
    "LLMClient",
    "NullLLMClient",
    "ChatLLMClient",
    "RequestPacer",
    "get_default_pacer",
    "configure_default_pacer",
    "is_rate_limit_error",
    "PacedLLMClient",
    "strip_code_fences",
    "parse_json_response",
    "safe_generate",
    "safe_invoke_llm",
]
