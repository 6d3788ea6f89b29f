# coding=utf-8
from __future__ import annotations

import asyncio
import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..languages import AUTO, is_translation_language, language_name
from .errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranslationResult:
    translated_text: str
    detected_source_lang: str
    target_lang: str
    confidence: float


def _validate_languages(source_lang: str, target_lang: str) -> None:
    if source_lang != AUTO and not is_translation_language(source_lang):
        raise GatewayError("translation", f"unsupported source language: {source_lang}")
    if not is_translation_language(target_lang):
        raise GatewayError("translation", f"unsupported target language: {target_lang}")


def _same_language(text: str, source_lang: str, target_lang: str) -> Optional[TranslationResult]:
    if source_lang != AUTO and source_lang == target_lang:
        return TranslationResult(
            translated_text=text,
            detected_source_lang=source_lang,
            target_lang=target_lang,
            confidence=1.0,
        )
    return None


class OpenAIAPITranslator:
    """
    Translation client using an OpenAI-compatible Chat Completions HTTP API.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        max_new_tokens: int = 2000,
        timeout_sec: float = 30.0,
        api_key: str = "",
    ) -> None:
        self.base_url = str(base_url or "").strip()
        if not self.base_url:
            raise ValueError("translation api base_url is empty")
        self.model = str(model or "").strip()
        if not self.model:
            raise ValueError("translation api model is empty")
        self.max_new_tokens = max(8, int(max_new_tokens))
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.api_key = str(api_key or "").strip()

        normalized = self.base_url.rstrip("/")
        if normalized.endswith("/chat/completions"):
            self.chat_url = normalized
        elif normalized.endswith("/v1"):
            self.chat_url = f"{normalized}/chat/completions"
        else:
            self.chat_url = f"{normalized}/v1/chat/completions"

    def _build_prompt(self, source_lang: str, target_lang: str) -> str:
        source = "" if source_lang == AUTO else f"from {language_name(source_lang)} "
        return (
            f"You are a real-time interpreter. Translate spoken language {source}to {language_name(target_lang)}.\n"
            "Output only the translation, with no notes or original text. Keep it natural and conversational. "
            "Translate incomplete sentences as they are."
        )

    def _extract_content(self, payload: Any) -> str:
        if not isinstance(payload, dict):
            return ""
        choices = payload.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, str):
                return content.strip()
            if isinstance(content, list):
                chunks = []
                for item in content:
                    if isinstance(item, str):
                        chunks.append(item)
                    elif isinstance(item, dict):
                        txt = item.get("text")
                        if isinstance(txt, str):
                            chunks.append(txt)
                return "".join(chunks).strip()
        return ""

    def translate_sync(self, text: str, source_lang: str, target_lang: str) -> str:
        src = str(text or "").strip()
        if not src:
            return ""
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self._build_prompt(source_lang, target_lang)},
                {"role": "user", "content": src},
            ],
            "max_tokens": self.max_new_tokens,
            "temperature": 0.3,
            "stream": False,
        }
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = urllib.request.Request(self.chat_url, data=data, headers=headers, method="POST")
        with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
        payload = json.loads(raw)
        out = self._extract_content(payload)
        if not out:
            raise ValueError("empty translation response")
        return out

    async def translate(self, text: str, source_lang: str, target_lang: str) -> TranslationResult:
        source = str(source_lang or AUTO).lower()
        target = str(target_lang or "").lower()
        _validate_languages(source, target)
        same = _same_language(text, source, target)
        if same is not None:
            return same

        started = time.monotonic()
        try:
            out = await asyncio.to_thread(self.translate_sync, text, source, target)
        except (urllib.error.URLError, OSError, ValueError) as e:
            logger.warning(
                "translation failed model=%s err=%s latency_ms=%d",
                self.model,
                e,
                int((time.monotonic() - started) * 1000),
            )
            raise GatewayError("translation", "translation request failed") from e

        logger.info(
            "translation ok model=%s source=%s target=%s chars=%d latency_ms=%d",
            self.model,
            source,
            target,
            len(str(text or "")),
            int((time.monotonic() - started) * 1000),
        )
        return TranslationResult(
            translated_text=out,
            detected_source_lang=source if source != AUTO else "en",
            target_lang=target,
            confidence=0.95,
        )


MOCK_TRANSLATIONS: Dict[str, Dict[str, str]] = {
    "Hello": {"es": "Hola", "fr": "Bonjour", "de": "Hallo", "it": "Ciao", "ja": "こんにちは", "zh": "你好"},
    "Thank you": {"es": "Gracias", "fr": "Merci", "de": "Danke", "it": "Grazie", "ja": "ありがとう", "zh": "谢谢"},
    "How are you?": {"es": "¿Cómo estás?", "fr": "Comment allez-vous?", "de": "Wie geht es Ihnen?"},
    "Hola": {"en": "Hello"},
    "Hola.": {"en": "Hello."},
    "Gracias": {"en": "Thank you"},
}


class MockTranslator:
    """Dictionary translator for development; unknown text gets a ``[Language]`` prefix."""

    def __init__(self, table: Optional[Dict[str, Dict[str, str]]] = None) -> None:
        self.table = MOCK_TRANSLATIONS if table is None else table

    async def translate(self, text: str, source_lang: str, target_lang: str) -> TranslationResult:
        source = str(source_lang or AUTO).lower()
        target = str(target_lang or "").lower()
        _validate_languages(source, target)
        same = _same_language(text, source, target)
        if same is not None:
            return same
        key = str(text or "").strip()
        translated = self.table.get(key, {}).get(target)
        if translated is None:
            translated = f"[{language_name(target)}] {key}"
        return TranslationResult(
            translated_text=translated,
            detected_source_lang=source if source != AUTO else "en",
            target_lang=target,
            confidence=0.93,
        )
