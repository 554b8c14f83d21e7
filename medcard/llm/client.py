"""Document analyzer over OpenRouter's chat-completions API.

Files are read back from blob storage and sent inline as data URLs: images
as image_url parts, PDFs as file parts. A multi-page submission is one
request with every page in order, never one request per page.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import time
from typing import Any

import httpx

from medcard.config import settings
from medcard.events import emit
from medcard.llm.parsing import parse_analysis_json
from medcard.llm.prompts import build_analysis_prompt, build_multi_page_prompt
from medcard.schemas.analysis import AnalysisResult
from medcard.schemas.events import EventType, SystemEvent
from medcard.schemas.intake import StoredFile
from medcard.storage.blob import LocalBlobStore

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"


class AnalyzerError(Exception):
    """Raised when the analyzer cannot produce any response."""


class DocumentAnalyzer:
    """Async client for medical document analysis.

    Raises AnalyzerError, AnalysisParseError or httpx.HTTPError; the intake
    orchestrator turns any of them into AnalysisResult.fallback().
    """

    def __init__(
        self,
        blob_store: LocalBlobStore,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._blobs = blob_store
        self._model = settings.llm.analysis_model
        self._client = client or httpx.AsyncClient(
            base_url=settings.llm.openrouter_base_url,
            timeout=httpx.Timeout(float(settings.llm.analysis_timeout), connect=10.0),
            headers={
                "Authorization": f"Bearer {settings.llm.openrouter_api_key}",
                "HTTP-Referer": settings.patient.app_url,
                "X-Title": settings.llm.app_title,
            },
        )

    async def analyze(self, url: str, mime_type: str) -> AnalysisResult:
        """Analyze one image or PDF."""
        part = await self._content_part(StoredFile(url=url, mime_type=mime_type))
        raw = await self._complete(
            [part, {"type": "text", "text": build_analysis_prompt()}],
            max_tokens=settings.llm.single_max_tokens,
            page_count=1,
        )
        return parse_analysis_json(raw)

    async def analyze_multiple(self, pages: list[StoredFile]) -> AnalysisResult:
        """Analyze several pages, in order, as one document."""
        if not pages:
            raise AnalyzerError("No pages to analyze")
        if len(pages) == 1:
            return await self.analyze(pages[0].url, pages[0].mime_type)

        parts = [await self._content_part(page) for page in pages]
        parts.append({"type": "text", "text": build_multi_page_prompt(len(pages))})
        raw = await self._complete(
            parts,
            max_tokens=settings.llm.multi_max_tokens,
            page_count=len(pages),
        )
        return parse_analysis_json(raw)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    # ── Internals ────────────────────────────────────────────────────

    async def _content_part(self, page: StoredFile) -> dict[str, Any]:
        data = await self._blobs.get(page.url)
        data_url = f"data:{page.mime_type};base64,{base64.b64encode(data).decode('ascii')}"
        if page.mime_type.startswith("image/"):
            return {"type": "image_url", "image_url": {"url": data_url}}
        if page.mime_type == PDF_MIME:
            return {
                "type": "file",
                "file": {"filename": page.file_name or "document.pdf", "file_data": data_url},
            }
        raise AnalyzerError(f"Unsupported file type: {page.mime_type}")

    async def _complete(self, content: list[dict[str, Any]], max_tokens: int, page_count: int) -> str:
        prompt_text = content[-1]["text"]
        prompt_hash = hashlib.md5(prompt_text.encode()).hexdigest()[:8]

        await emit(SystemEvent(
            event_type=EventType.LLM_REQUEST,
            data={"model": self._model, "prompt_hash": prompt_hash, "pages": page_count},
            source_module="llm.client",
        ))

        start = time.monotonic()
        try:
            response = await self._client.post(
                "/chat/completions",
                json={
                    "model": self._model,
                    "max_tokens": max_tokens,
                    "messages": [{"role": "user", "content": content}],
                },
            )
            response.raise_for_status()
            data: dict[str, Any] = response.json()
        except httpx.TimeoutException:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            await emit(SystemEvent(
                event_type=EventType.LLM_ERROR,
                data={"model": self._model, "error": "timeout", "latency_ms": elapsed_ms},
                source_module="llm.client",
            ))
            logger.error("Analysis timeout after %dms for model %s", elapsed_ms, self._model)
            raise
        except httpx.HTTPError as exc:
            await emit(SystemEvent(
                event_type=EventType.LLM_ERROR,
                data={"model": self._model, "error": str(exc)},
                source_module="llm.client",
            ))
            logger.exception("Analysis HTTP error for model %s", self._model)
            raise

        elapsed_ms = int((time.monotonic() - start) * 1000)
        choices = data.get("choices") or []
        text = (choices[0].get("message") or {}).get("content") if choices else None
        if not text:
            raise AnalyzerError("No response from analyzer")

        usage = data.get("usage") or {}
        await emit(SystemEvent(
            event_type=EventType.LLM_RESPONSE,
            data={
                "model": self._model,
                "latency_ms": elapsed_ms,
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "pages": page_count,
            },
            source_module="llm.client",
        ))
        logger.info(
            "Analysis response: model=%s latency=%dms chars=%d",
            self._model,
            elapsed_ms,
            len(text),
        )
        return text
