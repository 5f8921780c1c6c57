"""Receipt and invoice extraction through an OpenAI-compatible vision endpoint."""

from __future__ import annotations

import ipaddress
import json
import re
from collections.abc import Awaitable, Callable, Mapping
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from bookkeeping.config import settings
from bookkeeping.logger import get_logger, log_external_api
from bookkeeping.schemas.extraction import ExtractedDocument
from bookkeeping.utils.exceptions import ExtractionError

logger = get_logger(__name__)

# (document_url, mime_type) -> extracted fields
ExtractFn = Callable[[str, str], Awaitable[ExtractedDocument | Mapping[str, Any]]]

RECEIPT_PROMPT = """You are reading a receipt or invoice for a small business bookkeeping system.
Return ONLY a JSON object with these keys:
- "vendor": merchant name as printed, or null
- "amount": grand total as a number, or null
- "date": purchase or invoice date as YYYY-MM-DD, or null
- "tax": total tax as a number, or null
- "currency": ISO 4217 code, or null
- "confidence": your confidence in the extraction between 0 and 1
- "items": list of {"description", "amount", "quantity"} line items (may be empty)
- "category": a short expense category suggestion, or null
Do not include any text outside the JSON object."""

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def validate_external_url(url: str) -> bool:
    """Return True if the URL looks reachable by an external service.

    Rejects localhost, private/loopback/link-local IPs and dot-less internal
    service names (e.g. ``http://minio:9000``).
    """
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return False
    if not hostname or hostname.lower() == "localhost":
        return False
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return "." in hostname
    return not (ip.is_private or ip.is_loopback or ip.is_link_local)


def parse_json_content(content: str) -> dict[str, Any]:
    """Parse model output as JSON, falling back to a fenced ```json block."""
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        fenced = _FENCED_JSON.search(content)
        if not fenced:
            raise ExtractionError(f"Failed to parse JSON response: {exc}") from exc
        try:
            parsed = json.loads(fenced.group(1))
        except json.JSONDecodeError as inner:
            raise ExtractionError(f"Failed to parse JSON response: {inner}") from inner
    if not isinstance(parsed, dict):
        raise ExtractionError("Extraction response is not a JSON object")
    return parsed


class OpenRouterReceiptExtractor:
    """Extraction function backed by OpenRouter chat completions.

    Instances are callables with the ``(document_url, mime_type)`` signature
    expected by ``process_document``; any other callable with that shape can
    be used instead.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openrouter_api_key
        self.base_url = (base_url or settings.openrouter_base_url).rstrip("/")
        self.model = model or settings.extraction_model
        self.timeout = timeout or settings.extraction_timeout_seconds
        self._client = client

    async def __call__(self, document_url: str, mime_type: str) -> ExtractedDocument:
        if not self.api_key:
            raise ExtractionError("OpenRouter API key not configured")
        if not validate_external_url(document_url):
            logger.warning("Rejected internal/private document URL for extraction", url=document_url)
            raise ExtractionError("Document URL is not reachable by the extraction service")

        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": RECEIPT_PROMPT},
                        {"type": "image_url", "image_url": {"url": document_url}},
                    ],
                }
            ],
            "response_format": {"type": "json_object"},
        }
        data = await self._complete(payload)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ExtractionError("Extraction response has no message content") from exc
        if not content or not str(content).strip():
            raise ExtractionError(f"Model {self.model} returned empty response")

        try:
            extracted = ExtractedDocument.model_validate(parse_json_content(content))
        except ValidationError as exc:
            raise ExtractionError(f"Extraction response failed validation: {exc}") from exc

        logger.info(
            "Document extracted",
            model=self.model,
            mime_type=mime_type,
            has_amount=extracted.amount is not None,
            has_date=extracted.document_date is not None,
            confidence=extracted.confidence,
        )
        return extracted

    @log_external_api("openrouter")
    async def _complete(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "https://bookkeeping.local",
            "X-Title": "Bookkeeping Core",
        }
        url = f"{self.base_url}/chat/completions"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise ExtractionError(f"Extraction request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ExtractionError(
                f"Extraction service returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExtractionError("Extraction service returned a non-JSON body") from exc
