import base64
import json
import logging
import re
import textwrap
import time
from typing import Any, Dict, List, Optional

import httpx

from ..config import Settings
from ..errors import InferenceError

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


class OllamaVisionClient:
    """Field extraction with a vision model served by Ollama (``/api/chat``).

    Output is requested as JSON with a low temperature; whatever text comes
    back is reduced to exactly the requested fields by ``parse_field_map``.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout_s: float = 300.0,
        temperature: float = 0.1,
        num_predict: int = 2048,
        logger: logging.Logger | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.num_predict = num_predict
        self.log = logger or logging.getLogger(__name__)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, logger: logging.Logger | None = None) -> "OllamaVisionClient":
        return cls(
            settings.ollama_host,
            settings.ollama_model,
            timeout_s=settings.ollama_request_timeout,
            temperature=settings.ollama_temperature,
            num_predict=settings.ollama_num_predict,
            logger=logger,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout_s, transport=self._transport)

    def recognize(self, image: bytes, content_type: str, schema: List[str]) -> Dict[str, Any]:
        self.log.debug("Recognizing %d bytes of %s with %s, fields=%s", len(image), content_type, self.model, schema)
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": build_prompt(schema),
                    "images": [base64.b64encode(image).decode("ascii")],
                }
            ],
            "stream": False,
            "format": "json",
            "options": {
                "temperature": self.temperature,
                "num_predict": self.num_predict,
            },
        }

        started = time.monotonic()
        try:
            with self._client() as client:
                r = client.post("/api/chat", json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPStatusError as exc:
            raise InferenceError(
                f"ollama returned status {exc.response.status_code}: {exc.response.text[:500]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise InferenceError(f"failed to send request to Ollama: {exc}") from exc
        except ValueError as exc:
            raise InferenceError(f"failed to decode Ollama response: {exc}") from exc

        self.log.debug("Ollama answered in %.1fs", time.monotonic() - started)

        if not isinstance(data, dict):
            raise InferenceError(f"unexpected Ollama response: {str(data)[:200]}")
        if data.get("error"):
            raise InferenceError(f"ollama error: {data['error']}")

        message = data.get("message")
        content = (message.get("content") if isinstance(message, dict) else None) or ""
        self.log.debug("Raw model output: %s", content)
        return parse_field_map(content, schema)

    def check_health(self) -> None:
        try:
            with self._client() as client:
                client.get("/api/tags").raise_for_status()
        except httpx.HTTPError as exc:
            raise InferenceError(f"Ollama health check failed: {exc}") from exc

    def check_model(self) -> None:
        try:
            with self._client() as client:
                r = client.get("/api/tags")
                r.raise_for_status()
                models = r.json().get("models", [])
        except (httpx.HTTPError, ValueError) as exc:
            raise InferenceError(f"failed to list Ollama models: {exc}") from exc

        family = self.model.split(":")[0]
        if not any(m.get("name", "").startswith(family) for m in models):
            raise InferenceError(f"model {self.model} not found, run: ollama pull {self.model}")


def build_prompt(schema: List[str]) -> str:
    fields = json.dumps(schema, ensure_ascii=False)
    prompt = f"""
    You are a document recognition assistant. Analyze the provided document image and extract the requested information.

    TASK: Extract the following fields from the document:
    {fields}

    INSTRUCTIONS:
    1. Carefully analyze the document image.
    2. Extract a value for each requested field.
    3. If a field is not found or not applicable, use null.
    4. Dates use ISO 8601 format (YYYY-MM-DD).
    5. Monetary amounts are numeric values only.
    6. Return ONLY valid JSON, no additional text.

    Example for fields ["invoice_number", "date", "total_amount"]:
    {{"invoice_number": "INV-2024-001", "date": "2024-01-15", "total_amount": 1500.00}}

    Now analyze the document and extract: {", ".join(schema)}
    """
    return textwrap.dedent(prompt).strip()


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First well-formed JSON object in ``text``, ignoring prose and code fences."""
    if not text:
        return None
    cleaned = _FENCE.sub("", text).strip()
    decoder = json.JSONDecoder()
    start = cleaned.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(cleaned, start)
        except json.JSONDecodeError:
            start = cleaned.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = cleaned.find("{", start + 1)
    return None


def parse_field_map(text: str, schema: List[str]) -> Dict[str, Any]:
    """Reduce raw model output to exactly the requested fields.

    Fields the model did not return are present with ``None``; keys the
    model invented are dropped.
    """
    obj = extract_json_object(text)
    if obj is None:
        raise InferenceError("no valid JSON object found in model output")
    return {field: obj.get(field) for field in schema}
