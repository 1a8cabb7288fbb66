# ==== ANOMALY NARRATIVE SYNTHESIS ==== #

"""
Natural-language summaries of anomaly scan results.

The engine hands the top-ranked anomalies to a ``NarrativeSynthesizer`` and
treats whatever comes back as optional decoration: a missing provider, a
timeout or an error all mean "no narrative". The production implementation
talks to an OpenAI-compatible chat completions API over httpx.
"""

import json
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends

from anomaly_engine.settings import Settings, get_settings, settings as default_settings
from anomaly_engine.observability.logging import get_logger
from anomaly_engine.observability.tracing import get_tracer
from anomaly_engine.observability.metrics import (
    ai_requests_total,
    ai_tokens_total,
    ai_failures_total
)


# ==== MODULE INITIALIZATION ==== #


logger = get_logger(__name__)
tracer = get_tracer(__name__)

SYSTEM_PROMPT = (
    "You are a forensic accounting AI. Given invoice anomalies, provide a 3-4 "
    "sentence executive summary. Highlight the most concerning patterns and "
    "recommend priorities for investigation. Be specific."
)


# ==== SYNTHESIZER INTERFACE ==== #


class NarrativeSynthesizer(ABC):
    """Turns a short list of anomaly summaries into free text."""

    model_version: Optional[str] = None

    @abstractmethod
    async def synthesize(self, findings: List[Dict[str, Any]]) -> str:
        """
        Summarize anomaly findings.

        Args:
            findings: Reduced anomalies with type, severity, vendor_name,
                amount and description

        Returns:
            str: Narrative text, possibly empty
        """


# ==== CHAT COMPLETIONS IMPLEMENTATION ==== #


class AINarrativeSynthesizer(NarrativeSynthesizer):
    """
    Narrative synthesizer backed by an OpenAI-compatible chat API.

    A single request is made per call; errors propagate to the caller,
    which decides how to degrade.
    """

    provider = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        config: Optional[Settings] = None
    ):
        config = config or default_settings
        self.api_key = api_key or config.AI_API_KEY
        self.base_url = (base_url or config.AI_PROVIDER_BASE_URL).rstrip("/")
        self.model = model or config.AI_MODEL
        self.timeout = timeout or config.AI_TIMEOUT_SECONDS
        self.model_version = self.model
        # Prometheus labels must match [a-zA-Z_:][a-zA-Z0-9_:]*
        self.model_label = re.sub(r'[^a-zA-Z0-9_]', '_', self.model)

    async def synthesize(self, findings: List[Dict[str, Any]]) -> str:
        if not self.api_key:
            raise RuntimeError("AI provider disabled")

        with tracer.start_as_current_span("ai_anomaly_narrative") as span:
            span.set_attribute("provider", self.provider)
            span.set_attribute("model", self.model)
            span.set_attribute("findings_count", len(findings))

            start_time = time.time()
            try:
                content = await self._make_request(findings)
            except Exception as e:
                ai_failures_total.labels(
                    provider=self.provider,
                    error_type=type(e).__name__
                ).inc()
                span.set_attribute("error", str(e))
                raise

            span.set_attribute("processing_time_ms", int((time.time() - start_time) * 1000))
            ai_requests_total.labels(
                provider=self.provider,
                model=self.model_label,
                operation="anomaly_narrative"
            ).inc()
            return content

    async def _make_request(self, findings: List[Dict[str, Any]]) -> str:
        """POST one chat completion and return the first choice's content."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(findings)},
            ],
            "temperature": 0.2,
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=headers
            )
            response.raise_for_status()
            data = response.json()

        usage = data.get("usage") or {}
        for token_type in ("prompt", "completion"):
            ai_tokens_total.labels(
                provider=self.provider,
                model=self.model_label,
                type=token_type
            ).inc(usage.get(f"{token_type}_tokens", 0))

        choices = data.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or ""


# ==== DEPENDENCY PROVIDER ==== #


def get_narrative_synthesizer(
    config: Settings = Depends(get_settings)
) -> Optional[NarrativeSynthesizer]:
    """
    FastAPI dependency returning the configured synthesizer.

    Args:
        config (Settings): Settings for this request

    Returns:
        Optional[NarrativeSynthesizer]: None when no AI provider is configured
    """
    if not config.narrative_enabled:
        return None
    return AINarrativeSynthesizer(config=config)
