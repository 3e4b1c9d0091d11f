"""Provider-agnostic LLM client with retry, throttling and an offline mock."""

from __future__ import annotations

import json
import logging
import os
import random
import re
import time
from dataclasses import dataclass

log = logging.getLogger(__name__)


class LLMServiceError(RuntimeError):
    """Raised when an LLM call fails after retries."""


@dataclass(frozen=True)
class LLMResponse:
    text: str
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class ContextRow:
    chunk_id: str
    page: str
    source: str
    text: str


class LLMClient:
    """Abstract base class for LLM providers."""

    provider: str = "base"
    _last_call_ts: float = 0.0

    def _throttle(self) -> None:
        from evidence_rag.config import LLM_MIN_CALL_INTERVAL_S

        if LLM_MIN_CALL_INTERVAL_S <= 0:
            return
        elapsed = time.time() - self._last_call_ts
        if elapsed < LLM_MIN_CALL_INTERVAL_S:
            time.sleep(LLM_MIN_CALL_INTERVAL_S - elapsed)

    def _sleep_backoff(self, attempt: int) -> None:
        from evidence_rag.config import LLM_BACKOFF_BASE_S, LLM_BACKOFF_MAX_S

        base = max(0.1, LLM_BACKOFF_BASE_S)
        max_wait = max(base, LLM_BACKOFF_MAX_S)
        wait = min(max_wait, base * (2**attempt))
        jitter = random.uniform(0.0, base)  # nosec B311
        time.sleep(wait + jitter)

    def _is_retryable_error(self, exc: Exception) -> tuple[bool, str]:
        name = exc.__class__.__name__
        status_code = getattr(exc, "status_code", None)
        body = str(exc).lower()
        retryable_status = {408, 409, 429, 500, 502, 503, 504}
        retryable_name_markers = (
            "RateLimitError",
            "APITimeoutError",
            "APIConnectionError",
            "InternalServerError",
        )

        if status_code in retryable_status:
            return True, f"status={status_code}"
        if any(marker in name for marker in retryable_name_markers):
            return True, name
        if "rate limit" in body or "too many requests" in body or "timeout" in body:
            return True, name
        return False, name

    def _chat_completion_with_retry(self, client, kwargs: dict):
        from evidence_rag.config import LLM_MAX_RETRIES

        attempts = max(1, LLM_MAX_RETRIES + 1)
        for attempt in range(attempts):
            try:
                self._throttle()
                resp = client.chat.completions.create(**kwargs)
                self._last_call_ts = time.time()
                return resp
            except Exception as exc:
                retryable, reason = self._is_retryable_error(exc)
                if not retryable or attempt == attempts - 1:
                    raise LLMServiceError(
                        f"{self.__class__.__name__} failed after "
                        f"{attempt + 1}/{attempts} attempts: {exc}"
                    ) from exc
                log.warning(
                    "%s transient error (attempt %d/%d, reason=%s). Retrying...",
                    self.__class__.__name__,
                    attempt + 1,
                    attempts,
                    reason,
                )
                self._sleep_backoff(attempt)

        raise LLMServiceError(f"{self.__class__.__name__} failed unexpectedly.")

    def _messages(self, prompt: str, system: str) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return messages

    @staticmethod
    def _to_response(resp) -> LLMResponse:
        usage = resp.usage
        return LLMResponse(
            text=resp.choices[0].message.content or "",
            input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
        )

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        raise NotImplementedError

    def generate_json(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict:
        response = self.generate(
            prompt=prompt,
            system=system,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = response.text.strip()
        # Handles JSON wrapped in markdown fences.
        if text.startswith("```"):
            text = text.strip("`")
            text = text.replace("json", "", 1).strip()
        return json.loads(text)


class GrokClient(LLMClient):
    provider = "grok"

    def __init__(self) -> None:
        from openai import OpenAI

        from evidence_rag.config import GROK_API_KEY, GROK_ENDPOINT

        if not GROK_API_KEY:
            raise ValueError("GROK_API_KEY is required when LLM_PROVIDER=grok.")
        self._client = OpenAI(base_url=GROK_ENDPOINT, api_key=GROK_API_KEY)

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        from evidence_rag.config import GENERATION_TEMPERATURE, GROK_MODEL

        kwargs: dict = {
            "model": model or GROK_MODEL,
            "messages": self._messages(prompt, system),
            "temperature": temperature if temperature is not None else GENERATION_TEMPERATURE,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        return self._to_response(self._chat_completion_with_retry(self._client, kwargs))


class AzureOpenAIClient(LLMClient):
    provider = "azure_openai"

    def __init__(self) -> None:
        from openai import AzureOpenAI

        from evidence_rag.config import AZURE_API_KEY, AZURE_API_VERSION, AZURE_ENDPOINT

        if not AZURE_API_KEY:
            raise ValueError("AZURE_API_KEY is required when LLM_PROVIDER=azure_openai.")
        if not AZURE_ENDPOINT:
            raise ValueError("AZURE_ENDPOINT is required when LLM_PROVIDER=azure_openai.")

        self._client = AzureOpenAI(
            api_version=AZURE_API_VERSION,
            azure_endpoint=AZURE_ENDPOINT,
            api_key=AZURE_API_KEY,
        )

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        from evidence_rag.config import AZURE_MODEL, GENERATION_TEMPERATURE

        deploy = model or AZURE_MODEL
        kwargs: dict = {"model": deploy, "messages": self._messages(prompt, system)}
        # Reasoning deployments reject temperature and use max_completion_tokens.
        if deploy.startswith("o"):
            if max_tokens is not None:
                kwargs["max_completion_tokens"] = max_tokens
        else:
            kwargs["temperature"] = (
                temperature if temperature is not None else GENERATION_TEMPERATURE
            )
            if max_tokens is not None:
                kwargs["max_tokens"] = max_tokens
        return self._to_response(self._chat_completion_with_retry(self._client, kwargs))


class MockOfflineClient(LLMClient):
    """Deterministic stand-in that answers from the context blocks in the prompt.

    Answers follow the mandatory scaffold and cite verbatim excerpts, so the
    whole pipeline can run without network access or API keys.
    """

    provider = "mock"
    max_cited_rows = 6

    _ROW = re.compile(
        r"\[\d+\]\s+chunk_id=(?P<chunk_id>\S+)\s+page=(?P<page>\S+)[^\n]*\n"
        r"\s*source=(?P<source>[^\n]*)\n\s*text=(?P<text>[^\n]*)"
    )

    def _extract_context_rows(self, prompt: str) -> list[ContextRow]:
        return [
            ContextRow(
                chunk_id=match.group("chunk_id"),
                page=match.group("page"),
                source=match.group("source").strip(),
                text=" ".join(match.group("text").split()),
            )
            for match in self._ROW.finditer(prompt)
        ]

    def _quote(self, text: str) -> str:
        """Leading words of the text, stopping at the first sentence end."""
        words: list[str] = []
        for word in text.split():
            if '"' in word or "[" in word or "]" in word:
                break
            if word[-1] in ".!?":
                stripped = word.rstrip(".!?")
                if stripped and not re.search(r"[.!?]", stripped):
                    words.append(stripped)
                break
            words.append(word)
            if len(words) >= 12:
                break
        return " ".join(words).strip()

    def _pick_rows(self, rows: list[ContextRow]) -> list[ContextRow]:
        """Round-robin across sources so several documents get cited."""
        by_source: dict[str, list[ContextRow]] = {}
        for row in rows:
            if self._quote(row.text):
                by_source.setdefault(row.source, []).append(row)
        picked: list[ContextRow] = []
        depth = 0
        while len(picked) < self.max_cited_rows and any(len(v) > depth for v in by_source.values()):
            for source_rows in by_source.values():
                if depth < len(source_rows) and len(picked) < self.max_cited_rows:
                    picked.append(source_rows[depth])
            depth += 1
        return picked

    @staticmethod
    def _cite(row: ContextRow, quote: str) -> str:
        return f'[Source: {row.source}, page {row.page}, "{quote}"]'

    def _build_answer(self, prompt: str) -> str:
        rows = self._pick_rows(self._extract_context_rows(prompt))
        if not rows:
            return "\n".join(
                [
                    "## Mental Model",
                    "- No retrieved evidence.",
                    "",
                    "## Evidence-Based Expert Analysis",
                    "- Nothing can be cited.",
                    "",
                    "## Uncertainties & Missing Information",
                    "- Evidence is missing entirely.",
                ]
            )
        cited = [(row, self._quote(row.text)) for row in rows]
        documents = {row.source for row in rows}
        lines = [
            "## Mental Model",
            f"- Documents cited: {len(documents)}",
            f"- Excerpts cited: {len(cited)}",
            "",
            "## Evidence-Based Expert Analysis",
        ]
        for row, quote in cited:
            lines.append(
                f"- The excerpt from {row.source} matters because it addresses the question "
                f"directly, therefore it anchors this analysis {self._cite(row, quote)}."
            )
        if "Options & Trade-offs" in prompt:
            first_row, first_quote = cited[0]
            last_row, last_quote = cited[-1]
            lines.extend(
                [
                    "",
                    "## Options & Trade-offs",
                    "- Option A: act on the documented approach because the evidence supports it "
                    f"{self._cite(first_row, first_quote)}.",
                    "- Option B: defer until constraints are verified, which is a trade-off "
                    f"against speed {self._cite(last_row, last_quote)}.",
                    "",
                    "## Recommendation",
                    "- Recommend Option A because it is better supported by the retrieved "
                    f"evidence {self._cite(first_row, first_quote)}.",
                    "",
                    "## Risks",
                    "- Risks remain if the cited constraint does not hold in practice "
                    f"{self._cite(last_row, last_quote)}.",
                ]
            )
        lines.extend(
            [
                "",
                "## Uncertainties & Missing Information",
                "- Unretrieved sections remain unverified.",
            ]
        )
        return "\n".join(lines)

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        del system, model, temperature, max_tokens
        if '"relationships"' in prompt and '"gaps"' in prompt:
            # Empty model: callers fall back to heuristic extraction.
            return LLMResponse(text="{}", input_tokens=0, output_tokens=0)
        return LLMResponse(text=self._build_answer(prompt), input_tokens=0, output_tokens=0)


def get_llm_client() -> LLMClient:
    from evidence_rag.config import LLM_PROVIDER, OFFLINE_MODE

    provider = os.getenv("LLM_PROVIDER", LLM_PROVIDER).strip().lower()
    offline = os.getenv("OFFLINE_MODE", "1" if OFFLINE_MODE else "0").strip().lower() in {
        "1",
        "true",
        "yes",
    }
    if offline:
        return MockOfflineClient()

    if provider == "grok":
        return GrokClient()
    if provider == "azure_openai":
        return AzureOpenAIClient()
    if provider == "mock":
        return MockOfflineClient()
    raise ValueError(f"Unknown LLM_PROVIDER={provider!r}")
