"""Captcha Resolution Engine.

Turns a captcha screenshot into a 6-character candidate answer using up to
two recognition providers:

- primary: Gemini (hosted, fast, quota-limited)
- secondary: Ollama (self-hosted, cheap, slower)

Which providers run is decided by ``FallbackPolicy``, a decision table keyed
by (configured provider count, channel, last role, last outcome):

==========  ============  ==========  ===============  ===========
providers   channel       last role   last outcome     next
==========  ============  ==========  ===============  ===========
1           any           -           -                only
2           interactive   -           -                primary
2           interactive   primary     technical error  secondary
2           unattended    -           -                secondary
==========  ============  ==========  ===============  ===========

Any other combination stops. In particular an interactive primary run that
produced no answer *without* errors does not escalate.
"""

from __future__ import annotations

import base64
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
from google import genai
from google.genai import types

from .. import config
from ..errors import ProviderError
from ..log import Logger, get_logger
from .preprocess import crop_for_ollama

logger = get_logger(__name__)

CAPTCHA_LENGTH = 6


class CaptchaChannel(str, Enum):
    INTERACTIVE = "interactive"  # a human can take over
    UNATTENDED = "unattended"  # background worker, no fallback to a human


class Outcome(str, Enum):
    ANSWER = "answer"
    NO_ANSWER = "no_answer"
    TECHNICAL_ERROR = "technical_error"


class Role(str, Enum):
    ONLY = "only"
    PRIMARY = "primary"
    SECONDARY = "secondary"


@dataclass
class ProviderResult:
    provider: Optional[str]
    text: Optional[str] = None
    had_error: bool = False

    @property
    def outcome(self) -> Outcome:
        if self.text:
            return Outcome.ANSWER
        return Outcome.TECHNICAL_ERROR if self.had_error else Outcome.NO_ANSWER


def sanitize_captcha_text(raw) -> str:
    """Strip everything but ASCII letters and digits."""
    if not isinstance(raw, str):
        return ""
    return re.sub(r"[^a-zA-Z0-9]", "", raw.strip())


def accept_captcha_text(raw) -> Optional[str]:
    """Sanitized answer if it has exactly the captcha length, else None."""
    text = sanitize_captcha_text(raw)
    return text if len(text) == CAPTCHA_LENGTH else None


# ── Providers ────────────────────────────────────────────────────────────────


class RecognitionProvider(ABC):
    """A model-backed captcha reader with a per-model attempt/temperature sweep."""

    name = "provider"

    def __init__(self, models: list[str], attempts_per_model: int = 1,
                 base_temperature: float = 0.0, temperature_step: float = 0.0):
        self.models = [m for m in models if m]
        self.attempts_per_model = max(1, attempts_per_model)
        self.base_temperature = base_temperature
        self.temperature_step = temperature_step

    @property
    def is_configured(self) -> bool:
        return bool(self.models)

    def prepare(self, image: bytes, log: Logger) -> bytes:
        return image

    @abstractmethod
    async def generate(self, image: bytes, model: str, temperature: float) -> str:
        """Ask ``model`` to read ``image``. Raise ProviderError on technical failure."""

    async def solve(self, image: bytes, log: Logger = logger) -> ProviderResult:
        if not self.is_configured:
            return ProviderResult(self.name)

        image = self.prepare(image, log)
        had_error = False
        for model in self.models:
            log.info(f"[Captcha] {self.name} model: {model}")
            for attempt in range(1, self.attempts_per_model + 1):
                temperature = self.base_temperature + (attempt - 1) * self.temperature_step
                started = time.monotonic()
                log.info(
                    f"[Captcha] {self.name} {model} attempt {attempt}/{self.attempts_per_model} "
                    f"(temperature={temperature:.2f})..."
                )
                try:
                    raw = await self.generate(image, model, temperature)
                except Exception as e:
                    had_error = True
                    elapsed = int((time.monotonic() - started) * 1000)
                    log.error(f"[Captcha] {self.name} {model} attempt {attempt} error after {elapsed}ms: {e}")
                    log.warning(f"[Captcha] {self.name} skipping remaining attempts for {model} after error.")
                    break

                elapsed = int((time.monotonic() - started) * 1000)
                text = accept_captcha_text(raw)
                if text:
                    log.info(f"[Captcha] {self.name} success with {model} attempt {attempt}: '{text}' ({elapsed}ms)")
                    return ProviderResult(self.name, text, had_error)
                cleaned = sanitize_captcha_text(raw)
                log.warning(
                    f"[Captcha] {self.name} {model} attempt {attempt} invalid output "
                    f"'{cleaned}' (len={len(cleaned)}, {elapsed}ms)."
                )

        log.info(f"[Captcha] {self.name} did not solve captcha.")
        return ProviderResult(self.name, None, had_error)


class GeminiProvider(RecognitionProvider):
    name = "gemini"

    def __init__(self, api_key: str = config.GEMINI_API_KEY, models: Optional[list[str]] = None,
                 attempts_per_model: int = config.GEMINI_ATTEMPTS_PER_MODEL,
                 base_temperature: float = config.GEMINI_BASE_TEMPERATURE,
                 temperature_step: float = config.GEMINI_TEMPERATURE_STEP,
                 max_output_tokens: int = config.GEMINI_MAX_OUTPUT_TOKENS,
                 prompt: str = config.GEMINI_PROMPT):
        super().__init__(models if models is not None else config.GEMINI_MODELS,
                         attempts_per_model, base_temperature, temperature_step)
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.prompt = prompt
        self._client: Optional[genai.Client] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and super().is_configured

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def generate(self, image: bytes, model: str, temperature: float) -> str:
        try:
            response = await self._get_client().aio.models.generate_content(
                model=model,
                contents=[
                    types.Part.from_bytes(data=image, mime_type="image/png"),
                    self.prompt,
                ],
                config=types.GenerateContentConfig(
                    temperature=temperature,
                    max_output_tokens=self.max_output_tokens,
                    thinking_config=types.ThinkingConfig(include_thoughts=False, thinking_budget=0),
                ),
            )
        except Exception as e:
            message = str(e)
            if "429" in message or "RESOURCE_EXHAUSTED" in message:
                raise ProviderError(f"rate limit (429): {message}") from e
            raise ProviderError(message) from e
        return response.text or ""


class OllamaProvider(RecognitionProvider):
    name = "ollama"

    def __init__(self, model: str = config.OLLAMA_MODEL, url: str = config.OLLAMA_API_URL,
                 prompt: str = config.OLLAMA_PROMPT, timeout_ms: int = config.OLLAMA_TIMEOUT_MS,
                 options: Optional[dict] = None, temperature: float = config.OLLAMA_TEMPERATURE,
                 attempts: int = 1, crop: bool = True):
        super().__init__([model], attempts, base_temperature=temperature)
        self.url = url
        self.prompt = prompt
        self.timeout_ms = timeout_ms
        self.crop = crop
        base_options = dict(config.OLLAMA_OPTIONS if options is None else options)
        if options is None:
            if config.OLLAMA_NUM_CTX is not None:
                base_options["num_ctx"] = config.OLLAMA_NUM_CTX
            if config.OLLAMA_NUM_PREDICT is not None:
                base_options["num_predict"] = config.OLLAMA_NUM_PREDICT
        self.options = base_options

    def prepare(self, image: bytes, log: Logger) -> bytes:
        return crop_for_ollama(image, log) if self.crop else image

    async def generate(self, image: bytes, model: str, temperature: float) -> str:
        payload = {
            "model": model,
            "prompt": self.prompt,
            "images": [base64.b64encode(image).decode("ascii")],
            "stream": False,
            "options": {**self.options, "temperature": temperature},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_ms / 1000) as client:
                response = await client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(f"request timeout after {self.timeout_ms}ms") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(f"HTTP {response.status_code} - {response.text[:300]}")
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError("response is not JSON") from e

        for key in ("response", "output_text"):
            if isinstance(body.get(key), str):
                return body[key]
        return ""


# ── Policy ───────────────────────────────────────────────────────────────────


class FallbackPolicy:
    """Decides which provider role runs next; see the module docstring."""

    TABLE = {
        (1, CaptchaChannel.INTERACTIVE, None, None): Role.ONLY,
        (1, CaptchaChannel.UNATTENDED, None, None): Role.ONLY,
        (2, CaptchaChannel.INTERACTIVE, None, None): Role.PRIMARY,
        (2, CaptchaChannel.INTERACTIVE, Role.PRIMARY, Outcome.TECHNICAL_ERROR): Role.SECONDARY,
        (2, CaptchaChannel.UNATTENDED, None, None): Role.SECONDARY,
    }

    def next_role(self, provider_count: int, channel: CaptchaChannel,
                  last_role: Optional[Role] = None, last_outcome: Optional[Outcome] = None) -> Optional[Role]:
        if last_outcome == Outcome.ANSWER:
            return None
        return self.TABLE.get((provider_count, channel, last_role, last_outcome))


class CaptchaSolver:
    """Runs the providers chosen by ``FallbackPolicy`` and returns an answer or None."""

    def __init__(self, primary: Optional[RecognitionProvider] = None,
                 secondary: Optional[RecognitionProvider] = None,
                 policy: Optional[FallbackPolicy] = None):
        self.primary = primary if primary is not None and primary.is_configured else None
        self.secondary = secondary if secondary is not None and secondary.is_configured else None
        self.policy = policy or FallbackPolicy()

    @property
    def is_configured(self) -> bool:
        return self.primary is not None or self.secondary is not None

    def _provider_for(self, role: Role) -> Optional[RecognitionProvider]:
        if role == Role.PRIMARY:
            return self.primary
        if role == Role.SECONDARY:
            return self.secondary
        return self.primary or self.secondary

    async def solve(self, image: bytes, channel: CaptchaChannel = CaptchaChannel.INTERACTIVE,
                    log: Logger = logger) -> ProviderResult:
        count = int(self.primary is not None) + int(self.secondary is not None)
        if count == 0:
            log.info("[Captcha] No recognition provider configured, skipping auto-solve.")
            return ProviderResult(None)

        result = ProviderResult(None)
        role: Optional[Role] = None
        while True:
            role = self.policy.next_role(count, channel, role, result.outcome if role else None)
            if role is None:
                break
            provider = self._provider_for(role)
            log.info(f"[Captcha] {count} provider(s), {channel.value} channel: running {provider.name} ({role.value})")
            result = await provider.solve(image, log)

        if result.text is None and result.provider:
            log.info(f"[Captcha] Giving up after {result.provider} ({result.outcome.value}).")
        return result

    async def solve_text(self, image: bytes, channel: CaptchaChannel = CaptchaChannel.INTERACTIVE,
                         log: Logger = logger) -> Optional[str]:
        return (await self.solve(image, channel, log)).text


def build_solver() -> CaptchaSolver:
    """Solver wired from environment configuration."""
    return CaptchaSolver(primary=GeminiProvider(), secondary=OllamaProvider())
