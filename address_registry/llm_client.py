"""LLM summarizer for crowd-sourced directions, backed by OpenAI or Anthropic."""
from __future__ import annotations

from openai import OpenAI
from anthropic import Anthropic

from address_registry.config import settings

SYSTEM_PROMPT = (
    "You are a helpful assistant that summarizes location descriptions. "
    "Combine the directions people left for one address into a short, "
    "practical note on how to find the entrance."
)

# Summaries are a few sentences; keep sampling close to the source text
SUMMARY_TEMPERATURE = 0.3


class LLMClient:
    """Turns a prompt of collected descriptions into a single summary."""

    SUPPORTED_PROVIDERS = ("openai", "anthropic")

    def __init__(self, provider: str, model: str, api_key: str, max_tokens: int = 200):
        if provider not in self.SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported LLM provider: {provider}. Use one of {self.SUPPORTED_PROVIDERS}")
        if not api_key:
            raise ValueError(f"{provider} API key required for summaries")

        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._summarizers = {
            "openai": self._summarize_openai,
            "anthropic": self._summarize_anthropic,
        }

    @classmethod
    def from_settings(cls) -> "LLMClient":
        """Build a client from ``settings.summary`` and the matching API key."""
        provider = settings.summary.llm_provider
        api_keys = {
            "openai": settings.openai_api_key,
            "anthropic": settings.anthropic_api_key,
        }
        return cls(provider=provider, model=settings.summary.llm_model, api_key=api_keys.get(provider, ""))

    def summarize(self, prompt: str) -> str:
        """Return the provider's summary for ``prompt``, stripped; empty if it gave none."""
        text = self._summarizers[self.provider](prompt)
        return (text or "").strip()

    def _summarize_openai(self, prompt: str) -> str:
        client = OpenAI(api_key=self._api_key)
        response = client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=SUMMARY_TEMPERATURE,
            max_tokens=self.max_tokens,
        )
        return response.choices[0].message.content

    def _summarize_anthropic(self, prompt: str) -> str:
        client = Anthropic(api_key=self._api_key)
        response = client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=SUMMARY_TEMPERATURE,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(block.text for block in response.content if hasattr(block, "text"))
