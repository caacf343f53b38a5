"""LLM access for fact extraction.

The extraction step only needs "prompt in, text out", so it depends on the
LLMClient protocol; GroqLLMClient is the concrete implementation.
"""

from typing import Any, Protocol

from groq import AsyncGroq

from .config import DEFAULT_MODEL


class LLMClient(Protocol):
    """Anything that can complete a prompt."""

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Complete a prompt and return the text response."""
        ...


class GroqLLMClient:
    """LLMClient implementation that wraps AsyncGroq.

    Example:
        groq = AsyncGroq(api_key="...")
        llm = GroqLLMClient(groq, json_mode=True)
        text = await llm.complete(prompt, system=EXTRACTION_SYSTEM_PROMPT)
    """

    def __init__(
        self,
        client: AsyncGroq,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        json_mode: bool = False,
    ) -> None:
        """Initialize the wrapper.

        Args:
            client: The AsyncGroq client instance to wrap.
            model: The model to use for completions.
            temperature: Sampling temperature; low values keep extraction stable.
            max_tokens: Upper bound on the response length.
            json_mode: Ask the API for a JSON object response.
        """
        self._client = client
        self._model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.json_mode = json_mode

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Complete a prompt and return the text response.

        Args:
            prompt: The user prompt to complete.
            system: Optional system prompt to set context.

        Returns:
            The LLM's text response.
        """
        messages: list[dict[str, Any]] = []

        if system:
            messages.append({"role": "system", "content": system})

        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._client.chat.completions.create(**kwargs)

        return response.choices[0].message.content or ""

    @property
    def model(self) -> str:
        """Return the model being used."""
        return self._model
