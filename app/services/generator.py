"""
Answer Generator
Streams answers from an OpenAI-compatible chat completions API.
"""
import asyncio
from typing import AsyncIterator, Dict, List, Optional
import structlog
from openai import AsyncOpenAI, APIError, APITimeoutError

from app.config import Settings, get_settings
from app.errors import UpstreamError, UpstreamTimeoutError
from app.models.schemas import ChatTurn, LLMConfig, TokenUsage

logger = structlog.get_logger()


class GenerationResult:
    """
    A lazily drained text stream plus usage that resolves after the stream ends.

    ``text_stream`` yields text deltas as they arrive. ``usage()`` waits for
    the stream to finish, draining whatever is still unread itself (that
    text is then discarded).
    """

    def __init__(self, chunks: AsyncIterator, model: str, timeout: float):
        self.model = model
        self._chunks = chunks
        self._timeout = timeout
        self._reported = None
        self._usage: asyncio.Future = asyncio.get_running_loop().create_future()
        self.text_stream: AsyncIterator[str] = self._iterate()

    def _fail(self, error: Exception):
        if not self._usage.done():
            self._usage.set_exception(error)
            # Mark retrieved: the same error is raised to the stream reader.
            self._usage.exception()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            async for chunk in self._chunks:
                if getattr(chunk, "usage", None):
                    self._reported = chunk.usage
                if chunk.choices:
                    delta = chunk.choices[0].delta.content
                    if delta:
                        yield delta
        except APITimeoutError as e:
            error = UpstreamTimeoutError("generation", self._timeout)
            self._fail(error)
            raise error from e
        except APIError as e:
            error = UpstreamError("generation", "stream interrupted", details=str(e))
            self._fail(error)
            raise error from e

        self._resolve()

    def _resolve(self):
        if not self._usage.done():
            self._usage.set_result(TokenUsage(
                input_tokens=getattr(self._reported, "prompt_tokens", None),
                output_tokens=getattr(self._reported, "completion_tokens", None),
            ))

    async def usage(self) -> TokenUsage:
        if not self._usage.done():
            # Finish whatever the caller left unread
            async for _ in self.text_stream:
                pass
            # A closed stream ends without reaching the usage chunk
            self._resolve()
        return await self._usage


class AnswerGenerator:
    """Wraps the streaming chat completions call used to answer questions."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        self.settings = settings or get_settings()
        self.client = client or AsyncOpenAI(
            api_key=self.settings.openai_api_key,
            base_url=self.settings.openai_base_url,
            timeout=self.settings.upstream_timeout_seconds,
            max_retries=0,
        )

    def build_messages(
        self,
        user_prompt: str,
        system_prompt: str,
        history: Optional[List[ChatTurn]] = None
    ) -> List[Dict[str, str]]:
        """
        Single-shot form when there is no history; otherwise one role-tagged
        message per turn followed by the new prompt.
        """
        messages = [{"role": "system", "content": system_prompt}]
        for turn in history or []:
            messages.append({"role": turn.role, "content": turn.content})
        messages.append({"role": "user", "content": user_prompt})
        return messages

    async def generate(
        self,
        user_prompt: str,
        system_prompt: str,
        config: Optional[LLMConfig] = None,
        history: Optional[List[ChatTurn]] = None
    ) -> GenerationResult:
        """
        Start a streamed generation. Errors are not retried.

        Args:
            user_prompt: Prompt with contexts and question
            system_prompt: Answering policy
            config: Per-call overrides (temperature, model, max_tokens)
            history: Prior conversation turns, oldest first

        Returns:
            GenerationResult with text_stream, usage() and model
        """
        config = config or LLMConfig()
        model = config.model or self.settings.llm_model
        temperature = config.temperature if config.temperature is not None else self.settings.llm_temperature
        max_tokens = config.max_tokens or self.settings.llm_max_tokens

        messages = self.build_messages(user_prompt, system_prompt, history)

        request = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if max_tokens:
            request["max_tokens"] = max_tokens

        logger.info(
            "Starting generation",
            model=model,
            temperature=temperature,
            history_turns=len(history or [])
        )

        try:
            stream = await self.client.chat.completions.create(**request)
        except APITimeoutError as e:
            raise UpstreamTimeoutError("generation", self.settings.upstream_timeout_seconds) from e
        except APIError as e:
            raise UpstreamError("generation", "completion request failed", details=str(e)) from e

        return GenerationResult(stream, model, self.settings.upstream_timeout_seconds)


# Singleton instance
_answer_generator: Optional[AnswerGenerator] = None


def get_answer_generator() -> AnswerGenerator:
    """Get singleton answer generator instance."""
    global _answer_generator
    if _answer_generator is None:
        _answer_generator = AnswerGenerator()
    return _answer_generator
