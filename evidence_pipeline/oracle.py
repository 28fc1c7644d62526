"""Extraction oracle client.

The pipeline depends only on ``ExtractionOracle``: a prompt goes in, text
comes out, and failures raise ``OracleError``. ``OpenAIOracle`` talks to any
OpenAI-compatible chat completions endpoint. No timeout is layered on top of
the client's own.
"""

from typing import Protocol, runtime_checkable

from openai import AsyncOpenAI, OpenAIError

from config.settings import GlobalConfig, get_config
from evidence_pipeline.exceptions import OracleError, OracleResponseError
from evidence_pipeline.logger import get_logger

log = get_logger(__name__)


@runtime_checkable
class ExtractionOracle(Protocol):
    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Return the oracle's text reply or raise ``OracleError``."""
        ...


class OpenAIOracle:
    """Chat-completions oracle backed by the ``openai`` async client.

    Attributes:
        model: Model name sent with every request.
        temperature: Sampling temperature; kept low for extraction.
    """

    def __init__(
        self,
        config: GlobalConfig | None = None,
        client: AsyncOpenAI | None = None,
        temperature: float = 0.1,
        max_tokens: int = 2000,
    ) -> None:
        self.config = config or get_config()
        self.model = self.config.llm_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        if client is None:
            client = AsyncOpenAI(api_key=self.config.llm_api_key, base_url=self.config.llm_base_url)
        self._client = client

    @classmethod
    def from_config(cls, config: GlobalConfig | None = None) -> "OpenAIOracle | None":
        """Build an oracle, or None when no API key is configured."""
        config = config or get_config()
        if not config.oracle_enabled:
            log.info("Extraction oracle disabled (no LLM_API_KEY), using rule-based extraction")
            return None
        return cls(config)

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as exc:
            log.warning("Oracle request failed", model=self.model, error=str(exc))
            raise OracleError(str(exc), model=self.model) from exc

        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not text:
            raise OracleResponseError("empty completion", model=self.model)

        log.debug(
            "Oracle reply received",
            model=self.model,
            chars=len(text),
            total_tokens=getattr(response.usage, "total_tokens", None),
        )
        return text
