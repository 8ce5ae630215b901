"""Answer generation: grounded prompts, the LLM call, citations and the chat flow.

The retrieval engine hands over an ordered, threshold-filtered candidate
list. This module turns it into a system prompt with numbered sources,
calls the language model and attaches one citation per distinct URL.
When retrieval comes back empty no model call is made.
"""

import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import httpx
import structlog
from pydantic import BaseModel

from sitechat.errors import AnswerGenerationError
from sitechat.models import ChatAnswer, Citation, RetrievalCandidate
from sitechat.retrieval_engine import HybridRetrievalEngine

logger = structlog.get_logger(__name__)

NO_CONTEXT_ANSWER = (
    "I don't have enough information to answer that question based on {site_name}'s content. "
    "Could you try rephrasing or ask something else about {site_name}?"
)

GROUNDING_RULES = """CRITICAL GROUNDING RULES:
1. Answer EXCLUSIVELY using the context provided below - do NOT add external knowledge
2. ONLY use information that DIRECTLY answers the specific question asked
3. IGNORE any context chunks that are NOT relevant to the question - even if provided
4. Do NOT mix or combine information from different topics
5. Each context chunk may be about a different topic - ONLY use chunks that match the question's topic
6. If the context doesn't fully answer the question, say "I don't have enough information about that in the {site_name} content"
7. Quote or paraphrase DIRECTLY from the context - stay factually grounded
8. Do NOT make assumptions, inferences, or connections beyond what's explicitly stated
9. If uncertain, acknowledge limitations rather than guessing

FORMATTING RULES:
1. Structure your answer with clear sections using **bold headings**
2. Use bullet points or numbered lists for multiple items
3. Keep paragraphs short (2-3 sentences maximum)
"""

USER_PROMPT_TEMPLATE = (
    "Question: {question}\n\n"
    "REMINDER: Use ONLY context that DIRECTLY relates to this question. "
    "IGNORE any unrelated context chunks. Provide a helpful answer and cite sources."
)


class BotConfig(BaseModel):
    """Persona and house rules injected into the system prompt."""

    site_name: str = "our website"
    tone: Optional[str] = None
    rules: Optional[str] = None
    disclaimer: Optional[str] = None


def build_system_prompt(candidates: Sequence[RetrievalCandidate], bot_config: Optional[BotConfig] = None) -> str:
    """System prompt: persona, grounding rules, then ``[Source n: title]`` context blocks."""
    config = bot_config or BotConfig()

    parts = [f"You are the {config.site_name} AI assistant. "]
    if config.tone:
        parts.append(f"Your tone should be {config.tone}. ")
    else:
        parts.append("You are helpful, professional, and friendly. ")
    if config.rules:
        parts.append(f"{config.rules} ")
    parts.append("\n\n")
    parts.append(GROUNDING_RULES.format(site_name=config.site_name))
    parts.append("\n")
    if config.disclaimer:
        parts.append(f"DISCLAIMER: {config.disclaimer}\n\n")

    parts.append(f"CONTEXT FROM {config.site_name.upper()} WEBSITE:\n\n")
    for index, candidate in enumerate(candidates, start=1):
        parts.append(f"[Source {index}: {candidate.title}]\n{candidate.text}\n\n")
    return "".join(parts)


def build_user_prompt(question: str) -> str:
    return USER_PROMPT_TEMPLATE.format(question=question)


def extract_citations(candidates: Sequence[RetrievalCandidate]) -> List[Citation]:
    """One citation per distinct URL, in rank order."""
    seen = set()
    citations = []
    for candidate in candidates:
        if candidate.url in seen:
            continue
        seen.add(candidate.url)
        citations.append(Citation(title=candidate.title, url=candidate.url))
    return citations


class AnswerGenerator(ABC):
    """Black-box text generation: prompts in, answer text out."""

    @abstractmethod
    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        ...


class OllamaAnswerGenerator(AnswerGenerator):
    """Non-streaming Ollama ``/api/generate``."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2:3b",
        temperature: float = 0.7,
        top_p: float = 0.9,
        max_tokens: int = 300,
        timeout_seconds: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        payload = {
            "model": self.model,
            "prompt": f"{system_prompt}\n\n{user_prompt}",
            "stream": False,
            "options": {
                "temperature": self.temperature,
                "top_p": self.top_p,
                "num_predict": self.max_tokens,
            },
        }
        start_time = time.time()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.post("/api/generate", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.error("LLM generation timed out", model=self.model, timeout=self.timeout_seconds)
            raise AnswerGenerationError(f"LLM generation timed out after {self.timeout_seconds}s") from e
        except httpx.HTTPStatusError as e:
            logger.error("LLM generation failed", model=self.model, status=e.response.status_code)
            raise AnswerGenerationError(f"LLM returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("LLM generation failed", model=self.model, error=str(e))
            raise AnswerGenerationError(f"LLM generation failed: {e}") from e

        answer = (data.get("response") or "").strip() if isinstance(data, dict) else ""
        if not answer:
            raise AnswerGenerationError(f"Model {self.model} returned an empty response")

        logger.info(
            "LLM response generated",
            model=self.model,
            answer_chars=len(answer),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return answer


class ChatService:
    """Question in, grounded and cited answer out."""

    def __init__(
        self,
        engine: HybridRetrievalEngine,
        generator: AnswerGenerator,
        top_k: int = 8,
        similarity_threshold: float = 0.28,
        bot_config: Optional[BotConfig] = None,
    ):
        self.engine = engine
        self.generator = generator
        self.top_k = top_k
        self.similarity_threshold = similarity_threshold
        self.bot_config = bot_config or BotConfig()

    async def answer(self, question: str) -> ChatAnswer:
        """
        Raises:
            ValueError: the question is empty or whitespace only
        """
        if not question or not question.strip():
            raise ValueError("Question is required")

        start_time = time.time()
        candidates = await self.engine.retrieve(question, self.top_k, self.similarity_threshold)

        if not candidates:
            return ChatAnswer(
                answer=NO_CONTEXT_ANSWER.format(site_name=self.bot_config.site_name),
                citations=[],
                chunks_retrieved=0,
                elapsed_ms=int((time.time() - start_time) * 1000),
            )

        answer = await self.generator.generate(
            build_system_prompt(candidates, self.bot_config),
            build_user_prompt(question),
        )
        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info("Chat answer generated", chunks_retrieved=len(candidates), elapsed_ms=elapsed_ms)
        return ChatAnswer(
            answer=answer,
            citations=extract_citations(candidates),
            chunks_retrieved=len(candidates),
            elapsed_ms=elapsed_ms,
        )
