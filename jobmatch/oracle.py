"""
Scoring oracle adapter.

An oracle turns one scoring request into a stream of OracleChunk values;
only the terminal chunk (final=True) carries the verdict text. Requests are
issued inside a conversation scope opened once per session:

    with oracle.conversation(user_id=..., session_id=...) as conversation:
        text = final_text(conversation.stream(prompt))

The scope is registered on entry and deleted on every exit path.

Configuration via environment variables:
  ORACLE_PROVIDER       = mock | openai | ollama | custom   (default: mock)
  ORACLE_APP_NAME       = resume analyzer
  ORACLE_CARRY_HISTORY  = false   (send earlier turns of the session along)
  LLM_MODEL             = gpt-4o-mini
  LLM_TEMPERATURE       = 0.1
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1
  OLLAMA_BASE_URL       = http://localhost:11434/v1
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from jobmatch.errors import PipelineError
from jobmatch.prompts import RESUME_ANALYZER_INSTRUCTION

logger = logging.getLogger(__name__)

DEFAULT_APP_NAME = "resume analyzer"


@dataclass(frozen=True)
class OracleChunk:
    text: str
    final: bool = False


def final_text(stream: Iterable[OracleChunk]) -> str:
    """Consume a chunk stream to the end and return the last final text."""
    output = ""
    for chunk in stream:
        if chunk.final and chunk.text.strip():
            output = chunk.text
    if not output:
        raise PipelineError(
            code="ORACLE_EMPTY_RESPONSE",
            message="empty oracle response",
            error_class="transient",
            retryable=True,
        )
    return output


@dataclass
class OracleConversation:
    app_name: str
    user_id: str
    session_id: str
    oracle: ScoringOracle
    turns: list[dict[str, str]] = field(default_factory=list)

    def stream(self, prompt: str) -> Iterator[OracleChunk]:
        return self.oracle.stream(conversation=self, prompt=prompt)

    def record_turn(self, *, prompt: str, reply: str) -> None:
        self.turns.append({"role": "user", "content": prompt})
        self.turns.append({"role": "assistant", "content": reply})


class ConversationRegistry:
    """In-process registry of open conversation scopes."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._open: dict[tuple[str, str, str], OracleConversation] = {}

    @staticmethod
    def _key(conversation: OracleConversation) -> tuple[str, str, str]:
        return (conversation.app_name, conversation.user_id, conversation.session_id)

    def create(self, conversation: OracleConversation) -> OracleConversation:
        with self._lock:
            key = self._key(conversation)
            if key in self._open:
                logger.warning("replacing open oracle conversation for session %s", conversation.session_id)
            self._open[key] = conversation
            return conversation

    def delete(self, conversation: OracleConversation) -> None:
        with self._lock:
            self._open.pop(self._key(conversation), None)

    def open_count(self) -> int:
        with self._lock:
            return len(self._open)


class ScoringOracle:
    provider_name = "base"

    def __init__(self, *, app_name: str = DEFAULT_APP_NAME, registry: ConversationRegistry | None = None) -> None:
        self.app_name = app_name
        self.registry = registry or ConversationRegistry()

    @contextmanager
    def conversation(self, *, user_id: str, session_id: str) -> Iterator[OracleConversation]:
        try:
            opened = self.registry.create(
                OracleConversation(
                    app_name=self.app_name,
                    user_id=user_id,
                    session_id=session_id,
                    oracle=self,
                )
            )
        except Exception as exc:
            raise PipelineError(
                code="ORACLE_SESSION_UNAVAILABLE",
                message=f"failed to open oracle conversation: {exc}",
                error_class="transient",
                retryable=True,
            ) from exc
        try:
            yield opened
        finally:
            try:
                self.registry.delete(opened)
            except Exception:
                logger.exception("failed to release oracle conversation for session %s", session_id)

    def stream(self, *, conversation: OracleConversation, prompt: str) -> Iterator[OracleChunk]:
        raise NotImplementedError


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.1
    max_tokens: int = 2048


def _get_provider_config(environ: Mapping[str, str] | None = None) -> ProviderConfig:
    env = os.environ if environ is None else environ
    provider = env.get("ORACLE_PROVIDER", "mock").strip().lower() or "mock"
    model = env.get("LLM_MODEL", "").strip() or "gpt-4o-mini"
    temperature = float(env.get("LLM_TEMPERATURE", "0.1").strip() or "0.1")

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=env.get("OLLAMA_MODEL", "").strip() or model,
            api_key=env.get("OPENAI_API_KEY", "").strip() or "ollama",
            base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
            temperature=temperature,
        )

    return ProviderConfig(
        provider=provider,
        model=model,
        api_key=env.get("OPENAI_API_KEY", "").strip(),
        base_url=env.get("OPENAI_BASE_URL", "").strip(),
        temperature=temperature,
    )


def _create_client(config: ProviderConfig):
    try:
        import openai
    except ImportError as exc:
        raise RuntimeError("openai package is required for ORACLE_PROVIDER=" + config.provider) from exc

    kwargs: dict[str, Any] = {"api_key": config.api_key or "ollama"}
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return openai.OpenAI(**kwargs)


class OpenAIScoringOracle(ScoringOracle):
    """Streams chat completions from OpenAI, Ollama or any OpenAI-compatible endpoint."""

    provider_name = "openai"

    def __init__(
        self,
        *,
        config: ProviderConfig,
        client: Any = None,
        instruction: str = RESUME_ANALYZER_INSTRUCTION,
        carry_history: bool = False,
        app_name: str = DEFAULT_APP_NAME,
        registry: ConversationRegistry | None = None,
    ) -> None:
        super().__init__(app_name=app_name, registry=registry)
        self.config = config
        self._client = client if client is not None else _create_client(config)
        self._instruction = instruction
        self._carry_history = carry_history

    def stream(self, *, conversation: OracleConversation, prompt: str) -> Iterator[OracleChunk]:
        messages = [{"role": "system", "content": self._instruction}]
        if self._carry_history:
            messages.extend(conversation.turns)
        messages.append({"role": "user", "content": prompt})

        response = self._client.chat.completions.create(
            model=self.config.model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            messages=messages,
            stream=True,
        )
        parts: list[str] = []
        for event in response:
            if not event.choices:
                continue
            delta = event.choices[0].delta.content or ""
            if delta:
                parts.append(delta)
                yield OracleChunk(text=delta)
        reply = "".join(parts)
        conversation.record_turn(prompt=prompt, reply=reply)
        yield OracleChunk(text=reply, final=True)


_WORD_RE = re.compile(r"[A-Za-z][A-Za-z0-9+#.]{2,}")
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_STOPWORDS = {
    "and", "the", "for", "with", "you", "our", "are", "will", "who", "this", "that",
    "have", "has", "from", "your", "role", "team", "work", "years", "experience",
    "job", "title", "description", "resume", "using", "into", "able", "must",
}


def _terms(text: str) -> list[str]:
    seen: dict[str, None] = {}
    for raw in _WORD_RE.findall(text):
        word = raw.strip(".").lower()
        if len(word) >= 3 and word not in _STOPWORDS:
            seen.setdefault(word, None)
    return list(seen)


def _split_request(prompt: str) -> tuple[str, str]:
    match = re.search(r"Job Description:\n(.*?)\n\nResume:\n(.*)\Z", prompt, flags=re.S)
    if match is None:
        return "", prompt
    return match.group(1), match.group(2)


class MockScoringOracle(ScoringOracle):
    """Deterministic oracle for local runs and tests: keyword overlap scoring."""

    provider_name = "mock"

    def __init__(self, *, chunk_count: int = 3, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._chunk_count = max(1, chunk_count)

    def stream(self, *, conversation: OracleConversation, prompt: str) -> Iterator[OracleChunk]:
        reply = "```json\n" + json.dumps(self.score(prompt), ensure_ascii=True) + "\n```"
        size = max(1, len(reply) // self._chunk_count)
        for start in range(0, len(reply), size):
            yield OracleChunk(text=reply[start : start + size])
        conversation.record_turn(prompt=prompt, reply=reply)
        yield OracleChunk(text=reply, final=True)

    @staticmethod
    def score(prompt: str) -> dict[str, Any]:
        job_description, resume_text = _split_request(prompt)
        wanted = _terms(job_description)
        offered = set(_terms(resume_text))
        matched = [w for w in wanted if w in offered]
        missing = [w for w in wanted if w not in offered]
        score = round(100 * len(matched) / len(wanted)) if wanted else 0
        email = _EMAIL_RE.search(resume_text)
        lines = [line.strip() for line in resume_text.splitlines() if line.strip()]
        return {
            "candidate_email": email.group(0) if email else "",
            "match_score": score,
            "relevant_experiences": [line for line in lines if any(w in line.lower() for w in matched)][:5],
            "relevant_skills": matched[:10],
            "missing_skills": missing[:10],
            "summary": f"Resume covers {len(matched)} of {len(wanted)} job description terms.",
            "recommendation": "Shortlist" if score >= 60 else "Review manually" if score >= 30 else "Not a match",
        }


def _flag(env: Mapping[str, str], name: str, default: str) -> bool:
    return str(env.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def create_oracle_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    registry: ConversationRegistry | None = None,
) -> ScoringOracle:
    env = os.environ if environ is None else environ
    config = _get_provider_config(env)
    app_name = env.get("ORACLE_APP_NAME", DEFAULT_APP_NAME).strip() or DEFAULT_APP_NAME
    if config.provider == "mock":
        return MockScoringOracle(app_name=app_name, registry=registry)
    if config.provider in {"openai", "custom"} and not config.api_key:
        raise ValueError(f"OPENAI_API_KEY must be set when ORACLE_PROVIDER={config.provider}")
    if config.provider not in {"openai", "custom", "ollama"}:
        raise RuntimeError(f"unsupported oracle provider: {config.provider}")
    return OpenAIScoringOracle(
        config=config,
        carry_history=_flag(env, "ORACLE_CARRY_HISTORY", "false"),
        app_name=app_name,
        registry=registry,
    )


def get_provider_info(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Current oracle configuration, safe for logging (no secrets)."""
    config = _get_provider_config(environ)
    return {
        "provider": config.provider,
        "model": config.model,
        "base_url": config.base_url or "(default)",
        "has_api_key": bool(config.api_key),
        "temperature": config.temperature,
    }
