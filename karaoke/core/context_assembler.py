"""
Token-budget-aware context assembly.

Trims (system, history, prompt) until the estimated token count fits the
model's budget. Trimming order:

    1. drop the oldest history turn while more than one remains
    2. cut the system prompt from the end (down to a 50-char floor)
    3. cut the user prompt from the end (same floor)
    4. give up and return what is left (best effort)

Bounded by ``MAX_ITERATIONS`` so pathological inputs always terminate.
Inputs are never mutated.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 100
MIN_FIELD_CHARS = 50
CHARS_PER_TOKEN = 4

# OpenAI chat framing: every message costs a few tokens, the reply primer 3 more
TOKENS_PER_MESSAGE = 3
TOKENS_REPLY_PRIMER = 3

Message = dict[str, str]


class TokenEstimator(Protocol):
    def __call__(self, messages: list[Message]) -> int: ...


def char_estimator(messages: list[Message]) -> int:
    """Cheap approximation: 4 characters ≈ 1 token, plus chat framing."""
    total = TOKENS_REPLY_PRIMER
    for message in messages:
        total += TOKENS_PER_MESSAGE
        total += math.ceil(len(message.get("content", "")) / CHARS_PER_TOKEN)
    return total


class TiktokenEstimator:
    """``cl100k_base`` token counts with OpenAI chat framing."""

    def __init__(self, encoding_name: str = "cl100k_base") -> None:
        self.encoding_name = encoding_name
        self._encoding = None

    @property
    def encoding(self):
        # Loaded on first use; tiktoken may fetch the BPE file.
        if self._encoding is None:
            import tiktoken

            self._encoding = tiktoken.get_encoding(self.encoding_name)
        return self._encoding

    def __call__(self, messages: list[Message]) -> int:
        total = TOKENS_REPLY_PRIMER
        for message in messages:
            total += TOKENS_PER_MESSAGE
            for value in message.values():
                total += len(self.encoding.encode(value))
        return total


@dataclass
class AssembledContext:
    system: str
    history: list[Message] = field(default_factory=list)
    prompt: str = ""
    estimated_tokens: int = 0
    iterations: int = 0

    def messages(self) -> list[Message]:
        out: list[Message] = []
        if self.system:
            out.append({"role": "system", "content": self.system})
        out.extend(dict(m) for m in self.history)
        out.append({"role": "user", "content": self.prompt})
        return out


def _to_messages(system: str, history: list[Message], prompt: str) -> list[Message]:
    return AssembledContext(system=system, history=history, prompt=prompt).messages()


def _trim_amount(text: str, overage: int) -> int:
    """Chars to cut: half the overage in tokens, as chars, never below the floor."""
    wanted = math.ceil(overage / 2) * CHARS_PER_TOKEN
    return max(1, min(wanted, len(text) - MIN_FIELD_CHARS))


class ContextAssembler:
    """Fits a chat payload into a token budget."""

    def __init__(self, estimator: Optional[Callable[[list[Message]], int]] = None) -> None:
        self._estimator = estimator or TiktokenEstimator()

    def estimate(self, system: str, history: list[Message], prompt: str) -> int:
        return self._estimator(_to_messages(system, history, prompt))

    def fit(
        self,
        system: str,
        history: Optional[list[Message]],
        prompt: str,
        budget: int,
    ) -> AssembledContext:
        history = [dict(m) for m in (history or [])]
        estimate = self.estimate(system, history, prompt)
        iterations = 0

        while estimate > budget and iterations < MAX_ITERATIONS:
            overage = estimate - budget
            if len(history) > 1:
                history = history[1:]
            elif len(system) > MIN_FIELD_CHARS:
                system = system[: len(system) - _trim_amount(system, overage)]
            elif len(prompt) > MIN_FIELD_CHARS:
                prompt = prompt[: len(prompt) - _trim_amount(prompt, overage)]
            else:
                logger.warning(
                    f"⚠️ Context still {estimate} tokens over a {budget} budget at the trim floor; sending as-is"
                )
                break
            iterations += 1
            estimate = self.estimate(system, history, prompt)

        if iterations:
            logger.debug(f"Context trimmed in {iterations} step(s) to ~{estimate} tokens (budget {budget})")
        return AssembledContext(
            system=system,
            history=history,
            prompt=prompt,
            estimated_tokens=estimate,
            iterations=iterations,
        )
