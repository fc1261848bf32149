"""Assembly of the message list sent to the inference endpoint."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from convokeep.models.message import Turn

SUMMARY_PREAMBLE = "Summary of the earlier conversation:\n"


@dataclass
class LLMMessage:
    """A single message formatted for the provider API."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class BuiltContext:
    """The assembled payload ready for an inference call."""

    messages: list[LLMMessage] = field(default_factory=list)
    has_summary: bool = False
    turn_count: int = 0
    """Number of stored turns included (the synthetic summary turn is not counted)."""

    def to_dicts(self) -> list[dict[str, str]]:
        return [m.to_dict() for m in self.messages]


class ContextBuilder:
    """
    Builds the payload for dispatch and regeneration.

    Invariants:
    1. Every given turn is included, in ``idx`` order, as a role/content pair.
    2. A non-empty running summary is prepended as one synthetic ``system``
       message ahead of the stored system turn.
    3. The running summary never appears anywhere else in the payload.
    """

    def __init__(self, summary_preamble: str = SUMMARY_PREAMBLE) -> None:
        self._summary_preamble = summary_preamble

    def build(
        self,
        turns: Sequence[Turn],
        running_summary: str = "",
        *,
        upto: int | None = None,
    ) -> BuiltContext:
        """
        Build the payload from *turns*.

        Args:
            turns: The conversation's turns in sequence order.
            running_summary: The conversation's accumulated summary, possibly empty.
            upto: If given, only turns with ``idx <= upto`` are included.

        Returns:
            BuiltContext with the ordered messages.
        """
        kept = [t for t in turns if upto is None or t.idx <= upto]
        kept.sort(key=lambda t: t.idx)

        messages: list[LLMMessage] = []
        has_summary = bool(running_summary.strip())
        if has_summary:
            messages.append(LLMMessage(role="system", content=self._summary_preamble + running_summary))
        messages.extend(LLMMessage(**t.as_payload()) for t in kept)

        return BuiltContext(messages=messages, has_summary=has_summary, turn_count=len(kept))
