"""Window selection and transcript formatting for compaction."""

from __future__ import annotations

from collections.abc import Sequence

from convokeep.models.message import Turn


def select_window(turns: Sequence[Turn], keep_recent: int) -> list[Turn]:
    """
    Return the middle window: turns with ``idx`` in ``[1, max(len - keep_recent, 1))``.

    The system turn is never part of the window, and the ``keep_recent``
    newest turns are always left out, so one pass removes at most
    ``len - keep_recent - 1`` turns.
    """
    end = max(len(turns) - keep_recent, 1)
    return [t for t in turns if 1 <= t.idx < end]


def build_transcript(turns: Sequence[Turn]) -> str:
    """Format turns as ``[ROLE] content`` blocks separated by blank lines."""
    return "\n\n".join(f"[{t.role.upper()}] {t.content}" for t in turns)


def merge_summary(existing: str, addition: str) -> str:
    """Append *addition* to the running summary, blank-line separated."""
    if not existing:
        return addition
    return f"{existing}\n\n{addition}"
