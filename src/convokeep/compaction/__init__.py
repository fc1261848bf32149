"""convokeep compaction components."""

from convokeep.compaction.engine import SummarizationCompactor
from convokeep.compaction.transcript import build_transcript, merge_summary, select_window

__all__ = [
    "SummarizationCompactor",
    "build_transcript",
    "merge_summary",
    "select_window",
]
