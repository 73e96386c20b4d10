"""Token estimation utilities.

Pure functions with no AIAgent dependency. Used by ContextCompressor for
pre-flight budget checks. The estimate is rough: it only needs to grow with
the amount of text and to be cheap to compute.
"""

from typing import Any, Iterable

CHARS_PER_TOKEN = 4


def estimate_turns_tokens_rough(turns: Iterable[Any]) -> int:
    """Rough token estimate (~4 chars/token) for a list of ``Turn`` objects.

    Counts message text, reasoning text and serialized tool calls.
    """
    total_chars = sum(turn.char_count() for turn in turns)
    return total_chars // CHARS_PER_TOKEN
