"""History compression: replace the older prefix with a model-written summary."""

import logging
from dataclasses import dataclass

from .history import (
    SUMMARY_PREFIX,
    HistoryItem,
    estimate_item_tokens,
    estimate_tokens,
    group_into_turns,
    render_transcript,
)
from .report import AuthenticationError, CompressionFailure

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.7
DEFAULT_PRESERVE_FRACTION = 0.3
MIN_PREFIX_ITEMS = 2


@dataclass(frozen=True)
class CompressionSnapshot:
    summary_text: str
    original_token_count: int
    new_token_count: int
    retained_tail_start_index: int


def find_split_point(
    history: list[HistoryItem], start: int, preserve_fraction: float
) -> int:
    """Index where the verbatim tail begins.

    The tail holds at least ``preserve_fraction`` of the estimated tokens of
    history[start:] and always begins on a turn boundary, so tool results
    stay with the model item that requested them.
    """
    turns = group_into_turns(history[start:])
    sizes = [sum(estimate_item_tokens(item) for item in turn) for turn in turns]
    target = preserve_fraction * sum(sizes)
    split = len(history)
    acc = 0
    for turn, size in zip(reversed(turns), reversed(sizes)):
        if acc >= target - 1e-9 and acc > 0:
            break
        acc += size
        split -= len(turn)
    # An orphaned tool result forms its own turn; never start the tail on one.
    while start < split < len(history) and history[split].role == "tool":
        split -= 1
    return split


class HistoryCompressor:
    """Decides when to compress and builds the compressed history.

    Never mutates the list it is given; the caller applies the returned
    history.
    """

    def __init__(
        self,
        channel,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        preserve_fraction: float = DEFAULT_PRESERVE_FRACTION,
    ):
        if not 0 < threshold <= 1:
            raise ValueError("threshold must be in (0, 1]")
        if not 0 < preserve_fraction < 1:
            raise ValueError("preserve_fraction must be in (0, 1)")
        self.channel = channel
        self.threshold = threshold
        self.preserve_fraction = preserve_fraction
        self._last_result: tuple[int, int] | None = None

    def should_compress(self, current_estimate: int, token_limit: int | None) -> bool:
        if not token_limit:
            return False
        return current_estimate > token_limit * self.threshold

    async def maybe_compress(
        self,
        history: list[HistoryItem],
        current_estimate: int,
        token_limit: int | None,
        force: bool = False,
    ) -> tuple[list[HistoryItem], CompressionSnapshot | None]:
        """Return (history, None) when nothing was done, else (new_history, snapshot).

        Summarization failures are logged and reported as "nothing done".
        """
        if self._last_result == (len(history), current_estimate):
            # Nothing grew since our last compression.
            return history, None
        if not force and not self.should_compress(current_estimate, token_limit):
            return history, None

        try:
            return await self._compress(history, current_estimate)
        except CompressionFailure as e:
            logger.warning("history compression failed: %s", e)
            return history, None

    async def _compress(self, history, current_estimate):
        head = 0
        while head < len(history) and history[head].role == "system":
            head += 1
        split = find_split_point(history, head, self.preserve_fraction)
        prefix = history[head:split]
        if len(prefix) < MIN_PREFIX_ITEMS or all(item.synthetic for item in prefix):
            logger.debug("nothing to compress (prefix of %d items)", len(prefix))
            return history, None

        try:
            summary = await self.channel.summarize(render_transcript(prefix))
        except AuthenticationError:
            raise
        except Exception as e:
            raise CompressionFailure(f"summarization request failed: {e}") from e
        summary = (summary or "").strip()
        if not summary:
            raise CompressionFailure("model returned an empty summary")

        summary_item = HistoryItem(
            role="user", content=f"{SUMMARY_PREFIX}\n{summary}", synthetic=True
        )
        new_history = history[:head] + [summary_item] + history[split:]
        new_tokens = estimate_tokens(new_history)
        if new_tokens >= current_estimate:
            raise CompressionFailure(
                f"summary did not shrink history ({current_estimate} -> {new_tokens} tokens)"
            )

        self._last_result = (len(new_history), new_tokens)
        snapshot = CompressionSnapshot(
            summary_text=summary,
            original_token_count=current_estimate,
            new_token_count=new_tokens,
            retained_tail_start_index=split,
        )
        return new_history, snapshot

    def reset(self) -> None:
        self._last_result = None
