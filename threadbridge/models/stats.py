"""Usage statistics for a Claude Code session."""
import time
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, PrivateAttr


class SessionStats(BaseModel):
    """Cumulative and per-turn usage of one session.

    Only the owning session's reader task mutates an instance. Timestamps are
    ``time.monotonic()`` values and are cleared at the start of every turn, so
    derived values never mix data from two turns.
    """

    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    turn_input_tokens: int = 0
    turn_output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    context_window: Optional[int] = None
    model_id: Optional[str] = None

    message_sent_at: Optional[float] = None
    first_token_at: Optional[float] = None
    complete_at: Optional[float] = None

    # Cumulative cost last reported by the current process
    _process_cost: float = PrivateAttr(default=0.0)

    @classmethod
    def seeded(cls, total_cost: float = 0.0, total_input_tokens: int = 0, total_output_tokens: int = 0) -> "SessionStats":
        """Stats for a resumed session, continuing persisted totals."""
        return cls(
            total_cost=total_cost,
            total_input_tokens=total_input_tokens,
            total_output_tokens=total_output_tokens,
        )

    def time_to_first_token(self) -> Optional[float]:
        if self.message_sent_at is None or self.first_token_at is None:
            return None
        return self.first_token_at - self.message_sent_at

    def tokens_per_second(self) -> Optional[float]:
        if self.first_token_at is None or self.complete_at is None or self.turn_output_tokens <= 0:
            return None
        duration = self.complete_at - self.first_token_at
        if duration <= 0:
            return None
        return self.turn_output_tokens / duration

    def context_percent(self) -> Optional[float]:
        if not self.context_window:
            return None
        context_tokens = self.turn_input_tokens + self.cache_read_tokens + self.cache_creation_tokens
        if context_tokens <= 0:
            return None
        return context_tokens / self.context_window * 100

    def reset_turn(self):
        self.turn_input_tokens = 0
        self.turn_output_tokens = 0
        self.cache_read_tokens = 0
        self.cache_creation_tokens = 0
        self.message_sent_at = None
        self.first_token_at = None
        self.complete_at = None

    def begin_turn(self, now: Optional[float] = None):
        self.reset_turn()
        self.message_sent_at = time.monotonic() if now is None else now

    def mark_first_token(self, now: Optional[float] = None):
        if self.first_token_at is None:
            self.first_token_at = time.monotonic() if now is None else now

    def apply_result(self, event: Dict[str, Any], now: Optional[float] = None):
        """Fold a ``result`` event into the counters."""
        self.complete_at = time.monotonic() if now is None else now

        usage = event.get("usage")
        if isinstance(usage, dict):
            self.turn_input_tokens = usage.get("input_tokens") or 0
            self.turn_output_tokens = usage.get("output_tokens") or 0
            self.cache_read_tokens = usage.get("cache_read_input_tokens") or 0
            self.cache_creation_tokens = usage.get("cache_creation_input_tokens") or 0
            self.total_input_tokens += self.turn_input_tokens
            self.total_output_tokens += self.turn_output_tokens

        cost = event.get("total_cost_usd")
        if isinstance(cost, (int, float)):
            # The CLI reports cost per process; a lower value means a new process.
            delta = cost - self._process_cost if cost >= self._process_cost else cost
            self.total_cost += delta
            self._process_cost = cost

        model_usage = event.get("modelUsage")
        if isinstance(model_usage, dict):
            entries = {k: v for k, v in model_usage.items() if isinstance(v, dict)}
            if entries:
                primary_id, primary = max(entries.items(), key=lambda item: item[1].get("contextWindow") or 0)
                self.model_id = primary_id
                if primary.get("contextWindow"):
                    self.context_window = primary["contextWindow"]

    def format_summary(self, prefix: str) -> str:
        """One-line summary, e.g. ``Done: 1200 tokens (turn: in:800 out:400) | 3% context``."""
        total = self.total_input_tokens + self.total_output_tokens
        parts = [
            f"{prefix}:",
            f"{total} tokens (turn: in:{self.turn_input_tokens} out:{self.turn_output_tokens})",
        ]
        parts.extend(self._timing_parts())
        parts.append(f"${self.total_cost:.4f}")
        if self.model_id:
            parts.append(f"model={self.model_id}")
        return " | ".join(parts)

    def _timing_parts(self) -> List[str]:
        parts = []
        pct = self.context_percent()
        if pct is not None:
            parts.append(f"{pct:.0f}% context")
        ttft = self.time_to_first_token()
        if ttft is not None:
            parts.append(f"TTFT: {ttft:.1f}s")
        tps = self.tokens_per_second()
        if tps is not None:
            parts.append(f"{tps:.0f} tok/s")
        return parts

    def format_table(self, title: str = "📊 Session Stats") -> str:
        """Multi-line report for the /stats command."""
        total_in = self.total_input_tokens
        total_out = self.total_output_tokens
        lines = [
            title,
            "",
            f"Total tokens: {total_in + total_out:,} (in: {total_in:,}, out: {total_out:,})",
        ]
        pct = self.context_percent()
        if pct is not None:
            lines.append(f"Context used: {pct:.1f}% of {self.context_window:,}")
        if self.model_id:
            lines.append(f"Model: {self.model_id}")
        ttft = self.time_to_first_token()
        if ttft is not None:
            lines.append(f"Last TTFT: {ttft:.1f}s")
        tps = self.tokens_per_second()
        if tps is not None:
            lines.append(f"Last speed: {tps:.0f} tok/s")
        lines.append(f"Cost: ${self.total_cost:.4f}")
        return "\n".join(lines)
