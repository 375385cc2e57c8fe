"""
Structured reasons a send was blocked by the compliance gate.
Values travel through the engine as typed objects and are only serialized
(to JSON) when written to gate_evaluations.
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Reason(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def message(self) -> str:
        return self.code


class OptedOut(_Reason):
    code: Literal["opted_out"] = "opted_out"
    source: str = "lead"  # lead, ledger

    @property
    def message(self) -> str:
        return f"Recipient has opted out ({self.source})"


class QuietHours(_Reason):
    code: Literal["quiet_hours"] = "quiet_hours"
    local_time: str
    window_start: str
    window_end: str
    next_allowed_at: Optional[datetime] = None

    @property
    def message(self) -> str:
        return f"Local time {self.local_time} outside send window {self.window_start}-{self.window_end}"


class MinGap(_Reason):
    code: Literal["min_gap"] = "min_gap"
    min_gap_minutes: int
    last_sent_at: datetime

    @property
    def message(self) -> str:
        return f"Last outbound less than {self.min_gap_minutes} minutes ago"


class CapExceeded(_Reason):
    code: Literal["day_cap", "week_cap"]
    window: Literal["day", "week"]
    count: int
    cap: int

    @property
    def message(self) -> str:
        return f"{self.window.title()} cap reached ({self.count}/{self.cap})"

    @classmethod
    def for_window(cls, window: str, count: int, cap: int) -> "CapExceeded":
        return cls(code=f"{window}_cap", window=window, count=count, cap=cap)


BlockReason = Annotated[
    Union[OptedOut, QuietHours, MinGap, CapExceeded],
    Field(discriminator="code"),
]

block_reason_adapter: TypeAdapter[BlockReason] = TypeAdapter(BlockReason)


def dump_block_reason(reason) -> Optional[dict]:
    """Serialize a BlockReason for storage. None passes through."""
    if reason is None:
        return None
    return block_reason_adapter.dump_python(reason, mode="json")


def load_block_reason(data: Optional[dict]):
    """Rebuild a BlockReason from its stored JSON form."""
    if not data:
        return None
    return block_reason_adapter.validate_python(data)
