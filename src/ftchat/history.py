import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, List, Optional

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SYSTEM_SENDER = "System"


class MessageKind(enum.Enum):
    BROADCAST = "BROADCAST"
    PRIVATE = "PRIVATE"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class HistoryRecord:
    sender: str
    kind: MessageKind
    text: str
    recipient: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def visible_to(self, identity: str) -> bool:
        if self.kind is MessageKind.PRIVATE:
            return identity in (self.sender, self.recipient)
        return True

    def format(self) -> str:
        # 2025-03-28 08:16:00 | PRIVATE | Alice -> Bob: Hi there
        if self.kind is MessageKind.PRIVATE:
            detail = f"{self.sender} -> {self.recipient}: {self.text}"
        else:
            detail = f"{self.sender}: {self.text}"
        return f"{self.timestamp.strftime(TIMESTAMP_FORMAT)} | {self.kind.value} | {detail}"


class MessageHistory:
    """Most recent ``maxlen`` chat records, oldest dropped first."""

    def __init__(self, maxlen: int):
        self._records: Deque[HistoryRecord] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def maxlen(self) -> int:
        return self._records.maxlen or 0

    def record(self, record: HistoryRecord) -> None:
        self._records.append(record)

    def broadcast(self, sender: str, text: str) -> None:
        self.record(HistoryRecord(sender=sender, kind=MessageKind.BROADCAST, text=text))

    def private(self, sender: str, recipient: str, text: str) -> None:
        self.record(HistoryRecord(sender=sender, kind=MessageKind.PRIVATE, text=text, recipient=recipient))

    def system(self, text: str) -> None:
        self.record(HistoryRecord(sender=SYSTEM_SENDER, kind=MessageKind.SYSTEM, text=text))

    def records(self) -> List[HistoryRecord]:
        return list(self._records)

    def visible_to(self, identity: str) -> List[HistoryRecord]:
        return [r for r in self._records if r.visible_to(identity)]
