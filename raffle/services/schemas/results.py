"""Result dataclasses returned by service operations."""

from dataclasses import dataclass, field


@dataclass
class StockSyncResult:
    events_drained: int = 0
    keys_written: int = 0
    keys_skipped: int = 0
    units_subtracted: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class CompensationResult:
    partitions_scanned: int = 0
    tasks_scanned: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class AwardRecordResult:
    user_id: str
    order_id: str
    award_id: int
    message_id: str | None
    award_title: str = ""
    award_config: str | None = None
    duplicate: bool = False
    published: bool = False
