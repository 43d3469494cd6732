# retention_engine/services/retention/results.py
"""Result of a single cleanup invocation."""

from dataclasses import dataclass

LOCKED = "locked"


@dataclass
class CleanupResult:
    """
    Outcome of one cleanup invocation for one entity type.

    Field presence in to_dict():
    - skipped: count, skipped, reason, dry_run (nothing else)
    - dry run: count (total expired), dry_run
    - destroy: count, failed, remaining, dry_run
    - delete_all / archive: count, remaining, dry_run (never failed)
    """

    count: int = 0
    dry_run: bool = False
    failed: int | None = None
    remaining: bool | None = None
    skipped: bool = False
    reason: str | None = None

    @classmethod
    def skipped_result(cls, reason: str = LOCKED) -> "CleanupResult":
        return cls(count=0, dry_run=False, skipped=True, reason=reason)

    def to_dict(self) -> dict:
        if self.skipped:
            return {"count": 0, "skipped": True, "reason": self.reason, "dry_run": False}

        data: dict = {"count": self.count, "dry_run": self.dry_run}
        if self.failed is not None:
            data["failed"] = self.failed
        if self.remaining is not None:
            data["remaining"] = self.remaining
        return data
