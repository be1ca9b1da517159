"""Counters a job handler reports for one tenant."""
from dataclasses import dataclass, field


@dataclass
class WorkOutcome:
    processed: int = 0
    updated: int = 0
    errored: int = 0
    notes: list[str] = field(default_factory=list)

    def error(self, note: str):
        self.errored += 1
        self.notes.append(note)

    def merge(self, other: "WorkOutcome"):
        self.processed += other.processed
        self.updated += other.updated
        self.errored += other.errored
        self.notes.extend(other.notes)
