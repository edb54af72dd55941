"""
Cycle calendar — fixed-length reporting cycles counted from an epoch date.

Cycle 1 starts on the epoch; each cycle is `length` days long and ends on
start + length - 1.
"""
from dataclasses import dataclass
from datetime import date, timedelta

from goalboard.config import CYCLE_EPOCH, CYCLE_LENGTH_DAYS
from goalboard.errors import MigrationRecordError


@dataclass(frozen=True)
class CycleInfo:
    cycle_number: int
    cycle_start_date: date
    cycle_end_date: date
    day_in_cycle: int
    total_cycle_days: int

    def apply_to(self, snapshot):
        snapshot.cycle_number = self.cycle_number
        snapshot.cycle_start_date = self.cycle_start_date
        snapshot.cycle_end_date = self.cycle_end_date
        snapshot.day_in_cycle = self.day_in_cycle
        snapshot.total_cycle_days = self.total_cycle_days


def compute_cycle_info(report_date: date, epoch: date = None, length: int = None) -> CycleInfo:
    epoch = epoch or CYCLE_EPOCH
    length = length or CYCLE_LENGTH_DAYS
    if length < 1:
        raise ValueError(f"cycle length must be positive, got {length}")
    if report_date is None:
        raise MigrationRecordError("report date is missing")
    if report_date < epoch:
        raise MigrationRecordError(
            f"report date {report_date.isoformat()} precedes cycle epoch {epoch.isoformat()}"
        )

    offset = (report_date - epoch).days
    number = offset // length + 1
    start = epoch + timedelta(days=(number - 1) * length)
    return CycleInfo(
        cycle_number=number,
        cycle_start_date=start,
        cycle_end_date=start + timedelta(days=length - 1),
        day_in_cycle=(report_date - start).days + 1,
        total_cycle_days=length,
    )
