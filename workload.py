"""
每日工作負載

排程 (allocation) 在 start_date ~ end_date 之間 (含頭尾) 每天佔用 hours_per_day 小時。
某一天的負載 = 當天有效排程的 hours_per_day 加總,再依門檻分成四級:

    0              available
    < busy         normal
    >= busy        busy
    > full day     overloaded

allocation 可以是 ORM 物件或任何有 user_id / hours_per_day / start_date / end_date 屬性的物件。
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List

FULL_DAY_HOURS = 8.0
BUSY_HOURS = 6.0

WORKLOAD_STATUSES = ('available', 'normal', 'busy', 'overloaded')


def workload_status(total_hours: float, full_day=FULL_DAY_HOURS, busy=BUSY_HOURS) -> str:
    if total_hours <= 0:
        return 'available'
    if total_hours > full_day:
        return 'overloaded'
    if total_hours >= busy:
        return 'busy'
    return 'normal'


def covers(allocation, day: date) -> bool:
    return allocation.start_date <= day <= allocation.end_date


@dataclass
class UserWorkload:
    user_id: int
    total_hours: float = 0.0
    allocation_ids: List[int] = field(default_factory=list)
    status: str = 'available'

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'total_hours': round(self.total_hours, 2),
            'allocation_count': len(self.allocation_ids),
            'allocation_ids': self.allocation_ids,
            'status': self.status,
        }


def workload_by_user(allocations: Iterable, day: date, full_day=FULL_DAY_HOURS,
                     busy=BUSY_HOURS) -> Dict[int, UserWorkload]:
    """當天有排程的使用者 -> UserWorkload,沒有排程的人不會出現"""
    result: Dict[int, UserWorkload] = {}
    for allocation in allocations:
        if not covers(allocation, day):
            continue
        entry = result.setdefault(allocation.user_id, UserWorkload(user_id=allocation.user_id))
        entry.total_hours += float(allocation.hours_per_day or 0)
        if getattr(allocation, 'id', None) is not None:
            entry.allocation_ids.append(allocation.id)

    for entry in result.values():
        entry.status = workload_status(entry.total_hours, full_day, busy)
    return result


def status_counts(workloads: Iterable[UserWorkload]) -> Dict[str, int]:
    counts = {status: 0 for status in WORKLOAD_STATUSES}
    for entry in workloads:
        counts[entry.status] += 1
    return counts

