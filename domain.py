"""
核心計算用的資料快照

progress / weights / bulk_tasks 都只吃這裡的 dataclass,
不直接碰 SQLAlchemy model,方便單獨測試。
快照由 repository.py 從資料庫建立。
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

# ============================================
# 階層層級
# ============================================

GRADE = 'grade'
BOOK = 'book'
UNIT = 'unit'
LESSON = 'lesson'

LEVELS = (GRADE, BOOK, UNIT, LESSON)

# 每一層對應到 task 上的外鍵欄位
LEVEL_TASK_FIELDS = {
    GRADE: 'grade_id',
    BOOK: 'book_id',
    UNIT: 'unit_id',
    LESSON: 'lesson_id',
}


@dataclass
class HierarchyNode:
    """
    Grade / Book / Unit / Lesson 共用的節點

    weight 是此節點佔父節點進度的百分比 (0-100)
    children 是下一層的節點,Lesson 永遠沒有 children
    """
    id: int
    level: str
    name: str
    weight: float = 0.0
    order: int = 0
    parent_id: Optional[int] = None
    children: List['HierarchyNode'] = field(default_factory=list)

    @property
    def is_leaf_level(self) -> bool:
        return self.level == LESSON


@dataclass
class StageSnapshot:
    id: int
    name: str
    weight: float = 0.0
    order: int = 0


@dataclass
class TaskSnapshot:
    id: Optional[int]
    stage_id: Optional[int]
    status: str = 'not-started'
    progress: int = 0
    grade_id: Optional[int] = None
    book_id: Optional[int] = None
    unit_id: Optional[int] = None
    lesson_id: Optional[int] = None


@dataclass
class ProjectSnapshot:
    id: int
    name: str
    category_id: Optional[int] = None
    end_date: Optional[date] = None
    progress_source: str = 'auto'
    stages: List[StageSnapshot] = field(default_factory=list)
    grades: List[HierarchyNode] = field(default_factory=list)


@dataclass
class LowestUnit:
    """
    沒有子節點的最底層單位 (可能是 lesson,也可能是空的 unit/book/grade)

    祖先鏈上比自己低的層級都是 None
    """
    level: str
    grade_id: int
    book_id: Optional[int]
    unit_id: Optional[int]
    lesson_id: Optional[int]
    component_path: str

    def to_dict(self):
        return {
            'level': self.level,
            'grade_id': self.grade_id,
            'book_id': self.book_id,
            'unit_id': self.unit_id,
            'lesson_id': self.lesson_id,
            'component_path': self.component_path,
        }
