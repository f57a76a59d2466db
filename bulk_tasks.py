"""
批量產生任務

對專案的每一個「最底層單位」(沒有子節點的 lesson / unit / book / grade)
和 category 的每一個 stage 各建一個任務,已經存在的組合跳過。

store 是持久層的協作者,需要提供:
    stages_for_category(category_id) -> List[StageSnapshot]   (依樣板順序)
    hierarchy_for_project(project_id) -> List[HierarchyNode]  (grade 樹)
    tasks_for_project(project_id) -> List[TaskSnapshot]
    insert_task(task_data: dict) -> task id
        唯一性衝突時要丟 errors.DuplicateTaskError
實作見 repository.SQLAlchemyTaskStore。
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from domain import BOOK, GRADE, LESSON, UNIT, LowestUnit, ProjectSnapshot
from errors import DuplicateTaskError, ValidationError
from progress import progress_for_status

PATH_SEPARATOR = ' > '
NULL_KEY = '-'
ALREADY_EXISTS = 'Task already exists'

DEFAULT_ESTIMATED_HOURS = 8
DEFAULT_DURATION_DAYS = 30


def task_key(grade_id, book_id, unit_id, lesson_id, stage_id):
    """
    去重用的 key

    None 轉成 NULL_KEY,id 一律轉字串,DB 讀出來的 int 和外部傳入的字串才比得起來
    """
    return tuple(
        NULL_KEY if value is None else str(value)
        for value in (grade_id, book_id, unit_id, lesson_id, stage_id)
    )


def generation_key(key) -> str:
    """存進 tasks.generation_key 的字串形式 (DB 唯一性約束用)"""
    return '|'.join(key)


def find_lowest_units(grades) -> List[LowestUnit]:
    """
    找出所有沒有子節點的單位

    順序: 所有 lesson -> 沒有 lesson 的 unit -> 沒有 unit 的 book -> 沒有 book 的 grade,
    同一類裡依樹的順序。
    """
    lessons, units, books, empty_grades = [], [], [], []

    for grade in grades:
        if not grade.children:
            empty_grades.append(LowestUnit(
                level=GRADE, grade_id=grade.id, book_id=None, unit_id=None,
                lesson_id=None, component_path=grade.name,
            ))

        for book in grade.children:
            book_path = PATH_SEPARATOR.join([grade.name, book.name])
            if not book.children:
                books.append(LowestUnit(
                    level=BOOK, grade_id=grade.id, book_id=book.id, unit_id=None,
                    lesson_id=None, component_path=book_path,
                ))

            for unit in book.children:
                unit_path = PATH_SEPARATOR.join([book_path, unit.name])
                if not unit.children:
                    units.append(LowestUnit(
                        level=UNIT, grade_id=grade.id, book_id=book.id, unit_id=unit.id,
                        lesson_id=None, component_path=unit_path,
                    ))

                for lesson in unit.children:
                    lessons.append(LowestUnit(
                        level=LESSON, grade_id=grade.id, book_id=book.id, unit_id=unit.id,
                        lesson_id=lesson.id,
                        component_path=PATH_SEPARATOR.join([unit_path, lesson.name]),
                    ))

    return lessons + units + books + empty_grades


@dataclass
class BulkGenerationResult:
    total_stages: int
    total_units: int
    created: List[dict] = field(default_factory=list)
    skipped: List[dict] = field(default_factory=list)

    @property
    def expected(self) -> int:
        return self.total_stages * self.total_units

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    def to_dict(self):
        return {
            'total_stages': self.total_stages,
            'total_lowest_units': self.total_units,
            'expected_tasks': self.expected,
            'created_count': self.created_count,
            'skipped_count': self.skipped_count,
            'created_tasks': self.created,
            'skipped_tasks': self.skipped,
        }


class BulkTaskGenerator:

    def __init__(self, store, estimated_hours=DEFAULT_ESTIMATED_HOURS,
                 default_duration_days=DEFAULT_DURATION_DAYS):
        self.store = store
        self.estimated_hours = estimated_hours
        self.default_duration_days = default_duration_days

    def generate(self, project: ProjectSnapshot, created_by=None,
                 today: Optional[date] = None) -> BulkGenerationResult:
        if not project.category_id:
            raise ValidationError('Project has no category assigned')

        stages = self.store.stages_for_category(project.category_id)
        if not stages:
            raise ValidationError("No stages configured for this project's category")

        lowest_units = find_lowest_units(self.store.hierarchy_for_project(project.id))
        if not lowest_units:
            raise ValidationError('Project has no hierarchy (grades, books, units or lessons)')

        existing = {
            task_key(t.grade_id, t.book_id, t.unit_id, t.lesson_id, t.stage_id)
            for t in self.store.tasks_for_project(project.id)
        }

        today = today or date.today()
        end_date = project.end_date or today + timedelta(days=self.default_duration_days)

        result = BulkGenerationResult(total_stages=len(stages), total_units=len(lowest_units))

        for unit in lowest_units:
            for stage in stages:
                key = task_key(unit.grade_id, unit.book_id, unit.unit_id, unit.lesson_id, stage.id)
                name = f'{unit.component_path} - {stage.name}'
                summary = {
                    'name': name,
                    'stage_id': stage.id,
                    'stage_name': stage.name,
                    'component_path': unit.component_path,
                    'level': unit.level,
                }

                if key in existing:
                    result.skipped.append({**summary, 'reason': ALREADY_EXISTS})
                    continue

                task_data = {
                    'project_id': project.id,
                    'stage_id': stage.id,
                    'grade_id': unit.grade_id,
                    'book_id': unit.book_id,
                    'unit_id': unit.unit_id,
                    'lesson_id': unit.lesson_id,
                    'name': name,
                    'description': f'Task for {unit.component_path} at {stage.name} stage',
                    'status': 'not-started',
                    'priority': 'medium',
                    'progress': progress_for_status('not-started'),
                    'start_date': today,
                    'end_date': end_date,
                    'estimated_hours': self.estimated_hours,
                    'component_path': unit.component_path,
                    'created_by': created_by,
                    'generation_key': generation_key(key),
                }

                # 另一個請求可能搶先寫入,被唯一性約束擋下就當作已存在
                try:
                    task_id = self.store.insert_task(task_data)
                except DuplicateTaskError:
                    result.skipped.append({**summary, 'reason': ALREADY_EXISTS})
                    continue

                existing.add(key)
                result.created.append({**summary, 'task_id': task_id})

        return result
