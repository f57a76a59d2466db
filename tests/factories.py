"""純計算測試用的快照工廠與記憶體版 task store"""

from domain import BOOK, GRADE, LESSON, UNIT, HierarchyNode, StageSnapshot, TaskSnapshot
from errors import DuplicateTaskError


def lesson(id, name, weight=0, order=0):
    return HierarchyNode(id=id, level=LESSON, name=name, weight=weight, order=order)


def unit(id, name, children=(), weight=0, order=0):
    return HierarchyNode(id=id, level=UNIT, name=name, weight=weight, order=order, children=list(children))


def book(id, name, children=(), weight=0, order=0):
    return HierarchyNode(id=id, level=BOOK, name=name, weight=weight, order=order, children=list(children))


def grade(id, name, children=(), weight=0, order=0):
    return HierarchyNode(id=id, level=GRADE, name=name, weight=weight, order=order, children=list(children))


def task(stage_id=None, progress=0, status='not-started', grade_id=None, book_id=None,
         unit_id=None, lesson_id=None, id=None):
    return TaskSnapshot(id=id, stage_id=stage_id, status=status, progress=progress,
                        grade_id=grade_id, book_id=book_id, unit_id=unit_id, lesson_id=lesson_id)


def stages(*names):
    return [StageSnapshot(id=i, name=name, weight=0, order=i) for i, name in enumerate(names, start=1)]


class FakeStore:
    """記憶體版的 task store,insert_task 依 generation_key 檢查唯一性"""

    def __init__(self, stage_list=None, grades=None, tasks=None, conflicting_keys=()):
        self.stage_list = stage_list or []
        self.grades = grades or []
        self.tasks = list(tasks or [])
        self.inserted = []
        # 模擬另一個請求已經寫入、但這次讀取時還看不到的 key
        self.conflicting_keys = set(conflicting_keys)

    def stages_for_category(self, category_id):
        return self.stage_list

    def hierarchy_for_project(self, project_id):
        return self.grades

    def tasks_for_project(self, project_id):
        return list(self.tasks)

    def insert_task(self, task_data):
        key = task_data['generation_key']
        if key in self.conflicting_keys or any(d['generation_key'] == key for d in self.inserted):
            raise DuplicateTaskError(key)
        self.inserted.append(task_data)
        self.tasks.append(TaskSnapshot(
            id=len(self.inserted),
            stage_id=task_data['stage_id'],
            status=task_data['status'],
            progress=task_data['progress'],
            grade_id=task_data['grade_id'],
            book_id=task_data['book_id'],
            unit_id=task_data['unit_id'],
            lesson_id=task_data['lesson_id'],
        ))
        return len(self.inserted)
