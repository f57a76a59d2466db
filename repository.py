"""
資料庫 <-> 核心快照

progress / weights / bulk_tasks 不碰 ORM,這裡負責把 model 轉成 domain 的 dataclass,
以及批量產生任務時的寫入。
"""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from models import db, Grade, Book, Unit, Stage, StageTemplate, Task, HIERARCHY_MODELS
from domain import (
    GRADE, LEVELS, LEVEL_TASK_FIELDS,
    HierarchyNode, StageSnapshot, TaskSnapshot, ProjectSnapshot,
)
from errors import DuplicateTaskError
import logging

logger = logging.getLogger(__name__)

# ============================================
# Model -> 快照
# ============================================

def build_node(level, row):
    """單一 model row -> HierarchyNode,子節點一路遞迴下去"""
    model, parent_field, children_attr = HIERARCHY_MODELS[level]
    children = []
    if children_attr:
        child_level = LEVELS[LEVELS.index(level) + 1]
        children = [build_node(child_level, child) for child in getattr(row, children_attr)]
    return HierarchyNode(
        id=row.id,
        level=level,
        name=row.name,
        weight=float(row.weight or 0),
        order=row.order_index or 0,
        parent_id=getattr(row, parent_field),
        children=children,
    )


def build_hierarchy(grades):
    """Grade model 列表 -> HierarchyNode 樹 (子節點順序依 relationship 的 order_by)"""
    return [build_node(GRADE, grade) for grade in grades]


def task_snapshot(task):
    return TaskSnapshot(
        id=task.id,
        stage_id=task.stage_id,
        status=task.status,
        progress=task.progress or 0,
        grade_id=task.grade_id,
        book_id=task.book_id,
        unit_id=task.unit_id,
        lesson_id=task.lesson_id,
    )


def load_grades(project_id):
    # 一次載入整棵樹,避免 N+1
    return Grade.query.filter_by(project_id=project_id).options(
        selectinload(Grade.books).selectinload(Book.units).selectinload(Unit.lessons)
    ).order_by(Grade.order_index, Grade.name).all()


def load_hierarchy(project_id):
    return build_hierarchy(load_grades(project_id))


def load_stages(category_id):
    """category 的 stage 列表,依樣板 order_index 排序,weight 取自樣板"""
    if not category_id:
        return []

    rows = db.session.query(StageTemplate, Stage).join(
        Stage, StageTemplate.stage_id == Stage.id
    ).filter(
        StageTemplate.category_id == category_id
    ).order_by(
        StageTemplate.order_index.asc(), Stage.created_at.asc(), Stage.id.asc()
    ).all()

    return [
        StageSnapshot(
            id=stage.id,
            name=stage.name,
            weight=float(template.weight or 0),
            order=template.order_index or 0,
        )
        for template, stage in rows
    ]


def load_tasks(project_id):
    return [task_snapshot(t) for t in Task.query.filter_by(project_id=project_id).all()]


def load_tasks_for_node(level, node_id):
    """掛在某個節點底下的任務 (任務會帶完整的祖先 id,所以用該層的欄位過濾即可)"""
    column = getattr(Task, LEVEL_TASK_FIELDS[level])
    return [task_snapshot(t) for t in Task.query.filter(column == node_id).all()]


def load_project_snapshot(project):
    return ProjectSnapshot(
        id=project.id,
        name=project.name,
        category_id=project.category_id,
        end_date=project.end_date,
        progress_source=project.progress_source or 'auto',
        stages=load_stages(project.category_id),
        grades=load_hierarchy(project.id),
    )

# ============================================
# 寫回
# ============================================

def update_weight(level, node_id, weight):
    """
    更新單一節點的 weight (不 commit,由呼叫端一次 commit)

    Returns:
        bool: 節點是否存在
    """
    model = HIERARCHY_MODELS[level][0]
    node = db.session.get(model, node_id)
    if not node:
        return False
    node.weight = weight
    return True


class SQLAlchemyTaskStore:
    """BulkTaskGenerator 用的持久層"""

    def stages_for_category(self, category_id):
        return load_stages(category_id)

    def hierarchy_for_project(self, project_id):
        return load_hierarchy(project_id)

    def tasks_for_project(self, project_id):
        return load_tasks(project_id)

    def insert_task(self, task_data):
        """
        逐筆 commit,單筆失敗不影響其他筆

        唯一性約束擋下 (同專案同 generation_key) 會轉成 DuplicateTaskError,
        其他資料庫錯誤照常往上丟。
        """
        task = Task(**task_data)
        db.session.add(task)
        try:
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            if not _is_unique_violation(e):
                raise
            logger.info(f"Duplicate generated task rejected: {task_data.get('generation_key')}")
            raise DuplicateTaskError(task_data.get('generation_key')) from e
        return task.id


def _is_unique_violation(error):
    # SQLite: "UNIQUE constraint failed", MySQL: "Duplicate entry", PostgreSQL: "duplicate key value"
    message = str(error.orig).lower()
    return 'unique' in message or 'duplicate' in message
