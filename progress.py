"""
進度計算

1. 任務狀態 -> 進度百分比 (progress_for_status)
2. 加權階層進度: Lesson -> Unit -> Book -> Grade,另外 Stage 平行一層
3. 專案整體進度

Lesson 和 Stage 的進度 = 底下任務 progress 的平均
Unit / Book / Grade 的進度 = sum(子節點進度 * 子節點 weight / 100)

權重不會重新正規化:呼叫前應該先用 weights.validate_weights 檢查,
總和不是 100 時算出來的結果本來就會偏掉。
"""

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

from domain import LESSON, HierarchyNode, ProjectSnapshot

STATUS_PROGRESS = {
    'not-started': 0,
    'in-progress': 50,
    'under-review': 90,
    'completed': 100,
    'blocked': 25,
}

TASK_STATUSES = tuple(STATUS_PROGRESS)

PROGRESS_SOURCES = ('auto', 'stages', 'hierarchy', 'combined')


def progress_for_status(status) -> int:
    """任務狀態對應的標準進度,不認得的狀態一律 0"""
    if not isinstance(status, str):
        return 0
    return STATUS_PROGRESS.get(status, 0)


def round_half_up(value: float) -> int:
    # 內建 round() 是銀行家捨入 (2.5 -> 2),進度要 2.5 -> 3
    return int(math.floor(value + 0.5))


@dataclass
class ProgressResult:
    progress: int
    completed_weight: float
    total_weight: float

    def to_dict(self):
        return {
            'progress': self.progress,
            'completed_weight': round(self.completed_weight, 2),
            'total_weight': round(self.total_weight, 2),
        }


EMPTY_RESULT = ProgressResult(progress=0, completed_weight=0.0, total_weight=0.0)


# ============================================
# 任務平均 (Lesson / Stage)
# ============================================

def _task_average(tasks, field_name, value) -> ProgressResult:
    matched = [t for t in tasks if getattr(t, field_name) == value]
    if not matched:
        return EMPTY_RESULT

    average = sum(t.progress for t in matched) / len(matched)
    return ProgressResult(
        progress=round_half_up(average),
        completed_weight=average,
        total_weight=100.0,
    )


def lesson_progress(lesson_id, tasks) -> ProgressResult:
    return _task_average(tasks, 'lesson_id', lesson_id)


def stage_progress(stage_id, tasks) -> ProgressResult:
    return _task_average(tasks, 'stage_id', stage_id)


# ============================================
# 加權彙總
# ============================================

def _weighted(parts) -> ProgressResult:
    """
    parts: (子節點進度, 子節點 weight) 的序列

    total_weight 只是診斷用,不拿來除
    """
    total_weighted = 0.0
    total_weight = 0.0
    for child_progress, weight in parts:
        total_weighted += child_progress * weight / 100
        total_weight += weight

    progress = round_half_up(total_weighted) if total_weight > 0 else 0
    return ProgressResult(
        progress=progress,
        completed_weight=total_weighted,
        total_weight=total_weight,
    )


def node_progress(node: HierarchyNode, tasks) -> ProgressResult:
    """
    任一階層節點的進度

    Lesson 是葉層級,直接取任務平均;其他層級遞迴彙總子節點,
    沒有子節點就是 0。
    """
    if node.level == LESSON:
        return lesson_progress(node.id, tasks)

    return _weighted(
        (node_progress(child, tasks).progress, child.weight)
        for child in node.children
    )


def unit_progress(unit: HierarchyNode, tasks) -> ProgressResult:
    return node_progress(unit, tasks)


def book_progress(book: HierarchyNode, tasks) -> ProgressResult:
    return node_progress(book, tasks)


def grade_progress(grade: HierarchyNode, tasks) -> ProgressResult:
    return node_progress(grade, tasks)


# ============================================
# 專案進度
# ============================================

def has_lessons(nodes: Iterable[HierarchyNode]) -> bool:
    """樹裡是否至少有一個 lesson"""
    return any(node.level == LESSON or has_lessons(node.children) for node in nodes)


def resolve_progress_source(project: ProjectSnapshot, source: Optional[str] = None) -> str:
    """
    決定專案進度用哪一組權重

    stage 與 grade 兩組權重各自加總到 100,混在一起分母會變 200,
    預設一次只用一組。

    auto: 樹裡有 lesson 才用 hierarchy,否則用 stages。
    階層進度只算掛在 lesson 上的任務,只有 grade / book 的樹永遠是 0。
    """
    source = source or project.progress_source or 'auto'
    if source == 'auto':
        return 'hierarchy' if has_lessons(project.grades) else 'stages'
    return source


def stages_breakdown(project: ProjectSnapshot, tasks) -> ProgressResult:
    return _weighted(
        (stage_progress(stage.id, tasks).progress, stage.weight)
        for stage in project.stages
    )


def hierarchy_breakdown(project: ProjectSnapshot, tasks) -> ProgressResult:
    return _weighted(
        (grade_progress(grade, tasks).progress, grade.weight)
        for grade in project.grades
    )


def project_progress(project: ProjectSnapshot, tasks, source: Optional[str] = None) -> ProgressResult:
    """
    專案整體進度

    combined: stage 與 grade 的加權貢獻累加到同一個總和,分母也一起累加
    """
    source = resolve_progress_source(project, source)
    if source == 'hierarchy':
        return hierarchy_breakdown(project, tasks)
    if source == 'combined':
        return _weighted(
            [(stage_progress(stage.id, tasks).progress, stage.weight) for stage in project.stages]
            + [(grade_progress(grade, tasks).progress, grade.weight) for grade in project.grades]
        )
    return stages_breakdown(project, tasks)


def annotate_tree(nodes: Iterable[HierarchyNode], tasks) -> List[dict]:
    """把階層樹轉成 dict,每個節點附上計算出的 progress (給 API 回應用)"""
    tasks = list(tasks)
    annotated = []
    for node in nodes:
        result = node_progress(node, tasks)
        item = {
            'id': node.id,
            'level': node.level,
            'name': node.name,
            'weight': node.weight,
            'order_index': node.order,
            'progress': result.progress,
        }
        if node.level != LESSON:
            item['children'] = annotate_tree(node.children, tasks)
        annotated.append(item)
    return annotated
