"""
同層節點的權重檢查與平均分配

items 可以是 dict (有 'weight' key) 或任何有 weight 屬性的物件,
例如 domain.HierarchyNode、domain.StageSnapshot。
"""

from dataclasses import is_dataclass, replace

WEIGHT_TOTAL = 100
WEIGHT_TOLERANCE = 0.1


def _weight_of(item) -> float:
    if isinstance(item, dict):
        return float(item.get('weight') or 0)
    return float(getattr(item, 'weight', 0) or 0)


def _with_weight(item, weight):
    if isinstance(item, dict):
        return {**item, 'weight': weight}
    if is_dataclass(item):
        return replace(item, weight=weight)
    item.weight = weight
    return item


def total_weight(items) -> float:
    return sum(_weight_of(item) for item in items)


def validate_weights(items, tolerance=WEIGHT_TOLERANCE) -> bool:
    """
    權重總和是否在 100 ± tolerance 之內

    空的列表視為有效:沒有東西需要分配。
    """
    items = list(items)
    if not items:
        return True
    return abs(total_weight(items) - WEIGHT_TOTAL) <= tolerance


def weight_report(items, item_type, tolerance=WEIGHT_TOLERANCE) -> dict:
    """validate_weights 的完整版,附上總和與給使用者看的訊息"""
    items = list(items)
    total = total_weight(items)
    if validate_weights(items, tolerance):
        message = 'Weights are valid'
        valid = True
    else:
        message = f'{item_type} weights must sum to 100%. Current total: {total:g}%'
        valid = False
    return {
        'valid': valid,
        'total': round(total, 2),
        'count': len(items),
        'message': message,
    }


def distribute_evenly(items) -> list:
    """
    平均分配權重,總和剛好是 100

    每個項目拿 floor(100 / n),餘數全部加到第一個項目。
    呼叫端要先依 order 排好,才知道是誰吸收餘數。
    """
    items = list(items)
    if not items:
        return items

    base = WEIGHT_TOTAL // len(items)
    remainder = WEIGHT_TOTAL - base * len(items)

    return [
        _with_weight(item, base + remainder if index == 0 else base)
        for index, item in enumerate(items)
    ]
