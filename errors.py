class ValidationError(Exception):
    """
    輸入快照不符合前置條件

    例如專案沒有 category、category 沒有 stage、專案沒有任何 hierarchy。
    HTTP 層會轉成 400 回應,不重試。
    """


class DuplicateTaskError(Exception):
    """儲存層因唯一性約束拒絕寫入 (同一個 leaf x stage 已經有任務)"""
