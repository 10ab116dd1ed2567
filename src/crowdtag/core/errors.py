"""エラーコード付き例外とコード定義。"""

# 入力
EC_INPUT_FOLDER = -2101
EC_INPUT_EMPTY = -2102
EC_INPUT_RECORD = -2103

# 設定
EC_CONFIG_INVALID = -2201

# キャプチャ
EC_CAPTURE_FAILED = -2501

# 出力
EC_STORAGE_DST_INVALID = -2701
EC_STORAGE_PERM = -2702
EC_STORAGE_IO = -2704

# フレームドライバ
EC_DRIVER_NOT_READY = -2801

# 想定外
EC_RUN_UNKNOWN = -2900


class TaggerError(Exception):
    """エラーコード付き例外。"""

    def __init__(self, code: int, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


__all__ = [
    "TaggerError",
    "EC_INPUT_FOLDER",
    "EC_INPUT_EMPTY",
    "EC_INPUT_RECORD",
    "EC_CONFIG_INVALID",
    "EC_CAPTURE_FAILED",
    "EC_STORAGE_DST_INVALID",
    "EC_STORAGE_PERM",
    "EC_STORAGE_IO",
    "EC_DRIVER_NOT_READY",
    "EC_RUN_UNKNOWN",
]
