"""出力パス・ファイル名の命名規則。"""

from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

TZ_JST = ZoneInfo("Asia/Tokyo")

# ルートは環境変数で差し替え可
DEFAULT_RESULT_ROOT = str((Path.cwd() / "crowdtag_data" / "output").resolve())

_AGENT_ID_RE_CACHE: dict[str, re.Pattern] = {}


def result_root() -> Path:
    return Path(os.getenv("CROWDTAG_RESULT_ROOT") or DEFAULT_RESULT_ROOT)


def meta_root() -> Path:
    return Path(os.getenv("CROWDTAG_META_ROOT") or (result_root() / "meta"))


def now_jst() -> str:
    return datetime.now(TZ_JST).strftime("%Y%m%d_%H%M%S")


def parse_agent_id(name: str, prefix: str = "agent_") -> int:
    """名前からエージェントIDを取り出す。

    `prefix` の直後に続く数字列をIDとみなす（名前中のどこにあってもよい）。

    Args:
        name: ファイル名（拡張子なし）やオブジェクト名。
        prefix: IDの直前に置かれる接頭辞。

    Returns:
        エージェントID。取り出せない場合は -1。
    """
    pattern = _AGENT_ID_RE_CACHE.get(prefix)
    if pattern is None:
        pattern = re.compile(re.escape(prefix) + r"(\d+)")
        _AGENT_ID_RE_CACHE[prefix] = pattern
    match = pattern.search(name)
    if match is None:
        return -1
    return int(match.group(1))


def tagged_output_path(output_dir: Path, base_name: str, suffix: str = "_tagged") -> Path:
    return Path(output_dir) / f"{base_name}{suffix}.jsonl"


def agent_image_dir(images_root: Path, agent_id: int, prefix: str = "agent_") -> Path:
    return Path(images_root) / f"{prefix}{agent_id}"


def image_file_name(anchor_index: int, side: str, frame: int, ext: str) -> str:
    # アンカー番号・start/end・フレームを含めて再実行時も衝突しない名前にする
    return f"anchor_{anchor_index:06d}_{side}_gf_{frame:06d}.{ext}"


def relative_posix(path: Path, start: Path) -> str:
    """`start` からの相対パスを `/` 区切りで返す。相対化できなければ絶対パス。"""
    try:
        return Path(os.path.relpath(Path(path), Path(start))).as_posix()
    except ValueError:
        # Windows で別ドライブの場合
        return Path(path).as_posix()


def meta_paths(dt: str, ver: str) -> dict[str, Path]:
    """設定・ログの保存先パスを返す。"""
    root = meta_root()
    return {
        "config_path": root / "configs" / f"run_{ver}_{dt}_params.json",
        "log_path": root / "logs" / f"run_{dt}.log",
    }
