"""アノテーション入力値の検証・正規化ユーティリティ。"""

from __future__ import annotations

import math
from typing import Any, Optional, Tuple

import numpy as np


def clamp_radius(value: Any) -> float:
    """半径を非負の float に丸める。"""
    radius = float(value)
    if math.isnan(radius):
        return 0.0
    return max(0.0, radius)


def coerce_frames(value: Any) -> Optional[Tuple[int, ...]]:
    """`globalFrames` を整数タプルに変換する。

    Args:
        value: JSONから読んだ値。

    Returns:
        空でない整数列ならタプル、それ以外は None。
    """
    if not isinstance(value, list) or not value:
        return None
    frames = []
    for item in value:
        if isinstance(item, bool):
            return None
        if isinstance(item, int):
            frames.append(item)
        elif isinstance(item, float) and item.is_integer():
            frames.append(int(item))
        else:
            return None
    return tuple(frames)


def coerce_vec3(value: Any) -> Optional[np.ndarray]:
    """先頭3要素が数値の配列を3次元ベクトルに変換する。不正なら None。"""
    if not isinstance(value, (list, tuple)) or len(value) < 3:
        return None
    try:
        vec = np.array([float(value[0]), float(value[1]), float(value[2])], dtype=float)
    except (TypeError, ValueError):
        return None
    if not np.all(np.isfinite(vec)):
        return None
    return vec


def coerce_group_ids(value: Any) -> Tuple[int, ...]:
    """グループ指定からメンバーIDを取り出す。

    整数IDの配列と、`{"members": [{"id": ..}, ..]}` 形式のグループオブジェクト
    配列の両方を受け付ける。解釈できない要素は無視する。
    """
    if not isinstance(value, list):
        return ()
    ids: list[int] = []
    for item in value:
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            ids.append(item)
        elif isinstance(item, dict):
            members = item.get("members")
            if isinstance(members, list):
                for member in members:
                    if isinstance(member, dict) and isinstance(member.get("id"), int):
                        ids.append(int(member["id"]))
            elif isinstance(item.get("id"), int):
                ids.append(int(item["id"]))
    # 順序を保ったまま重複除去
    return tuple(dict.fromkeys(ids))
