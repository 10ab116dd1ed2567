"""エージェント毎の速度・加速度・旋回角の逐次推定。"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

# 経過時間の下限（ゼロ除算回避）
MIN_ELAPSED_SEC = 1e-6

_ZERO = np.zeros(3, dtype=float)


def angle_deg(a: np.ndarray, b: np.ndarray) -> float:
    """2ベクトルのなす角（0〜180度, 符号なし）。どちらかがゼロベクトルなら 0。"""
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom < 1e-15:
        return 0.0
    cos = float(np.dot(a, b)) / denom
    return math.degrees(math.acos(min(1.0, max(-1.0, cos))))


@dataclass(frozen=True)
class KinematicsSample:
    speed: float = 0.0
    accel: float = 0.0
    turn_deg: float = 0.0


class KinematicsTracker:
    """直前サンプル（フレーム, 位置, 速度, 前方向）を保持して運動量を求める。

    フレーム間隔は不規則でよく、経過時間は
    `(frame - prev_frame) * time_per_frame` で求める。
    """

    def __init__(self, time_per_frame: float):
        self.time_per_frame = float(time_per_frame)
        self.has_prev = False
        self.prev_frame: Optional[int] = None
        self.prev_pos = _ZERO.copy()
        self.prev_vel = _ZERO.copy()
        self.prev_forward = _ZERO.copy()

    def reset(self, frame: int, position: np.ndarray, forward: np.ndarray) -> None:
        """非アクティブ時に呼ぶ。速度を持ち越さない。"""
        self.has_prev = False
        self.prev_frame = frame
        self.prev_pos = np.asarray(position, dtype=float).copy()
        self.prev_vel = _ZERO.copy()
        self.prev_forward = np.asarray(forward, dtype=float).copy()

    def observe(self, frame: int, position: np.ndarray, forward: np.ndarray) -> KinematicsSample:
        """新しいサンプルを取り込み、運動量を返す。

        タグを保存しないフレームでも毎tick呼び出し、状態を連続させる。

        Args:
            frame: グローバルフレーム番号。
            position: ワールド座標。
            forward: 前方向ベクトル。

        Returns:
            速度・加速度の大きさと旋回角。アクティブ化直後の最初のサンプルは全て 0。
        """
        pos = np.asarray(position, dtype=float)
        fwd = np.asarray(forward, dtype=float)

        if not self.has_prev:
            self.has_prev = True
            self.prev_frame = frame
            self.prev_pos = pos.copy()
            self.prev_vel = _ZERO.copy()
            self.prev_forward = fwd.copy()
            return KinematicsSample()

        elapsed = max(MIN_ELAPSED_SEC, (frame - self.prev_frame) * self.time_per_frame)
        vel = (pos - self.prev_pos) / elapsed
        sample = KinematicsSample(
            speed=float(np.linalg.norm(vel)),
            accel=float(np.linalg.norm(vel - self.prev_vel) / elapsed),
            turn_deg=angle_deg(self.prev_forward, fwd),
        )

        self.prev_frame = frame
        self.prev_pos = pos.copy()
        self.prev_vel = vel
        self.prev_forward = fwd.copy()
        return sample
