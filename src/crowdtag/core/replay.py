"""チャンクJSONLから軌跡を再生するフレームドライバ。"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from . import naming
from .errors import EC_INPUT_EMPTY, EC_INPUT_FOLDER, EC_INPUT_RECORD, TaggerError
from .runtime import DEFAULT_FORWARD, AgentPose
from .validation import coerce_frames, coerce_vec3

POS_COLUMNS = ["agent_id", "frame", "x", "y", "z"]
FWD_COLUMNS = ["fx", "fy", "fz"]
_EPS = 1e-9


def look_rotation(forward: np.ndarray) -> Optional[np.ndarray]:
    """+z を `forward` に向ける回転行列（列 = right, up, forward）。

    `forward` がゼロ、または真上・真下を向く場合は None。
    """
    f = np.asarray(forward, dtype=float)
    norm = float(np.linalg.norm(f))
    if norm < _EPS:
        return None
    f = f / norm
    right = np.cross([0.0, 1.0, 0.0], f)
    r_norm = float(np.linalg.norm(right))
    if r_norm < _EPS:
        return None
    right /= r_norm
    up = np.cross(f, right)
    return np.column_stack([right, up, f])


def parse_chunk_line(
    line: str,
    rotate_offsets: bool = False,
    y_offset: float = 0.0,
) -> Optional[List[Tuple[int, float, float, float]]]:
    """チャンク1行を `(frame, x, y, z)` のリストにする。

    ワールド位置 = `startWorldPosition` + `localCurrent[i]`（必要なら
    `startForward` 基準で回転）。不正行・長さ不一致は None。
    """
    try:
        obj = json.loads(line)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    frames = coerce_frames(obj.get("globalFrames"))
    offsets = obj.get("localCurrent")
    if frames is None or not isinstance(offsets, list) or len(offsets) != len(frames):
        return None

    anchor = coerce_vec3(obj.get("startWorldPosition"))
    if anchor is None:
        anchor = np.zeros(3)
    anchor = anchor + np.array([0.0, float(y_offset), 0.0])

    rot = None
    if rotate_offsets:
        fwd = coerce_vec3(obj.get("startForward"))
        if fwd is not None:
            rot = look_rotation(fwd)

    rows = []
    for frame, raw in zip(frames, offsets):
        offset = coerce_vec3(raw)
        if offset is None:
            return None
        if rot is not None:
            offset = rot @ offset
        pos = anchor + offset
        rows.append((frame, float(pos[0]), float(pos[1]), float(pos[2])))
    return rows


def add_forward(df: pd.DataFrame) -> pd.DataFrame:
    """各サンプルの前方向（次サンプルへの方向、無ければ前サンプルから）を付与する。

    移動の無いサンプルは直前の向きを引き継ぎ、それも無ければ +z。
    """
    df = df.sort_values(["agent_id", "frame"], kind="mergesort").reset_index(drop=True)
    by_agent = df.groupby("agent_id", sort=False)[["x", "y", "z"]]
    nxt = by_agent.shift(-1) - df[["x", "y", "z"]]
    prv = df[["x", "y", "z"]] - by_agent.shift(1)

    nxt_norm = np.linalg.norm(nxt.to_numpy(dtype=float), axis=1)
    prv_norm = np.linalg.norm(prv.to_numpy(dtype=float), axis=1)
    use_next = np.nan_to_num(nxt_norm) > _EPS
    use_prev = ~use_next & (np.nan_to_num(prv_norm) > _EPS)

    fwd = np.full((len(df), 3), np.nan)
    fwd[use_next] = nxt.to_numpy(dtype=float)[use_next] / nxt_norm[use_next, None]
    fwd[use_prev] = prv.to_numpy(dtype=float)[use_prev] / prv_norm[use_prev, None]

    out = df.copy()
    for i, col in enumerate(FWD_COLUMNS):
        out[col] = fwd[:, i]
    grouped = out.groupby("agent_id", sort=False)
    for i, col in enumerate(FWD_COLUMNS):
        filled = grouped[col].ffill()
        filled = filled.groupby(out["agent_id"], sort=False).bfill()
        out[col] = filled.fillna(float(DEFAULT_FORWARD[i]))
    return out


class TrajectoryReplay:
    """位置テーブルをグローバルフレーム順に再生する。

    `FrameSource` と `PoseSource` を兼ねる。現在フレームにサンプルの無い
    エージェントは非アクティブ（`pose` が None）。
    """

    def __init__(self, df_pos: pd.DataFrame, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        if df_pos.empty:
            self.df = pd.DataFrame(columns=POS_COLUMNS + FWD_COLUMNS)
        else:
            self.df = add_forward(df_pos)
        self._by_frame: Dict[int, Dict[int, AgentPose]] = {}
        for frame, group in self.df.groupby("frame", sort=True):
            pos = group[["x", "y", "z"]].to_numpy(dtype=float)
            fwd = group[FWD_COLUMNS].to_numpy(dtype=float)
            self._by_frame[int(frame)] = {
                int(aid): AgentPose(position=pos[i], forward=fwd[i])
                for i, aid in enumerate(group["agent_id"])
            }
        self._agent_ids = sorted(int(a) for a in self.df["agent_id"].unique())
        self._range: Tuple[Optional[int], Optional[int]] = (
            (min(self._by_frame), max(self._by_frame)) if self._by_frame else (None, None)
        )
        self._current: Optional[int] = None

    # --- 読み込み ---
    @classmethod
    def from_lines(
        cls,
        lines_by_agent: Mapping[int, Iterable[str]],
        rotate_offsets: bool = False,
        y_offset: float = 0.0,
        logger: Optional[logging.Logger] = None,
    ) -> "TrajectoryReplay":
        rows = []
        skipped = 0
        for agent_id, lines in lines_by_agent.items():
            for line in lines:
                if not line.strip():
                    continue
                parsed = parse_chunk_line(line, rotate_offsets, y_offset)
                if parsed is None:
                    skipped += 1
                    continue
                rows.extend((agent_id, f, x, y, z) for f, x, y, z in parsed)
        if skipped:
            (logger or logging.getLogger(__name__)).warning(
                "EC=%s skipped %d unusable trajectory lines", EC_INPUT_RECORD, skipped
            )
        df = pd.DataFrame(rows, columns=POS_COLUMNS)
        # 同一フレームの重複は後勝ち
        df = df.drop_duplicates(subset=["agent_id", "frame"], keep="last")
        return cls(df, logger=logger)

    @classmethod
    def load_folder(
        cls,
        folder: str | Path,
        agent_name_prefix: str = "agent_",
        output_suffix: str = "_tagged",
        rotate_offsets: bool = False,
        y_offset: float = 0.0,
        logger: Optional[logging.Logger] = None,
    ) -> "TrajectoryReplay":
        """フォルダ内のチャンクJSONLを読み込む。

        Raises:
            TaggerError: フォルダが無い・対象ファイルが無い場合。
        """
        folder = Path(folder)
        if not folder.is_dir():
            raise TaggerError(EC_INPUT_FOLDER, f"trajectory folder not found: {folder}")
        lines_by_agent: Dict[int, List[str]] = {}
        for path in sorted(folder.glob("*.jsonl")):
            if path.stem.lower().endswith(output_suffix.lower()):
                continue
            agent_id = naming.parse_agent_id(path.stem, agent_name_prefix)
            if agent_id < 0:
                continue
            try:
                with open(path, encoding="utf-8-sig", errors="replace") as fp:
                    lines = fp.read().splitlines()
            except OSError as exc:
                (logger or logging.getLogger(__name__)).error(
                    "EC=%s failed reading %s: %s", EC_INPUT_RECORD, path, exc
                )
                continue
            lines_by_agent.setdefault(agent_id, []).extend(lines)
        if not lines_by_agent:
            raise TaggerError(EC_INPUT_EMPTY, f"no trajectory files in: {folder}")
        return cls.from_lines(lines_by_agent, rotate_offsets, y_offset, logger)

    # --- FrameSource / PoseSource ---
    @property
    def frame_range(self) -> Tuple[Optional[int], Optional[int]]:
        return self._range

    @property
    def total_frames(self) -> int:
        lo, hi = self.frame_range
        if lo is None:
            return 0
        return hi - lo + 1

    def agent_ids(self) -> List[int]:
        return list(self._agent_ids)

    def start(self) -> Optional[int]:
        self._current = self.frame_range[0]
        return self._current

    def step(self) -> Optional[int]:
        """1フレーム進める。最終フレームを過ぎたら None。"""
        if self._current is None:
            return None
        _, hi = self.frame_range
        if self._current >= hi:
            self._current = None
        else:
            self._current += 1
        return self._current

    @property
    def finished(self) -> bool:
        return self._current is None

    def current_global_frame(self) -> Optional[int]:
        return self._current

    def pose(self, agent_id: int) -> Optional[AgentPose]:
        if self._current is None:
            return None
        return self._by_frame.get(self._current, {}).get(agent_id)
