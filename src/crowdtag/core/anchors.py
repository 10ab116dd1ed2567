"""アノテーション（アンカー区間）の読み込みとフレーム索引。"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import AbstractSet, Any, Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from . import naming
from .errors import EC_INPUT_EMPTY, EC_INPUT_FOLDER, EC_INPUT_RECORD, TaggerError
from .validation import coerce_frames, coerce_group_ids, coerce_vec3

SIDE_START = "start"
SIDE_END = "end"

FRAMES_KEY = "globalFrames"
GROUPS_KEY = "groups"
GOAL_KEY = "goalWorldPosition"


@dataclass(frozen=True)
class FrameMeta:
    """フレーム単位のメタ情報（グループメンバーID・ゴール位置）。"""

    group_ids: Tuple[int, ...] = ()
    goal_world: Optional[np.ndarray] = None


@dataclass
class AnchorInterval:
    """1件のアノテーション区間。

    `start_captured` / `end_captured` は一度 True になったら戻らない。
    不正レコードは `payload=None` のプレースホルダとして保持し、
    両フラグを最初から True にする（キャプチャ対象外）。
    """

    index: int
    raw_line: str
    payload: Optional[Dict[str, Any]] = None
    frames: Tuple[int, ...] = ()
    start_captured: bool = False
    end_captured: bool = False
    start_image: str = ""
    end_image: str = ""

    @property
    def is_placeholder(self) -> bool:
        return self.payload is None or not self.frames

    @property
    def start_frame(self) -> Optional[int]:
        return min(self.frames) if self.frames else None

    @property
    def end_frame(self) -> Optional[int]:
        return max(self.frames) if self.frames else None

    def is_captured(self, side: str) -> bool:
        return self.start_captured if side == SIDE_START else self.end_captured

    def image(self, side: str) -> str:
        return self.start_image if side == SIDE_START else self.end_image

    def mark_captured(self, side: str, image_rel: str = "") -> bool:
        """キャプチャ済みにする。既に済みなら何もせず False を返す。"""
        if self.is_captured(side):
            return False
        if side == SIDE_START:
            self.start_captured = True
            self.start_image = image_rel
        elif side == SIDE_END:
            self.end_captured = True
            self.end_image = image_rel
        else:
            raise ValueError(f"unknown anchor side: {side}")
        return True

    @classmethod
    def placeholder(cls, index: int, raw_line: str) -> "AnchorInterval":
        return cls(index=index, raw_line=raw_line, start_captured=True, end_captured=True)


@dataclass
class AgentMeta:
    """エージェント1体分のアンカー列・フレーム索引・出力カーソル。"""

    agent_id: int
    source_name: str
    anchors: List[AnchorInterval] = field(default_factory=list)
    meta_by_frame: Dict[int, FrameMeta] = field(default_factory=dict)
    start_index: Dict[int, List[int]] = field(default_factory=dict)
    end_index: Dict[int, List[int]] = field(default_factory=dict)
    traj_end_frame: Optional[int] = None
    next_anchor_to_write: int = 0
    out_path: Optional[Path] = None
    # 未出力アンカーの start/end フレーム → 参照数
    _pinned: Counter = field(default_factory=Counter, repr=False)

    def anchors_starting_at(self, frame: int) -> List[AnchorInterval]:
        return [self.anchors[i] for i in self.start_index.get(frame, ())]

    def anchors_ending_at(self, frame: int) -> List[AnchorInterval]:
        return [self.anchors[i] for i in self.end_index.get(frame, ())]

    def next_anchor(self) -> Optional[AnchorInterval]:
        if self.next_anchor_to_write < len(self.anchors):
            return self.anchors[self.next_anchor_to_write]
        return None

    def advance_cursor(self) -> None:
        anchor = self.next_anchor()
        if anchor is not None and not anchor.is_placeholder:
            for frame in (anchor.start_frame, anchor.end_frame):
                self._pinned[frame] -= 1
                if self._pinned[frame] <= 0:
                    del self._pinned[frame]
        self.next_anchor_to_write += 1

    @property
    def pending_count(self) -> int:
        return len(self.anchors) - self.next_anchor_to_write

    def pinned_frames(self) -> AbstractSet[int]:
        """未出力アンカーの start/end フレーム。タグ保持の対象。

        カーソルの前進に合わせて更新済みの集合をそのまま返す（コピーしない）。
        """
        return self._pinned.keys()

    def add_record(self, line: str) -> AnchorInterval:
        """JSONL の1行をアンカーとして追加する。

        パース不能・`globalFrames` が無い/空の行はプレースホルダとして追加する。
        """
        index = len(self.anchors)
        try:
            obj = json.loads(line)
        except ValueError:
            anchor = AnchorInterval.placeholder(index, line)
            self.anchors.append(anchor)
            return anchor

        frames = coerce_frames(obj.get(FRAMES_KEY)) if isinstance(obj, dict) else None
        if frames is None:
            anchor = AnchorInterval.placeholder(index, line)
            self.anchors.append(anchor)
            return anchor

        anchor = AnchorInterval(index=index, raw_line=line, payload=obj, frames=frames)
        self.anchors.append(anchor)
        self.start_index.setdefault(anchor.start_frame, []).append(index)
        self.end_index.setdefault(anchor.end_frame, []).append(index)
        self._pinned[anchor.start_frame] += 1
        self._pinned[anchor.end_frame] += 1
        if self.traj_end_frame is None or anchor.end_frame > self.traj_end_frame:
            self.traj_end_frame = anchor.end_frame

        meta = FrameMeta(
            group_ids=coerce_group_ids(obj.get(GROUPS_KEY)),
            goal_world=coerce_vec3(obj.get(GOAL_KEY)),
        )
        for frame in frames:
            self.meta_by_frame[frame] = meta
        return anchor


class AnchorRegistry:
    """全エージェントの `AgentMeta` を保持する。"""

    def __init__(
        self,
        agent_name_prefix: str = "agent_",
        output_suffix: str = "_tagged",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.agent_name_prefix = agent_name_prefix
        self.output_suffix = output_suffix
        self.logger = logger or logging.getLogger(__name__)
        self._agents: Dict[int, AgentMeta] = {}

    def __iter__(self) -> Iterator[AgentMeta]:
        return iter(self._agents.values())

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: int) -> bool:
        return agent_id in self._agents

    def get(self, agent_id: int) -> Optional[AgentMeta]:
        return self._agents.get(agent_id)

    def frame_meta(self, agent_id: int, frame: int) -> Optional[FrameMeta]:
        meta = self._agents.get(agent_id)
        if meta is None:
            return None
        return meta.meta_by_frame.get(frame)

    def load_lines(self, agent_id: int, lines: Iterable[str], source_name: str = "") -> AgentMeta:
        """行の並びから1エージェント分を読み込む（既存は置き換え）。"""
        meta = AgentMeta(agent_id=agent_id, source_name=source_name or f"{self.agent_name_prefix}{agent_id}")
        for line in lines:
            line = line.rstrip("\r\n")
            if not line.strip():
                continue
            meta.add_record(line)
        self._agents[agent_id] = meta
        return meta

    def load_folder(self, folder: str | Path) -> int:
        """フォルダ内の `*.jsonl` を読み込む。

        出力ファイル（接尾辞 `_tagged`）とIDを解釈できないファイルは除外する。

        Args:
            folder: 入力フォルダ。

        Returns:
            読み込んだエージェント数。

        Raises:
            TaggerError: フォルダが無い・対象ファイルが無い場合。
        """
        folder = Path(folder)
        if not folder.is_dir():
            raise TaggerError(EC_INPUT_FOLDER, f"annotation folder not found: {folder}")

        files = sorted(
            p for p in folder.glob("*.jsonl")
            if not p.stem.lower().endswith(self.output_suffix.lower())
        )
        if not files:
            raise TaggerError(EC_INPUT_EMPTY, f"no jsonl files in: {folder}")

        self._agents.clear()
        for path in files:
            agent_id = naming.parse_agent_id(path.stem, self.agent_name_prefix)
            if agent_id < 0:
                self.logger.warning("EC=%s cannot parse agent id from file name: %s", EC_INPUT_RECORD, path.name)
                continue
            try:
                # BOM は除去し、不正なバイトは置換文字にして行単位の処理に任せる
                with open(path, encoding="utf-8-sig", errors="replace") as fp:
                    meta = self.load_lines(agent_id, fp, source_name=path.stem)
            except OSError as exc:
                self.logger.error("EC=%s failed reading %s: %s", EC_INPUT_RECORD, path, exc)
                continue
            bad = sum(1 for a in meta.anchors if a.is_placeholder)
            if bad:
                self.logger.warning("agent=%s %d malformed records kept as passthrough", agent_id, bad)

        lo, hi = self.global_range()
        self.logger.info("loaded meta for %d agents. global frame range [%s..%s]", len(self), lo, hi)
        return len(self)

    def global_range(self) -> Tuple[Optional[int], Optional[int]]:
        frames = [f for meta in self._agents.values() for f in meta.meta_by_frame]
        if not frames:
            return None, None
        return min(frames), max(frames)
