"""アンカーをフレーム順に1行ずつ書き出す。"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional

from .anchors import SIDE_END, SIDE_START, AgentMeta, AnchorInterval, AnchorRegistry
from .config import WriteFailurePolicy
from .errors import EC_STORAGE_DST_INVALID, EC_STORAGE_IO, EC_STORAGE_PERM
from .tags import FrameTag

# 出力時に取り除く旧形式のフレームタグ一括フィールド
STALE_TAGS_KEY = "frameTags"
START_TAG_KEY = "startFrameTag"
END_TAG_KEY = "endFrameTag"

TagLookup = Callable[[int, Optional[int]], Optional[FrameTag]]


class AnchorWriter:
    """`next_anchor_to_write` から順に、終了フレームに達したアンカーを追記する。

    出力ファイルは1行ごとに開いて閉じるため、書き込みの合間に
    外部ツールから読み出せる。
    """

    def __init__(
        self,
        registry: AnchorRegistry,
        time_per_frame: float,
        policy: WriteFailurePolicy = WriteFailurePolicy.ADVANCE,
        logger: Optional[logging.Logger] = None,
        legacy_entrance_keys: bool = False,
    ) -> None:
        self.registry = registry
        self.time_per_frame = float(time_per_frame)
        self.policy = WriteFailurePolicy(policy)
        self.legacy_entrance_keys = legacy_entrance_keys
        self.logger = logger or logging.getLogger(__name__)
        self.written = 0
        self.dropped = 0

    def flush_up_to(self, frame: int, tag_lookup: TagLookup) -> int:
        """全エージェントについて、現在フレームまでに終わったアンカーを書き出す。

        Args:
            frame: 現在のグローバルフレーム。
            tag_lookup: `(agent_id, frame) -> FrameTag | None`。

        Returns:
            書き出した行数。
        """
        total = 0
        for meta in self.registry:
            total += self.flush_agent(meta, frame, tag_lookup)
        return total

    def flush_agent(self, meta: AgentMeta, frame: int, tag_lookup: TagLookup) -> int:
        written = 0
        while True:
            anchor = meta.next_anchor()
            if anchor is None:
                break
            if not anchor.is_placeholder and frame < anchor.end_frame:
                break

            line = self.render_line(meta, anchor, tag_lookup)
            if self._append(meta, line):
                written += 1
                self.written += 1
            elif self.policy is WriteFailurePolicy.RETRY:
                break
            else:
                self.dropped += 1
            meta.advance_cursor()
        return written

    def render_line(self, meta: AgentMeta, anchor: AnchorInterval, tag_lookup: TagLookup) -> str:
        """出力1行分の文字列を作る。プレースホルダは元の行をそのまま返す。"""
        if anchor.is_placeholder:
            return anchor.raw_line

        start, end = anchor.start_frame, anchor.end_frame
        start_obj = self._tag_object(meta, anchor, SIDE_START, start, tag_lookup)
        end_obj = self._tag_object(meta, anchor, SIDE_END, end, tag_lookup)

        obj = dict(anchor.payload)
        obj.pop(STALE_TAGS_KEY, None)
        obj[START_TAG_KEY] = start_obj
        obj[END_TAG_KEY] = end_obj
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))

    def _tag_object(
        self,
        meta: AgentMeta,
        anchor: AnchorInterval,
        side: str,
        frame: int,
        tag_lookup: TagLookup,
    ) -> Dict[str, Any]:
        tag = tag_lookup(meta.agent_id, frame) or FrameTag.inactive()
        obj = tag.to_record(self.legacy_entrance_keys)

        image = anchor.image(side)
        if image:
            obj["imagePath"] = image
            obj["imageGf"] = frame

        if meta.traj_end_frame is not None:
            obj["trajEndGf"] = meta.traj_end_frame
            obj["remainingTrajSec"] = max(0.0, (meta.traj_end_frame - frame) * self.time_per_frame)
        return obj

    def _append(self, meta: AgentMeta, line: str) -> bool:
        if meta.out_path is None:
            self.logger.error("EC=%s no output path for agent=%s", EC_STORAGE_DST_INVALID, meta.agent_id)
            return False
        try:
            with open(meta.out_path, "a", encoding="utf-8", newline="\n") as fp:
                fp.write(line + "\n")
            return True
        except PermissionError as exc:
            code = EC_STORAGE_PERM
            err: Exception = exc
        except OSError as exc:
            code = EC_STORAGE_IO
            err = exc
        self.logger.error(
            "EC=%s write failed agent=%s anchor=%s path=%s policy=%s err=%s",
            code, meta.agent_id, meta.next_anchor_to_write, meta.out_path, self.policy.value, err,
        )
        return False
