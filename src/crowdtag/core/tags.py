"""フレームタグ（エージェント×フレームのスナップショット）と保持ストア。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AbstractSet, Any, Dict, Iterable, Mapping, Optional, Tuple

from .config import ENTRANCE, ENV_CATEGORIES, STATE_NONE, UNKNOWN_GROUND

Vec3 = Tuple[float, float, float]
ZERO3: Vec3 = (0.0, 0.0, 0.0)

# 出力JSONのカテゴリ名（先頭大文字）
_CATEGORY_FIELD = {cat: cat.capitalize() for cat in ENV_CATEGORIES}
# 既存データセットで使われている entrance の綴り
LEGACY_ENTRANCE = "entarance"


def _vec(v: Iterable[float]) -> list:
    return [float(x) for x in v]


@dataclass(frozen=True)
class GroupMemberRel:
    id: int
    rel_world: Vec3
    dist: float


@dataclass(frozen=True)
class ProximityTag:
    nearest_dist: float = -1.0
    near: bool = False
    hit: bool = False


@dataclass(frozen=True)
class FrameTag:
    """1エージェント・1フレーム分の文脈タグ。生成後は変更しない。"""

    active: bool
    ground: str = UNKNOWN_GROUND

    nearest_agent_id: int = -1
    nearest_agent_dist: float = -1.0
    near_agent: bool = False
    hit_agent: bool = False

    proximity: Mapping[str, ProximityTag] = field(default_factory=dict)

    group_dist: float = -1.0
    group_state: str = STATE_NONE
    group_active_count: int = 0
    group_center_world: Vec3 = ZERO3
    group_center_rel_world: Vec3 = ZERO3
    group_member_rels: Tuple[GroupMemberRel, ...] = ()

    goal_dist: float = -1.0
    goal_state: str = STATE_NONE

    speed: float = 0.0
    accel: float = 0.0
    turn_deg: float = 0.0

    @classmethod
    def inactive(cls) -> "FrameTag":
        return cls(active=False)

    def proximity_of(self, category: str) -> ProximityTag:
        return self.proximity.get(category, ProximityTag())

    def to_record(self, legacy_entrance_keys: bool = False) -> Dict[str, Any]:
        """出力行に埋め込むJSONオブジェクトへ変換する。

        Args:
            legacy_entrance_keys: True なら `nearestEntaranceDist` / `near_entarance` /
                `hit_entarance` も同じ値で併記する。
        """
        record: Dict[str, Any] = {
            "active": self.active,
            "ground": self.ground or UNKNOWN_GROUND,
            "nearestAgentId": self.nearest_agent_id,
            "nearestAgentDist": self.nearest_agent_dist,
            "near_agent": self.near_agent,
            "hit_agent": self.hit_agent,
        }
        for cat in ENV_CATEGORIES:
            prox = self.proximity_of(cat)
            record[f"nearest{_CATEGORY_FIELD[cat]}Dist"] = prox.nearest_dist
            record[f"near_{cat}"] = prox.near
            record[f"hit_{cat}"] = prox.hit
        if legacy_entrance_keys:
            prox = self.proximity_of(ENTRANCE)
            record[f"nearest{LEGACY_ENTRANCE.capitalize()}Dist"] = prox.nearest_dist
            record[f"near_{LEGACY_ENTRANCE}"] = prox.near
            record[f"hit_{LEGACY_ENTRANCE}"] = prox.hit
        record.update({
            "groupDist": self.group_dist,
            "groupState": self.group_state or STATE_NONE,
            "groupActiveCount": self.group_active_count,
            "groupCenterWorld": _vec(self.group_center_world),
            "groupCenterRelWorld": _vec(self.group_center_rel_world),
            "groupMemberRels": [
                {"id": m.id, "relWorld": _vec(m.rel_world), "dist": m.dist}
                for m in self.group_member_rels
            ],
            "goalDist": self.goal_dist,
            "goalState": self.goal_state or STATE_NONE,
            "speed": self.speed,
            "accel": self.accel,
            "turnDeg": self.turn_deg,
        })
        return record


class FrameTagStore:
    """エージェント毎の frame → FrameTag。

    古いフレームは `evict` で削除する（未出力アンカーが参照するフレームは残す）。
    """

    def __init__(self) -> None:
        self._by_agent: Dict[int, Dict[int, FrameTag]] = {}

    def put(self, agent_id: int, frame: int, tag: FrameTag) -> None:
        self._by_agent.setdefault(agent_id, {})[frame] = tag

    def get(self, agent_id: int, frame: Optional[int]) -> Optional[FrameTag]:
        if frame is None:
            return None
        return self._by_agent.get(agent_id, {}).get(frame)

    def frames(self, agent_id: int) -> Tuple[int, ...]:
        return tuple(sorted(self._by_agent.get(agent_id, {})))

    def evict(self, agent_id: int, keep_from: int, pinned: AbstractSet[int] = frozenset()) -> int:
        """`keep_from` より前のフレームを削除する。`pinned` は残す。

        Returns:
            削除したエントリ数。
        """
        tags = self._by_agent.get(agent_id)
        if not tags:
            return 0
        stale = [f for f in tags if f < keep_from and f not in pinned]
        for f in stale:
            del tags[f]
        return len(stale)

    def __len__(self) -> int:
        return sum(len(t) for t in self._by_agent.values())
