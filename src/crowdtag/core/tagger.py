"""フレーム毎にエージェントの文脈タグを計算・保存する。"""

from __future__ import annotations

import logging
import math
from typing import AbstractSet, Dict, Hashable, Mapping, Optional, Sequence, Tuple

import numpy as np

from .anchors import AnchorRegistry, FrameMeta
from .config import (
    AGENT,
    BUILDING,
    ENTRANCE,
    ENV_CATEGORIES,
    OBSTACLE,
    UNKNOWN_GROUND,
    VEHICLE,
    TaggerConfig,
)
from .runtime import AgentRuntime
from .spatial import SpatialQuery, resolve_tag
from .tags import FrameTag, FrameTagStore, GroupMemberRel, ProximityTag

_UP = np.array([0.0, 1.0, 0.0])

# 所有チェーン上に複数のカテゴリタグがある場合の優先順
CATEGORY_PRIORITY = (VEHICLE, ENTRANCE, BUILDING, OBSTACLE)


def _as_tuple(v: np.ndarray) -> Tuple[float, float, float]:
    return (float(v[0]), float(v[1]), float(v[2]))


class ContextTagger:
    """接地面・近接カテゴリ・最近傍エージェント・グループ・ゴール・運動量を求める。

    `FrameTagStore` はこのクラスだけが更新する。キャプチャ・書き出し側は
    `tag_for` で読むだけ。
    """

    def __init__(
        self,
        config: TaggerConfig,
        spatial: SpatialQuery,
        registry: AnchorRegistry,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.spatial = spatial
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self._store = FrameTagStore()
        self._priority_tags = [(cat, config.category_tags[cat]) for cat in CATEGORY_PRIORITY]

    # --- フレーム処理 ---
    def tag_frame(self, frame: int, agents: Mapping[int, AgentRuntime]) -> int:
        """全エージェントについて1フレーム分のタグを計算する。

        Args:
            frame: グローバルフレーム番号。
            agents: 姿勢反映済みのエージェント状態。

        Returns:
            保存したタグ数。
        """
        stored = 0
        record_only = self.config.output.record_only_annotated_frames
        for agent in agents.values():
            meta = self.registry.frame_meta(agent.agent_id, frame)
            need_store = not record_only or meta is not None

            if not agent.active:
                # 非アクティブ区間をまたいで速度を持ち越さない
                agent.kinematics.reset(frame, agent.position, agent.forward)
                if need_store:
                    self._store.put(agent.agent_id, frame, FrameTag.inactive())
                    stored += 1
                continue

            if not need_store:
                agent.kinematics.observe(frame, agent.position, agent.forward)
                continue

            self._store.put(agent.agent_id, frame, self.compute_tag(agent, frame, meta, agents))
            stored += 1
        return stored

    def compute_tag(
        self,
        agent: AgentRuntime,
        frame: int,
        meta: Optional[FrameMeta],
        agents: Mapping[int, AgentRuntime],
    ) -> FrameTag:
        pos = agent.position
        radii = self.config.radii

        nearest_id, nearest_dist = self.nearest_agent(agent.agent_id, pos, agents)
        has_nearest = nearest_id >= 0 and nearest_dist >= 0

        group = self.group_metrics(agent.agent_id, pos, meta.group_ids if meta else (), agents)
        goal_dist = -1.0
        if meta is not None and meta.goal_world is not None:
            goal_dist = float(np.linalg.norm(pos - meta.goal_world))

        sample = agent.kinematics.observe(frame, pos, agent.forward)

        return FrameTag(
            active=True,
            ground=self.classify_ground(pos),
            nearest_agent_id=nearest_id,
            nearest_agent_dist=nearest_dist,
            near_agent=has_nearest and nearest_dist <= radii.near(AGENT),
            hit_agent=has_nearest and nearest_dist <= radii.hit(AGENT),
            proximity=self.category_proximity(pos),
            goal_dist=goal_dist,
            goal_state=self.config.goal_thresholds.classify(goal_dist),
            speed=sample.speed,
            accel=sample.accel,
            turn_deg=sample.turn_deg,
            **group,
        )

    # --- 接地面 ---
    def classify_ground(self, position: np.ndarray) -> str:
        """下向きレイの交差を近い順に見て、最初に解決できた接地タグを返す。

        近い交差がタグを持たなくても、より遠い交差の解決は妨げない。
        """
        params = self.config.ground
        origin = np.asarray(position, dtype=float) + _UP * params.ray_start_height
        hits = sorted(self.spatial.downward_ray(origin, params.ray_length), key=lambda h: h[1])
        for handle, _dist in hits:
            ground = resolve_tag(self.spatial.ownership_chain(handle), params.tags)
            if ground is not None:
                return ground
        return UNKNOWN_GROUND

    # --- 環境カテゴリ ---
    def resolve_category(self, handle: Hashable) -> Optional[str]:
        """所有チェーン全体のタグを集め、優先順（vehicle > entrance > building > obstacle）で1つ選ぶ。

        エージェントタグはここでは扱わない（`nearest_agent` が担当）。
        """
        chain = set(self.spatial.ownership_chain(handle))
        for category, tag in self._priority_tags:
            if tag in chain:
                return category
        return None

    def _nearest_by_category(self, position: np.ndarray, radius: float) -> Dict[str, float]:
        best = {cat: math.inf for cat in ENV_CATEGORIES}
        for handle in self.spatial.range_query(position, radius):
            if self.config.only_trigger_colliders and not self.spatial.is_trigger(handle):
                continue
            category = self.resolve_category(handle)
            if category is None:
                continue
            dist = self.spatial.closest_point_distance(position, handle)
            if dist < best[category]:
                best[category] = dist
        return best

    def category_proximity(self, position: np.ndarray) -> Dict[str, ProximityTag]:
        """カテゴリ毎の最近距離と near / hit 判定。

        範囲クエリは最大 near 半径と最大 hit 半径の2回のみ行い、
        カテゴリ別の閾値は後段で適用する。境界値は含む。
        """
        radii = self.config.radii
        near_best = self._nearest_by_category(position, radii.max_near)
        hit_best = self._nearest_by_category(position, radii.max_hit)

        result: Dict[str, ProximityTag] = {}
        for cat in ENV_CATEGORIES:
            nearest = near_best[cat] if math.isfinite(near_best[cat]) else -1.0
            result[cat] = ProximityTag(
                nearest_dist=nearest,
                near=0.0 <= nearest <= radii.near(cat),
                hit=hit_best[cat] <= radii.hit(cat),
            )
        return result

    # --- エージェント間 ---
    @staticmethod
    def nearest_agent(
        self_id: int, position: np.ndarray, agents: Mapping[int, AgentRuntime]
    ) -> Tuple[int, float]:
        """他のアクティブエージェントの線形走査。見つからなければ (-1, -1.0)。"""
        nearest_id = -1
        nearest = math.inf
        for other in agents.values():
            if other.agent_id == self_id or not other.active:
                continue
            dist = float(np.linalg.norm(position - other.position))
            if dist < nearest:
                nearest = dist
                nearest_id = other.agent_id
        if nearest_id < 0:
            return -1, -1.0
        return nearest_id, nearest

    def group_metrics(
        self,
        self_id: int,
        position: np.ndarray,
        group_ids: Sequence[int],
        agents: Mapping[int, AgentRuntime],
    ) -> Dict[str, object]:
        """グループ中心（アクティブメンバーの平均）と各メンバーの相対ベクトル。

        アクティブメンバーが居なければ state=none, dist=-1。
        戻り値は `FrameTag` の group_* フィールドにそのまま渡す。
        """
        rels = []
        total = np.zeros(3)
        for gid in group_ids:
            if gid == self_id:
                continue
            other = agents.get(gid)
            if other is None or not other.active:
                continue
            rel = other.position - position
            rels.append(GroupMemberRel(id=gid, rel_world=_as_tuple(rel), dist=float(np.linalg.norm(rel))))
            total += other.position

        if not rels:
            return {}

        center = total / len(rels)
        dist = float(np.linalg.norm(center - position))
        return {
            "group_dist": dist,
            "group_state": self.config.group_thresholds.classify(dist),
            "group_active_count": len(rels),
            "group_center_world": _as_tuple(center),
            "group_center_rel_world": _as_tuple(center - position),
            "group_member_rels": tuple(rels),
        }

    # --- 参照・保持 ---
    def tag_for(self, agent_id: int, frame: Optional[int]) -> Optional[FrameTag]:
        return self._store.get(agent_id, frame)

    def stored_frames(self, agent_id: int) -> Tuple[int, ...]:
        return self._store.frames(agent_id)

    def evict(self, agent_id: int, keep_from: int, pinned: AbstractSet[int] = frozenset()) -> int:
        return self._store.evict(agent_id, keep_from, pinned)

    @property
    def stored_count(self) -> int:
        return len(self._store)
