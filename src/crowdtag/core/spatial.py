"""空間クエリのインターフェースと、シーン記述から構築するインメモリ実装。

タグ付けエンジンが必要とする空間機能は次の4つのみ:

- 半径による範囲クエリ
- 形状上の最近点までの距離
- 下向きレイキャスト（距離昇順）
- 所有チェーン（形状 → 親ノード → ... → ルート）のタグ列
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Hashable, Iterable, List, Optional, Protocol, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .errors import EC_INPUT_FOLDER, EC_INPUT_RECORD, TaggerError
from .validation import coerce_vec3

SHAPE_SPHERE = "sphere"
SHAPE_BOX = "box"


class SpatialQuery(Protocol):
    def range_query(self, center: np.ndarray, radius: float) -> Iterable[Hashable]:
        ...

    def closest_point_distance(self, center: np.ndarray, handle: Hashable) -> float:
        ...

    def downward_ray(self, origin: np.ndarray, max_distance: float) -> List[Tuple[Hashable, float]]:
        ...

    def ownership_chain(self, handle: Hashable) -> Sequence[str]:
        """候補自身から親方向へ辿ったタグ列。"""
        ...

    def is_trigger(self, handle: Hashable) -> bool:
        ...


def resolve_tag(chain: Iterable[str], candidates: Sequence[str]) -> Optional[str]:
    """所有チェーンを根元方向へ辿り、最初に見つかった候補タグを返す。"""
    wanted = set(candidates)
    for tag in chain:
        if tag in wanted:
            return tag
    return None


@dataclass
class SceneNode:
    name: str
    tag: Optional[str] = None
    parent: Optional[str] = None


@dataclass
class SceneShape:
    node: str
    kind: str
    center: np.ndarray
    # box: 半辺長 (3,), sphere: 半径
    size: np.ndarray
    trigger: bool = True

    @property
    def bounding_radius(self) -> float:
        if self.kind == SHAPE_SPHERE:
            return float(self.size[0])
        return float(np.linalg.norm(self.size))

    def closest_point(self, point: np.ndarray) -> np.ndarray:
        if self.kind == SHAPE_SPHERE:
            offset = point - self.center
            dist = float(np.linalg.norm(offset))
            radius = float(self.size[0])
            if dist <= radius:
                return point.copy()
            return self.center + offset * (radius / dist)
        return np.clip(point, self.center - self.size, self.center + self.size)

    def top_below(self, origin: np.ndarray) -> Optional[float]:
        """原点の真下にある形状上面の高さ。真下に無い・原点が内部なら None。"""
        dx = float(origin[0] - self.center[0])
        dz = float(origin[2] - self.center[2])
        if self.kind == SHAPE_SPHERE:
            radius = float(self.size[0])
            h2 = radius * radius - dx * dx - dz * dz
            if h2 < 0:
                return None
            top = float(self.center[1]) + math.sqrt(h2)
        else:
            if abs(dx) > self.size[0] or abs(dz) > self.size[2]:
                return None
            top = float(self.center[1] + self.size[1])
        # 原点が形状の内部・下側にある場合は当たらない
        if origin[1] < top:
            return None
        return top


class SceneIndex:
    """ノード（タグ・親）と形状から成るシーンの空間インデックス。

    ハンドルは形状リスト上の整数インデックス。範囲クエリは形状中心の
    KD木で候補を集め、最近点距離で厳密に絞り込む。
    """

    def __init__(self) -> None:
        self.nodes: Dict[str, SceneNode] = {}
        self.shapes: List[SceneShape] = []
        self._tree: Optional[cKDTree] = None
        self._max_bound = 0.0
        self._dirty = True

    # --- 構築 ---
    def add_node(self, name: str, tag: Optional[str] = None, parent: Optional[str] = None) -> SceneNode:
        node = SceneNode(name=name, tag=tag, parent=parent)
        self.nodes[name] = node
        return node

    def add_box(self, node: str, center, half_extents, trigger: bool = True) -> int:
        return self._add_shape(SceneShape(
            node=node,
            kind=SHAPE_BOX,
            center=np.asarray(center, dtype=float),
            size=np.abs(np.asarray(half_extents, dtype=float)),
            trigger=trigger,
        ))

    def add_sphere(self, node: str, center, radius: float, trigger: bool = True) -> int:
        return self._add_shape(SceneShape(
            node=node,
            kind=SHAPE_SPHERE,
            center=np.asarray(center, dtype=float),
            size=np.array([abs(float(radius))]),
            trigger=trigger,
        ))

    def _add_shape(self, shape: SceneShape) -> int:
        if shape.node not in self.nodes:
            self.add_node(shape.node)
        self.shapes.append(shape)
        self._dirty = True
        return len(self.shapes) - 1

    def move_shape(self, handle: int, center) -> None:
        """動的障害物の位置更新。KD木は次回クエリ時に再構築する。"""
        self.shapes[handle].center = np.asarray(center, dtype=float)
        self._dirty = True

    def _ensure_tree(self) -> None:
        if not self._dirty:
            return
        if self.shapes:
            self._tree = cKDTree(np.vstack([s.center for s in self.shapes]))
            self._max_bound = max(s.bounding_radius for s in self.shapes)
        else:
            self._tree = None
            self._max_bound = 0.0
        self._dirty = False

    # --- SpatialQuery ---
    def range_query(self, center: np.ndarray, radius: float) -> List[int]:
        self._ensure_tree()
        if self._tree is None:
            return []
        point = np.asarray(center, dtype=float)
        found = self._tree.query_ball_point(point, r=float(radius) + self._max_bound)
        return [
            int(h) for h in sorted(found)
            if self.closest_point_distance(point, h) <= radius
        ]

    def closest_point_distance(self, center: np.ndarray, handle: int) -> float:
        point = np.asarray(center, dtype=float)
        return float(np.linalg.norm(point - self.shapes[handle].closest_point(point)))

    def downward_ray(self, origin: np.ndarray, max_distance: float) -> List[Tuple[int, float]]:
        point = np.asarray(origin, dtype=float)
        hits: List[Tuple[int, float]] = []
        for handle, shape in enumerate(self.shapes):
            top = shape.top_below(point)
            if top is None:
                continue
            dist = float(point[1] - top)
            if 0.0 <= dist <= max_distance:
                hits.append((handle, dist))
        hits.sort(key=lambda h: h[1])
        return hits

    def ownership_chain(self, handle: int) -> List[str]:
        tags: List[str] = []
        name: Optional[str] = self.shapes[handle].node
        seen = set()
        while name is not None and name not in seen:
            seen.add(name)
            node = self.nodes.get(name)
            if node is None:
                break
            if node.tag:
                tags.append(node.tag)
            name = node.parent
        return tags

    def is_trigger(self, handle: int) -> bool:
        return self.shapes[handle].trigger

    def node_of(self, handle: int) -> str:
        return self.shapes[handle].node

    # --- 読み込み ---
    @classmethod
    def from_records(cls, records: Dict[str, Any]) -> "SceneIndex":
        """シーン記述（`nodes` と `shapes` の配列）からインデックスを作る。

        例::

            {"nodes": [{"name": "blockA", "tag": "Building"}],
             "shapes": [{"node": "blockA", "type": "box",
                         "center": [0, 1, 5], "half_extents": [2, 1, 2]}]}

        Raises:
            TaggerError: 形状記述が不正な場合。
        """
        scene = cls()
        for node in records.get("nodes", []):
            scene.add_node(str(node["name"]), node.get("tag"), node.get("parent"))
        for i, shape in enumerate(records.get("shapes", [])):
            center = coerce_vec3(shape.get("center"))
            if center is None:
                raise TaggerError(EC_INPUT_RECORD, f"scene shape #{i} has no valid center")
            kind = shape.get("type", SHAPE_BOX)
            trigger = bool(shape.get("trigger", True))
            if kind == SHAPE_SPHERE:
                scene.add_sphere(str(shape["node"]), center, float(shape.get("radius", 0.5)), trigger)
            elif kind == SHAPE_BOX:
                half = coerce_vec3(shape.get("half_extents"))
                if half is None:
                    raise TaggerError(EC_INPUT_RECORD, f"scene shape #{i} has no valid half_extents")
                scene.add_box(str(shape["node"]), center, half, trigger)
            else:
                raise TaggerError(EC_INPUT_RECORD, f"scene shape #{i} has unknown type: {kind}")
        return scene

    @classmethod
    def load_json(cls, path: str | Path) -> "SceneIndex":
        path = Path(path)
        if not path.exists():
            raise TaggerError(EC_INPUT_FOLDER, f"scene file not found: {path}")
        with open(path, encoding="utf-8") as fp:
            return cls.from_records(json.load(fp))
