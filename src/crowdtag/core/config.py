"""タグ付けエンジンの設定値群。"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import EC_CONFIG_INVALID, TaggerError
from .validation import clamp_radius

# カテゴリ
AGENT = "agent"
OBSTACLE = "obstacle"
BUILDING = "building"
ENTRANCE = "entrance"
VEHICLE = "vehicle"

CATEGORIES: Tuple[str, ...] = (AGENT, OBSTACLE, BUILDING, ENTRANCE, VEHICLE)
ENV_CATEGORIES: Tuple[str, ...] = (OBSTACLE, BUILDING, ENTRANCE, VEHICLE)

DEFAULT_CATEGORY_TAGS: Dict[str, str] = {
    AGENT: "Agent",
    OBSTACLE: "Obstacle",
    BUILDING: "Building",
    ENTRANCE: "Entrance",
    VEHICLE: "Vehicle",
}

DEFAULT_GROUND_TAGS: Tuple[str, ...] = ("sidewalk", "crosswalk", "road", "grass", "inside")
UNKNOWN_GROUND = "unknown"

STATE_NONE = "none"
STATE_CLOSE = "close"
STATE_MID = "mid"
STATE_FAR = "far"

# 空間クエリ半径の下限
MIN_QUERY_RADIUS = 1e-4

IMAGE_FORMATS = ("jpg", "png")


@dataclass(frozen=True)
class CategoryRadius:
    """カテゴリ毎の near / hit 判定半径。"""

    near: float = 2.0
    hit: float = 0.7

    def __post_init__(self) -> None:
        object.__setattr__(self, "near", clamp_radius(self.near))
        object.__setattr__(self, "hit", clamp_radius(self.hit))


@dataclass
class RadiusTable:
    """カテゴリ → 半径の表。未指定カテゴリは既定値で補完する。"""

    radii: Dict[str, CategoryRadius] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = set(self.radii) - set(CATEGORIES)
        if unknown:
            raise TaggerError(EC_CONFIG_INVALID, f"unknown categories: {sorted(unknown)}")
        merged = {cat: CategoryRadius() for cat in CATEGORIES}
        for cat, value in self.radii.items():
            if isinstance(value, CategoryRadius):
                merged[cat] = value
            elif isinstance(value, dict):
                merged[cat] = CategoryRadius(**value)
            else:
                near, hit = value
                merged[cat] = CategoryRadius(near=near, hit=hit)
        self.radii = merged

    def near(self, category: str) -> float:
        return self.radii[category].near

    def hit(self, category: str) -> float:
        return self.radii[category].hit

    @property
    def max_near(self) -> float:
        """全カテゴリの near 半径の最大値（範囲クエリ用）。"""
        return max(MIN_QUERY_RADIUS, max(r.near for r in self.radii.values()))

    @property
    def max_hit(self) -> float:
        """全カテゴリの hit 半径の最大値（範囲クエリ用）。"""
        return max(MIN_QUERY_RADIUS, max(r.hit for r in self.radii.values()))


@dataclass
class GroundParams:
    ray_start_height: float = 2.0
    ray_length: float = 10.0
    # 優先順
    tags: Tuple[str, ...] = DEFAULT_GROUND_TAGS


@dataclass
class StateThresholds:
    """距離を none / close / mid / far に分類する2閾値。"""

    close: float = 2.0
    far: float = 6.0

    def __post_init__(self) -> None:
        if self.close > self.far:
            raise TaggerError(
                EC_CONFIG_INVALID,
                f"close threshold must not exceed far threshold ({self.close} > {self.far})",
            )

    def classify(self, dist: float) -> str:
        if dist < 0:
            return STATE_NONE
        if dist <= self.close:
            return STATE_CLOSE
        if dist >= self.far:
            return STATE_FAR
        return STATE_MID


@dataclass
class CaptureParams:
    enabled: bool = True
    width: int = 640
    height: int = 360
    image_format: str = "jpg"
    jpg_quality: int = 90
    overwrite_existing: bool = False
    clear_on_start: bool = False
    images_folder: str = "images"
    view_radius: float = 8.0

    def __post_init__(self) -> None:
        self.image_format = self.image_format.lower().lstrip(".")
        if self.image_format == "jpeg":
            self.image_format = "jpg"
        if self.image_format not in IMAGE_FORMATS:
            raise TaggerError(EC_CONFIG_INVALID, f"unsupported image format: {self.image_format}")
        self.width = max(8, int(self.width))
        self.height = max(8, int(self.height))
        self.jpg_quality = min(100, max(1, int(self.jpg_quality)))


@dataclass
class OutputParams:
    subfolder: str = "_TAGGED_OUT"
    suffix: str = "_tagged"
    overwrite_on_start: bool = True
    record_only_annotated_frames: bool = True
    # 既存データセット互換の綴り（nearestEntaranceDist 等）も併記する
    legacy_entrance_keys: bool = False


class WriteFailurePolicy(str, Enum):
    """書き込み失敗時にカーソルを進めるか（advance）、次tickで再試行するか（retry）。"""

    ADVANCE = "advance"
    RETRY = "retry"


@dataclass
class TaggerConfig:
    """エンジン全体の設定。"""

    time_per_frame: float = 0.05
    radii: RadiusTable = field(default_factory=RadiusTable)
    category_tags: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CATEGORY_TAGS))
    ground: GroundParams = field(default_factory=GroundParams)
    group_thresholds: StateThresholds = field(default_factory=lambda: StateThresholds(2.0, 6.0))
    goal_thresholds: StateThresholds = field(default_factory=lambda: StateThresholds(2.0, 10.0))
    only_trigger_colliders: bool = True
    capture: CaptureParams = field(default_factory=CaptureParams)
    output: OutputParams = field(default_factory=OutputParams)
    write_failure_policy: WriteFailurePolicy = WriteFailurePolicy.ADVANCE
    tag_retention_frames: int = 120
    agent_name_prefix: str = "agent_"

    def __post_init__(self) -> None:
        if not self.time_per_frame > 0:
            raise TaggerError(EC_CONFIG_INVALID, "time_per_frame must be positive")
        try:
            self.write_failure_policy = WriteFailurePolicy(self.write_failure_policy)
        except ValueError as exc:
            raise TaggerError(
                EC_CONFIG_INVALID, f"unknown write_failure_policy: {self.write_failure_policy!r}"
            ) from exc
        self.tag_retention_frames = max(0, int(self.tag_retention_frames))
        missing = set(CATEGORIES) - set(self.category_tags)
        for cat in missing:
            self.category_tags[cat] = DEFAULT_CATEGORY_TAGS[cat]

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TaggerConfig":
        """JSON由来の辞書から設定を組み立てる（未指定項目は既定値）。

        Raises:
            TaggerError: 値の型・列挙値・項目名が不正な場合（EC_CONFIG_INVALID）。
        """
        try:
            return cls._from_dict(dict(data or {}))
        except (TypeError, ValueError, KeyError) as exc:
            raise TaggerError(EC_CONFIG_INVALID, f"invalid config: {exc}") from exc

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "TaggerConfig":
        kwargs: Dict[str, Any] = {}
        for key in ("time_per_frame", "only_trigger_colliders", "tag_retention_frames", "agent_name_prefix"):
            if key in data:
                kwargs[key] = data[key]
        if "write_failure_policy" in data:
            kwargs["write_failure_policy"] = WriteFailurePolicy(data["write_failure_policy"])
        if "category_tags" in data:
            kwargs["category_tags"] = dict(data["category_tags"])
        if "radii" in data:
            raw = data["radii"]
            raw = raw.get("radii", raw) if isinstance(raw, dict) else raw
            kwargs["radii"] = RadiusTable(radii=dict(raw))
        if "ground" in data:
            ground = dict(data["ground"])
            if "tags" in ground:
                ground["tags"] = tuple(ground["tags"])
            kwargs["ground"] = GroundParams(**ground)
        if "group_thresholds" in data:
            kwargs["group_thresholds"] = StateThresholds(**data["group_thresholds"])
        if "goal_thresholds" in data:
            kwargs["goal_thresholds"] = StateThresholds(**data["goal_thresholds"])
        if "capture" in data:
            kwargs["capture"] = CaptureParams(**data["capture"])
        if "output" in data:
            kwargs["output"] = OutputParams(**data["output"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["write_failure_policy"] = self.write_failure_policy.value
        data["ground"]["tags"] = list(self.ground.tags)
        return data
