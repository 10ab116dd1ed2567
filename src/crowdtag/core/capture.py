"""アンカー開始・終了フレームでの画像キャプチャ。"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol

import numpy as np

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.patches import Circle, Rectangle

from . import naming
from .anchors import SIDE_END, SIDE_START, AnchorInterval, AnchorRegistry
from .config import (
    AGENT,
    BUILDING,
    DEFAULT_CATEGORY_TAGS,
    DEFAULT_GROUND_TAGS,
    ENTRANCE,
    OBSTACLE,
    VEHICLE,
    CaptureParams,
)
from .errors import EC_CAPTURE_FAILED, TaggerError
from .runtime import AgentRuntime, PoseSource
from .spatial import SHAPE_SPHERE, SceneIndex, resolve_tag
from .tagger import CATEGORY_PRIORITY


class CaptureService(Protocol):
    def render(self, camera: object, width: int, height: int) -> bytes:
        """カメラの視界をエンコード済み画像バイト列にする。失敗時は例外。"""
        ...


class CaptureCoordinator:
    """登録済みアンカーの start/end フレームで1回だけキャプチャを行う。

    カメラが無い・非アクティブ・描画や書き込みの失敗は、いずれも
    「画像なし」で確定させて再試行しない。
    """

    def __init__(
        self,
        registry: AnchorRegistry,
        params: CaptureParams,
        service: Optional[CaptureService],
        images_root: Path,
        output_root: Path,
        agent_name_prefix: str = "agent_",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.registry = registry
        self.params = params
        self.service = service
        self.images_root = Path(images_root)
        self.output_root = Path(output_root)
        self.agent_name_prefix = agent_name_prefix
        self.logger = logger or logging.getLogger(__name__)
        self.images_written = 0
        self.failures = 0

    def capture_at_frame(self, frame: int, agents: Mapping[int, AgentRuntime]) -> int:
        """このフレームで開始・終了するアンカーを処理する。

        Returns:
            画像参照が付いたアンカー側の数。
        """
        attached = 0
        for meta in self.registry:
            agent = agents.get(meta.agent_id)
            for side, anchors in (
                (SIDE_START, meta.anchors_starting_at(frame)),
                (SIDE_END, meta.anchors_ending_at(frame)),
            ):
                for anchor in anchors:
                    if anchor.is_captured(side):
                        continue
                    rel = self._capture_one(meta.agent_id, agent, anchor, side, frame)
                    anchor.mark_captured(side, rel)
                    if rel:
                        attached += 1
        return attached

    def _capture_one(
        self,
        agent_id: int,
        agent: Optional[AgentRuntime],
        anchor: AnchorInterval,
        side: str,
        frame: int,
    ) -> str:
        if not self.params.enabled or self.service is None:
            return ""
        if agent is None or not agent.active or agent.camera is None:
            return ""

        folder = naming.agent_image_dir(self.images_root, agent_id, self.agent_name_prefix)
        path = folder / naming.image_file_name(anchor.index, side, frame, self.params.image_format)

        if self.params.overwrite_existing or not path.exists():
            try:
                data = self.service.render(agent.camera, self.params.width, self.params.height)
                folder.mkdir(parents=True, exist_ok=True)
                path.write_bytes(data)
            except Exception as exc:  # noqa: BLE001
                self.failures += 1
                self.logger.error(
                    "EC=%s capture failed agent=%s anchor=%s side=%s gf=%s err=%s",
                    EC_CAPTURE_FAILED, agent_id, anchor.index, side, frame, exc,
                )
                return ""
            self.images_written += 1

        return naming.relative_posix(path, self.output_root)


# --- matplotlib による上面図レンダラ ---

_CATEGORY_COLORS: Dict[str, str] = {
    OBSTACLE: "#ff7f0e",
    BUILDING: "#7f7f7f",
    ENTRANCE: "#2ca02c",
    VEHICLE: "#d62728",
    AGENT: "#1f77b4",
}

_GROUND_COLORS: Dict[str, str] = {
    "sidewalk": "#e8e2d0",
    "crosswalk": "#f5f5f5",
    "road": "#505050",
    "grass": "#b8d8a0",
    "inside": "#d9cbb7",
}


@dataclass(frozen=True)
class TopDownCamera:
    """エージェント中心の上面図カメラ。"""

    agent_id: int
    view_radius: float = 8.0


class TopDownCaptureService:
    """シーンと他エージェントを x-z 平面に描いて画像化する。

    画像サイズは `width` x `height` ピクセル丁度になるよう Figure を作る。
    """

    def __init__(
        self,
        scene: SceneIndex,
        poses: PoseSource,
        agent_ids: Callable[[], Iterable[int]],
        image_format: str = "jpg",
        jpg_quality: int = 90,
        category_tags: Optional[Mapping[str, str]] = None,
        ground_tags: Iterable[str] = DEFAULT_GROUND_TAGS,
        dpi: int = 100,
    ) -> None:
        self.scene = scene
        self.poses = poses
        self.agent_ids = agent_ids
        self.image_format = image_format
        self.jpg_quality = jpg_quality
        self.category_tags = dict(category_tags or DEFAULT_CATEGORY_TAGS)
        self.ground_tags = tuple(ground_tags)
        self.dpi = dpi

    def _shape_color(self, handle: int) -> tuple[str, int]:
        chain = self.scene.ownership_chain(handle)
        ground = resolve_tag(chain, self.ground_tags)
        if ground is not None:
            return _GROUND_COLORS.get(ground, "#dddddd"), 0
        tags = set(chain)
        for category in CATEGORY_PRIORITY:
            if self.category_tags[category] in tags:
                return _CATEGORY_COLORS[category], 1
        return "#bbbbbb", 1

    def render(self, camera: TopDownCamera, width: int, height: int) -> bytes:
        """カメラ対象エージェントの周囲を描画してバイト列を返す。

        Raises:
            TaggerError: 対象エージェントの姿勢が得られない場合。
        """
        pose = self.poses.pose(camera.agent_id)
        if pose is None:
            raise TaggerError(EC_CAPTURE_FAILED, f"no pose for agent {camera.agent_id}")
        cx, cz = float(pose.position[0]), float(pose.position[2])
        half_w = float(camera.view_radius)
        half_h = half_w * height / width

        fig = plt.figure(figsize=(width / self.dpi, height / self.dpi), dpi=self.dpi)
        try:
            ax = fig.add_axes([0.0, 0.0, 1.0, 1.0])
            ax.set_xlim(cx - half_w, cx + half_w)
            ax.set_ylim(cz - half_h, cz + half_h)
            ax.set_facecolor("white")
            ax.axis("off")

            for handle, shape in enumerate(self.scene.shapes):
                color, zorder = self._shape_color(handle)
                if shape.kind == SHAPE_SPHERE:
                    patch = Circle((shape.center[0], shape.center[2]), float(shape.size[0]))
                else:
                    patch = Rectangle(
                        (shape.center[0] - shape.size[0], shape.center[2] - shape.size[2]),
                        2 * shape.size[0],
                        2 * shape.size[2],
                    )
                patch.set_facecolor(color)
                patch.set_edgecolor("none")
                patch.set_alpha(0.9 if zorder else 1.0)
                patch.set_zorder(zorder)
                ax.add_patch(patch)

            others = []
            for aid in self.agent_ids():
                if aid == camera.agent_id:
                    continue
                other = self.poses.pose(aid)
                if other is not None and other.active:
                    others.append((other.position[0], other.position[2]))
            if others:
                pts = np.asarray(others, dtype=float)
                ax.scatter(pts[:, 0], pts[:, 1], s=36, c=_CATEGORY_COLORS[AGENT], zorder=2)

            fwd = np.asarray(pose.forward, dtype=float)
            ax.scatter([cx], [cz], s=64, c="#9467bd", zorder=3)
            norm = float(np.hypot(fwd[0], fwd[2]))
            if norm > 1e-9:
                length = half_w * 0.15
                ax.arrow(
                    cx, cz, fwd[0] / norm * length, fwd[2] / norm * length,
                    width=length * 0.08, color="#9467bd", zorder=3,
                )

            buf = io.BytesIO()
            if self.image_format == "png":
                fig.savefig(buf, format="png", dpi=self.dpi)
            else:
                fig.savefig(
                    buf, format="jpeg", dpi=self.dpi,
                    pil_kwargs={"quality": int(self.jpg_quality)},
                )
            return buf.getvalue()
        finally:
            plt.close(fig)
