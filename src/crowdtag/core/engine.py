"""フレーム駆動のタグ付けエンジンと一括実行ラッパ。"""

from __future__ import annotations

import json
import logging
import shutil
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from tqdm import tqdm

from . import naming
from .anchors import AnchorRegistry
from .capture import CaptureCoordinator, CaptureService, TopDownCamera, TopDownCaptureService
from .config import TaggerConfig
from .errors import (
    EC_DRIVER_NOT_READY,
    EC_INPUT_FOLDER,
    EC_RUN_UNKNOWN,
    EC_STORAGE_DST_INVALID,
    EC_STORAGE_IO,
    TaggerError,
)
from .logging_util import close_logger, get_logger, log_pending, log_summary
from .replay import TrajectoryReplay
from .runtime import AgentRuntime, FrameSource, PoseSource
from .spatial import SceneIndex, SpatialQuery
from .tagger import ContextTagger
from .writer import AnchorWriter


class EnginePhase(str, Enum):
    CREATED = "created"
    INITIALIZED = "initialized"
    READY = "ready"


class TaggingEngine:
    """tick毎に tag → capture → flush → evict を1回だけ実行する。

    起動は2段階: `initialize()` で入力・出力を準備し、外部ドライバの
    準備完了後に `topology_ready()` でエージェントを確定する。
    それまでの `tick()` はフレームを消費しない。
    """

    def __init__(
        self,
        config: TaggerConfig,
        input_folder: str | Path,
        spatial: SpatialQuery,
        frame_source: FrameSource,
        pose_source: PoseSource,
        capture_service: Optional[CaptureService] = None,
        logger: Optional[logging.Logger] = None,
        config_path: Optional[Path] = None,
        ver: str = "t1.0",
    ) -> None:
        self.config = config
        self.input_folder = Path(input_folder)
        self.spatial = spatial
        self.frame_source = frame_source
        self.pose_source = pose_source
        self.capture_service = capture_service
        self.logger = logger or logging.getLogger(__name__)
        self.run_id = naming.now_jst()
        self.config_path = config_path or naming.meta_paths(self.run_id, ver)["config_path"]

        self.output_folder = self.input_folder / config.output.subfolder
        self.images_folder = self.output_folder / config.capture.images_folder

        self.registry = AnchorRegistry(config.agent_name_prefix, config.output.suffix, self.logger)
        self.tagger = ContextTagger(config, spatial, self.registry, self.logger)
        self.writer = AnchorWriter(
            self.registry, config.time_per_frame, config.write_failure_policy, self.logger,
            legacy_entrance_keys=config.output.legacy_entrance_keys,
        )
        self.capture: Optional[CaptureCoordinator] = None

        self.agents: Dict[int, AgentRuntime] = {}
        self.phase = EnginePhase.CREATED
        self.last_frame: Optional[int] = None
        self.frames_processed = 0

    # --- 起動 ---
    def initialize(self) -> None:
        """入力アノテーションを読み込み、出力先を準備する。

        Raises:
            TaggerError: 入力フォルダが無い・空、出力先を作れない場合。
        """
        if not self.input_folder.is_dir():
            raise TaggerError(EC_INPUT_FOLDER, f"input folder not found: {self.input_folder}")
        try:
            self.output_folder.mkdir(parents=True, exist_ok=True)
            if self.config.capture.clear_on_start and self.images_folder.exists():
                shutil.rmtree(self.images_folder)
            self.images_folder.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self.logger.error("EC=%s make_dir_failed path=%s err=%s", EC_STORAGE_DST_INVALID, self.output_folder, exc)
            raise TaggerError(EC_STORAGE_DST_INVALID, f"cannot prepare output folder: {self.output_folder}") from exc

        self.registry.load_folder(self.input_folder)

        for meta in self.registry:
            meta.out_path = naming.tagged_output_path(
                self.output_folder, meta.source_name, self.config.output.suffix
            )
            if self.config.output.overwrite_on_start and meta.out_path.exists():
                try:
                    meta.out_path.unlink()
                except OSError as exc:
                    raise TaggerError(EC_STORAGE_DST_INVALID, f"cannot clear output: {meta.out_path}") from exc

        self.capture = CaptureCoordinator(
            self.registry,
            self.config.capture,
            self.capture_service,
            self.images_folder,
            self.output_folder,
            self.config.agent_name_prefix,
            self.logger,
        )
        self.save_config()
        self.phase = EnginePhase.INITIALIZED
        self.logger.info("initialized input=%s output=%s", self.input_folder, self.output_folder)

    def save_config(self) -> Optional[Path]:
        path = Path(self.config_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as fp:
                json.dump(self.config.to_dict(), fp, ensure_ascii=False, indent=2)
        except OSError as exc:
            self.logger.warning("EC=%s save config failed path=%s err=%s", EC_STORAGE_IO, path, exc)
            return None
        return path

    def topology_ready(
        self,
        agent_ids: Iterable[int],
        cameras: Optional[Mapping[int, Any]] = None,
    ) -> None:
        """外部ドライバのエージェントが揃った時点で1回だけ呼ぶ。"""
        if self.phase is EnginePhase.CREATED:
            raise TaggerError(EC_DRIVER_NOT_READY, "initialize() must be called before topology_ready()")
        if self.phase is EnginePhase.READY:
            return
        cameras = cameras or {}
        for agent_id in agent_ids:
            self.agents[agent_id] = AgentRuntime.create(
                agent_id, self.config.time_per_frame, camera=cameras.get(agent_id)
            )
        unmatched = [meta.agent_id for meta in self.registry if meta.agent_id not in self.agents]
        if unmatched:
            self.logger.warning("annotated agents without runtime: %s", unmatched)
        self.phase = EnginePhase.READY
        self.logger.info("discovered %d agents (%d annotated)", len(self.agents), len(self.registry))

    # --- tick ---
    def tick(self) -> bool:
        """現在フレームを1回処理する。処理した場合 True。"""
        if self.phase is not EnginePhase.READY:
            return False
        frame = self.frame_source.current_global_frame()
        if frame is None or frame == self.last_frame:
            return False
        self.last_frame = frame

        for agent in self.agents.values():
            agent.apply_pose(self.pose_source.pose(agent.agent_id))

        self.tagger.tag_frame(frame, self.agents)
        self.capture.capture_at_frame(frame, self.agents)
        self.writer.flush_up_to(frame, self.tagger.tag_for)
        self.evict(frame)
        self.frames_processed += 1
        return True

    def evict(self, frame: int) -> int:
        keep_from = frame - self.config.tag_retention_frames
        removed = 0
        for agent_id in self.agents:
            meta = self.registry.get(agent_id)
            pinned = meta.pinned_frames() if meta is not None else frozenset()
            removed += self.tagger.evict(agent_id, keep_from, pinned)
        return removed

    # --- 状態 ---
    def progress(self) -> List[Dict[str, Any]]:
        """エージェント毎の出力カーソルと次アンカーの状況。"""
        rows = []
        for meta in self.registry:
            nxt = meta.next_anchor()
            remaining = None
            if meta.traj_end_frame is not None and self.last_frame is not None:
                remaining = max(0.0, (meta.traj_end_frame - self.last_frame) * self.config.time_per_frame)
            rows.append({
                "agent_id": meta.agent_id,
                "cursor": meta.next_anchor_to_write,
                "anchors": len(meta.anchors),
                "next_start": nxt.start_frame if nxt is not None else None,
                "next_end": nxt.end_frame if nxt is not None else None,
                "traj_end": meta.traj_end_frame,
                "remaining_traj_sec": remaining,
            })
        return rows

    def summary(self) -> Dict[str, Any]:
        pending = sum(meta.pending_count for meta in self.registry)
        return {
            "frames_processed": self.frames_processed,
            "last_frame": self.last_frame,
            "agents": len(self.agents),
            "anchors_written": self.writer.written,
            "anchors_dropped": self.writer.dropped,
            "anchors_pending": pending,
            "images_captured": self.capture.images_written if self.capture else 0,
            "capture_failures": self.capture.failures if self.capture else 0,
            "output_folder": str(self.output_folder),
            "config_path": str(self.config_path),
        }


def run_tagging(
    input_folder: str | Path,
    config: Optional[TaggerConfig] = None,
    scene: Optional[SceneIndex] = None,
    replay: Optional[TrajectoryReplay] = None,
    rotate_offsets: bool = False,
    y_offset: float = 0.0,
    ver: str = "t1.0",
    show_progress: bool = True,
) -> Dict[str, Any]:
    """入力フォルダの軌跡を再生しながらタグ付けを最後まで実行する。

    Args:
        input_folder: アノテーション（兼 軌跡チャンク）JSONL のフォルダ。
        config: 設定。省略時は既定値。
        scene: 空間インデックス。省略時は空のシーン。
        replay: フレームドライバ。省略時は `input_folder` から読み込む。
        rotate_offsets: 軌跡読み込み時に `startForward` で回転するか。
        y_offset: 軌跡読み込み時の高さオフセット。
        ver: メタ出力の版数。
        show_progress: tqdm の進捗表示を出すか。

    Returns:
        実行サマリー辞書。

    Raises:
        TaggerError: 起動時エラー、または想定外の例外。
    """
    config = config or TaggerConfig()
    dt = naming.now_jst()
    mpaths = naming.meta_paths(dt, ver)
    logger = get_logger(run_id=dt, log_path=mpaths["log_path"])

    try:
        if replay is None:
            replay = TrajectoryReplay.load_folder(
                input_folder,
                agent_name_prefix=config.agent_name_prefix,
                output_suffix=config.output.suffix,
                rotate_offsets=rotate_offsets,
                y_offset=y_offset,
                logger=logger,
            )
        spatial = scene if scene is not None else SceneIndex()

        service = None
        cameras: Dict[int, TopDownCamera] = {}
        if config.capture.enabled:
            service = TopDownCaptureService(
                spatial,
                replay,
                replay.agent_ids,
                image_format=config.capture.image_format,
                jpg_quality=config.capture.jpg_quality,
                category_tags=config.category_tags,
                ground_tags=config.ground.tags,
            )
            cameras = {aid: TopDownCamera(aid, config.capture.view_radius) for aid in replay.agent_ids()}

        engine = TaggingEngine(
            config, input_folder, spatial, replay, replay, service,
            logger=logger, config_path=mpaths["config_path"], ver=ver,
        )
        engine.initialize()
        replay.start()
        engine.topology_ready(replay.agent_ids(), cameras)

        with tqdm(total=replay.total_frames, desc="Tagging", unit="frame", disable=not show_progress) as pbar:
            while not replay.finished:
                engine.tick()
                pbar.update(1)
                replay.step()

        stats = engine.summary()
        stats["log_path"] = str(mpaths["log_path"])
        log_summary(logger, stats)
        log_pending(logger, engine.progress())
        return stats
    except TaggerError as exc:
        logger.error("EC=%s %s", exc.code, exc.message)
        raise
    except Exception as exc:
        logger.exception("EC=%s unexpected err=%s", EC_RUN_UNKNOWN, exc)
        raise TaggerError(EC_RUN_UNKNOWN, "unexpected error during tagging") from exc
    finally:
        close_logger(logger)
