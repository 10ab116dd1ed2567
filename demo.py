# -*- coding: utf-8 -*-
"""
demo.py
- 入力フォルダのチャンクJSONL（アノテーション兼軌跡）を再生しながらタグ付け
- --input 未指定ならダミーの群衆データとシーンを生成して実行
- --export-csv 指定時はタグ付き出力をCSVにまとめる
- 依存: numpy, pandas, matplotlib, scipy, tqdm, tzdata
"""
from __future__ import annotations
import os
import sys
import json
import argparse
from pathlib import Path

import numpy as np

# ---- パス調整（src を import 可能に） ----
ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

# ---- crowdtag Core API ----
from crowdtag.core.config import CaptureParams, OutputParams, TaggerConfig, WriteFailurePolicy
from crowdtag.core.engine import run_tagging
from crowdtag.core.errors import TaggerError
from crowdtag.core.export import collect_tagged, export_csv, summarize
from crowdtag.core.spatial import SceneIndex


# ===============================================================
# ダミーデータ生成
# ===============================================================
def build_demo_scene() -> dict:
    """歩道・車道・横断歩道・建物・車両・障害物から成る小さな街区。"""
    return {
        "nodes": [
            {"name": "street", "tag": None},
            {"name": "road", "tag": "road", "parent": "street"},
            {"name": "sidewalk_n", "tag": "sidewalk", "parent": "street"},
            {"name": "sidewalk_s", "tag": "sidewalk", "parent": "street"},
            {"name": "crosswalk", "tag": "crosswalk", "parent": "street"},
            {"name": "shop", "tag": "Building"},
            {"name": "shop_door", "tag": "Entrance", "parent": "shop"},
            {"name": "bus", "tag": "Vehicle"},
            {"name": "bench", "tag": "Obstacle"},
        ],
        "shapes": [
            {"node": "road", "type": "box", "center": [0, -0.05, 0], "half_extents": [30, 0.05, 3]},
            {"node": "sidewalk_n", "type": "box", "center": [0, -0.05, 5], "half_extents": [30, 0.05, 2]},
            {"node": "sidewalk_s", "type": "box", "center": [0, -0.05, -5], "half_extents": [30, 0.05, 2]},
            {"node": "crosswalk", "type": "box", "center": [10, 0.0, 0], "half_extents": [1.5, 0.01, 3]},
            {"node": "shop", "type": "box", "center": [0, 2, 9], "half_extents": [6, 2, 2]},
            {"node": "shop_door", "type": "box", "center": [0, 1, 6.9], "half_extents": [0.8, 1, 0.1]},
            {"node": "bus", "type": "box", "center": [-8, 1.2, 1.5], "half_extents": [5, 1.2, 1.2]},
            {"node": "bench", "type": "sphere", "center": [4, 0.4, 4], "radius": 0.5},
        ],
    }


def build_demo_chunks(n_agents: int = 6, frames: int = 240, chunk_len: int = 40, seed: int = 7) -> dict[int, list[dict]]:
    """2人組で歩道を歩き、途中で横断歩道を渡るダミー軌跡。

    エージェント毎に `chunk_len` フレームずつのチャンク（=アンカー）に分割する。
    """
    rng = np.random.default_rng(seed)
    chunks: dict[int, list[dict]] = {}
    for aid in range(n_agents):
        pair = aid // 2
        mate = aid + 1 if aid % 2 == 0 else aid - 1
        start_frame = pair * 20
        z0 = 5.0 if pair % 2 == 0 else -5.0
        start = np.array([-20.0 + pair * 2.0, 0.0, z0 + (0.4 if aid % 2 else -0.4)])
        goal = np.array([20.0, 0.0, -z0])
        n = frames - start_frame
        t = np.linspace(0.0, 1.0, n)
        xs = start[0] + (goal[0] - start[0]) * t
        # 横断歩道（x=10付近）で反対側の歩道へ渡る
        zs = np.where(xs < 9.0, start[2], np.where(xs > 11.0, goal[2], start[2] + (goal[2] - start[2]) * (xs - 9.0) / 2.0))
        path = np.column_stack([xs, np.zeros(n), zs]) + rng.normal(0.0, 0.02, size=(n, 3)) * [1, 0, 1]

        rows = []
        members = [mate] if mate < n_agents else []
        for lo in range(0, n, chunk_len):
            hi = min(n, lo + chunk_len)
            seg = path[lo:hi]
            origin = seg[0]
            rows.append({
                "agentId": aid,
                "globalFrames": list(range(start_frame + lo, start_frame + hi)),
                "startWorldPosition": origin.round(4).tolist(),
                "startForward": [1.0, 0.0, 0.0],
                "localCurrent": (seg - origin).round(4).tolist(),
                "groups": [{"groupId": pair, "members": [{"id": m} for m in members]}],
                "goalWorldPosition": goal.tolist(),
            })
        chunks[aid] = rows
    return chunks


def write_demo_input(folder: Path, prefix: str = "agent_") -> Path:
    folder.mkdir(parents=True, exist_ok=True)
    for aid, rows in build_demo_chunks().items():
        with open(folder / f"{prefix}{aid}.jsonl", "w", encoding="utf-8") as fp:
            for row in rows:
                fp.write(json.dumps(row, ensure_ascii=False) + "\n")
    scene_path = folder / "scene.json"
    scene_path.write_text(json.dumps(build_demo_scene(), indent=2), encoding="utf-8")
    return scene_path


# ===============================================================
# 出力ルート整備
# ===============================================================
def ensure_output_roots(result_root: str, meta_root: str) -> None:
    os.makedirs(result_root, exist_ok=True)
    os.makedirs(meta_root, exist_ok=True)
    os.environ.setdefault("CROWDTAG_RESULT_ROOT", result_root)
    os.environ.setdefault("CROWDTAG_META_ROOT", meta_root)


# ===============================================================
# CLI
# ===============================================================
def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="crowdtag demo: trajectory replay → tagged anchors (+ images)")
    p.add_argument("--input", type=str, default=None, help="チャンクJSONLのフォルダ（未指定ならダミーデータ生成）")
    p.add_argument("--scene", type=str, default=None, help="シーン記述JSON（nodes/shapes）")
    p.add_argument("--time-per-frame", type=float, default=0.05, help="1フレームの秒数")
    p.add_argument("--no-capture", action="store_true", help="画像キャプチャを行わない")
    p.add_argument("--image-format", choices=["jpg", "png"], default="jpg")
    p.add_argument("--record-all-frames", action="store_true", help="アノテーション外のフレームもタグを計算")
    p.add_argument("--write-failure-policy", choices=[w.value for w in WriteFailurePolicy], default="advance")
    p.add_argument("--rotate-offsets", action="store_true", help="localCurrent を startForward 基準で回転")
    p.add_argument("--y-offset", type=float, default=0.0, help="軌跡の高さオフセット")
    p.add_argument("--export-csv", type=str, default=None, help="タグ付き出力をまとめたCSVの保存先")
    p.add_argument("--result-root", type=str, default=str(ROOT / "results"), help="成果物ルート")
    p.add_argument("--meta-root", type=str, default=str(ROOT / "meta"), help="メタ情報ルート")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    ensure_output_roots(args.result_root, args.meta_root)

    if args.input:
        input_folder = Path(args.input)
        scene_path = Path(args.scene) if args.scene else None
    else:
        input_folder = Path(args.result_root) / "demo_input"
        scene_path = write_demo_input(input_folder)
        if args.scene:
            scene_path = Path(args.scene)

    config = TaggerConfig(
        time_per_frame=args.time_per_frame,
        capture=CaptureParams(enabled=not args.no_capture, image_format=args.image_format),
        output=OutputParams(record_only_annotated_frames=not args.record_all_frames),
        write_failure_policy=WriteFailurePolicy(args.write_failure_policy),
    )

    try:
        scene = SceneIndex.load_json(scene_path) if scene_path else None
        stats = run_tagging(
            input_folder,
            config=config,
            scene=scene,
            rotate_offsets=args.rotate_offsets,
            y_offset=args.y_offset,
            ver="demo",
        )
        if args.export_csv:
            df = collect_tagged(stats["output_folder"], config.output.suffix, config.agent_name_prefix)
            stats["csv_path"] = export_csv(df, args.export_csv)
            stats["export_summary"] = summarize(df)
    except TaggerError as e:
        print(f"[ERROR] EC={e.code} msg={e.message}")
        sys.exit(1)

    print(stats)


if __name__ == "__main__":
    main()
