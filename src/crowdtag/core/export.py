"""タグ付き出力JSONLの表形式への変換とCSV出力。"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import pandas as pd

from . import naming
from .errors import EC_INPUT_EMPTY, EC_INPUT_FOLDER, EC_STORAGE_IO, EC_STORAGE_PERM, TaggerError


def load_tagged(path: str | Path) -> pd.DataFrame:
    """タグ付きJSONLを1行1アンカーのフラットなDataFrameにする。

    ネストしたオブジェクトは `startFrameTag.speed` のようなドット区切り列になる。
    JSONとして読めない行（素通しされた不正レコード）は除外する。

    Args:
        path: `*_tagged.jsonl` のパス。

    Returns:
        `line_no` 列付きのDataFrame。
    """
    records = []
    line_nos = []
    with open(path, encoding="utf-8") as fp:
        for i, line in enumerate(fp):
            if not line.strip():
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                continue
            if isinstance(obj, dict):
                records.append(obj)
                line_nos.append(i)
    if not records:
        return pd.DataFrame(columns=["line_no"])
    df = pd.json_normalize(records, sep=".")
    df.insert(0, "line_no", line_nos)
    return df


def collect_tagged(
    output_folder: str | Path,
    suffix: str = "_tagged",
    agent_name_prefix: str = "agent_",
) -> pd.DataFrame:
    """出力フォルダの全エージェント分を `agent_id` 列付きで連結する。

    Raises:
        TaggerError: フォルダが無い・出力ファイルが無い場合。
    """
    folder = Path(output_folder)
    if not folder.is_dir():
        raise TaggerError(EC_INPUT_FOLDER, f"output folder not found: {folder}")
    frames = []
    for path in sorted(folder.glob(f"*{suffix}.jsonl")):
        df = load_tagged(path)
        df.insert(0, "agent_id", naming.parse_agent_id(path.stem, agent_name_prefix))
        frames.append(df)
    if not frames:
        raise TaggerError(EC_INPUT_EMPTY, f"no tagged outputs in: {folder}")
    return pd.concat(frames, ignore_index=True, sort=False)


def export_csv(df: pd.DataFrame, path: str | Path) -> str:
    """DataFrameをExcelで開けるUTF-8(BOM付き)CSVとして保存する。"""
    out_path = Path(path)
    try:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(out_path, index=False, encoding="utf-8-sig")
    except PermissionError as exc:
        raise TaggerError(EC_STORAGE_PERM, f"permission denied: {out_path}") from exc
    except OSError as exc:
        raise TaggerError(EC_STORAGE_IO, f"failed to save csv: {exc}") from exc
    return str(out_path)


def _counts(df: pd.DataFrame, column: str) -> Dict[str, int]:
    if column not in df.columns:
        return {}
    return {str(k): int(v) for k, v in df[column].value_counts(dropna=True).items()}


def _non_empty(df: pd.DataFrame, column: str) -> int:
    if column not in df.columns:
        return 0
    return int(df[column].fillna("").astype(str).str.len().gt(0).sum())


def summarize(df: pd.DataFrame) -> Dict[str, Any]:
    """アンカー数・画像数と、開始側/終了側の状態分布を集計する。"""
    return {
        "anchors": int(len(df)),
        "agents": int(df["agent_id"].nunique()) if "agent_id" in df.columns else int(not df.empty),
        "start_images": _non_empty(df, "startFrameTag.imagePath"),
        "end_images": _non_empty(df, "endFrameTag.imagePath"),
        "start_ground": _counts(df, "startFrameTag.ground"),
        "start_group_state": _counts(df, "startFrameTag.groupState"),
        "end_goal_state": _counts(df, "endFrameTag.goalState"),
    }
