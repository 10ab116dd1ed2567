# tests/test_export.py
import json
from pathlib import Path

import pandas as pd
import pytest

from crowdtag.core.config import CaptureParams, TaggerConfig
from crowdtag.core.engine import run_tagging
from crowdtag.core.errors import EC_INPUT_EMPTY, EC_INPUT_FOLDER, TaggerError
from crowdtag.core.export import collect_tagged, export_csv, load_tagged, summarize
from crowdtag.core.spatial import SceneIndex


def tagged_record(ground, group_state, image=""):
    start = {"active": True, "ground": ground, "groupState": group_state, "speed": 1.0}
    if image:
        start["imagePath"] = image
    return {
        "globalFrames": [1, 2],
        "startFrameTag": start,
        "endFrameTag": {"active": True, "ground": ground, "goalState": "close"},
    }


@pytest.fixture
def tagged_folder(tmp_path):
    out = tmp_path / "_TAGGED_OUT"
    out.mkdir()
    with open(out / "agent_1_tagged.jsonl", "w", encoding="utf-8") as fp:
        fp.write(json.dumps(tagged_record("road", "close", "images/agent_1/a.jpg")) + "\n")
        fp.write("{broken passthrough\n")
        fp.write(json.dumps(tagged_record("sidewalk", "far")) + "\n")
    with open(out / "agent_2_tagged.jsonl", "w", encoding="utf-8") as fp:
        fp.write(json.dumps(tagged_record("road", "none")) + "\n")
    return out


def test_load_tagged_flattens(tagged_folder):
    df = load_tagged(tagged_folder / "agent_1_tagged.jsonl")
    assert len(df) == 2
    assert df["line_no"].tolist() == [0, 2]
    assert df["startFrameTag.ground"].tolist() == ["road", "sidewalk"]
    assert "endFrameTag.goalState" in df.columns


def test_load_tagged_empty(tmp_path):
    path = tmp_path / "agent_9_tagged.jsonl"
    path.write_text("not json\n", encoding="utf-8")
    df = load_tagged(path)
    assert df.empty and list(df.columns) == ["line_no"]


def test_collect_and_summarize(tagged_folder):
    df = collect_tagged(tagged_folder)
    assert sorted(df["agent_id"].unique().tolist()) == [1, 2]
    s = summarize(df)
    assert s["anchors"] == 3
    assert s["agents"] == 2
    assert s["start_images"] == 1
    assert s["end_images"] == 0
    assert s["start_ground"] == {"road": 2, "sidewalk": 1}
    assert s["start_group_state"] == {"close": 1, "far": 1, "none": 1}
    assert s["end_goal_state"] == {"close": 3}


def test_collect_errors(tmp_path):
    with pytest.raises(TaggerError) as ei:
        collect_tagged(tmp_path / "nope")
    assert ei.value.code == EC_INPUT_FOLDER
    with pytest.raises(TaggerError) as ei:
        collect_tagged(tmp_path)
    assert ei.value.code == EC_INPUT_EMPTY


def test_export_csv_bom(tagged_folder, tmp_path):
    df = collect_tagged(tagged_folder)
    path = export_csv(df, tmp_path / "csv" / "tags.csv")
    raw = Path(path).read_bytes()
    assert raw.startswith(b"\xef\xbb\xbf")
    back = pd.read_csv(path, encoding="utf-8-sig")
    assert len(back) == 3


def chunk_line(frames, offsets, start):
    return json.dumps({
        "globalFrames": frames,
        "startWorldPosition": start,
        "localCurrent": offsets,
        "groups": [1, 2],
        "goalWorldPosition": [4.0, 0.0, 0.0],
    })


def test_run_tagging_end_to_end(write_annotations, read_jsonl):
    frames = list(range(0, 9))
    folder = write_annotations({
        1: [chunk_line(frames, [[0.5 * i, 0, 0] for i in range(9)], [0, 0, 0])],
        2: [chunk_line(frames, [[0.5 * i, 0, 0] for i in range(9)], [0, 0, 1])],
    })
    scene = SceneIndex()
    scene.add_node("road", "road")
    scene.add_box("road", [0, -0.05, 0], [20, 0.05, 20])
    config = TaggerConfig(capture=CaptureParams(width=64, height=48, image_format="png"))

    stats = run_tagging(folder, config=config, scene=scene, show_progress=False)

    assert stats["frames_processed"] == 9
    assert stats["anchors_written"] == 2
    assert stats["anchors_pending"] == 0
    assert stats["images_captured"] == 4
    assert stats["capture_failures"] == 0

    out = folder / "_TAGGED_OUT"
    obj = json.loads(read_jsonl(out / "agent_1_tagged.jsonl")[0])
    assert obj["startFrameTag"]["ground"] == "road"
    assert obj["startFrameTag"]["nearestAgentId"] == 2
    assert obj["startFrameTag"]["groupState"] == "close"
    assert obj["endFrameTag"]["goalDist"] == pytest.approx(0.0, abs=1e-9)
    assert obj["endFrameTag"]["speed"] == pytest.approx(0.5 / 0.05)
    assert (out / obj["startFrameTag"]["imagePath"]).read_bytes()[:4] == b"\x89PNG"

    s = summarize(collect_tagged(out))
    assert s["start_images"] == 2 and s["end_images"] == 2


def test_run_tagging_missing_input(tmp_path):
    with pytest.raises(TaggerError) as ei:
        run_tagging(tmp_path / "nope", show_progress=False)
    assert ei.value.code == EC_INPUT_FOLDER
