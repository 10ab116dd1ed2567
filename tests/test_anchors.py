# tests/test_anchors.py
import pytest

from crowdtag.core.anchors import SIDE_END, SIDE_START, AnchorRegistry
from crowdtag.core.errors import EC_INPUT_EMPTY, EC_INPUT_FOLDER, TaggerError


def test_load_indexes_start_and_end(write_annotations):
    folder = write_annotations({
        3: [
            {"globalFrames": [12, 10, 11], "groups": [4], "goalWorldPosition": [1, 0, 1]},
            {"globalFrames": [20, 25]},
        ],
    })
    reg = AnchorRegistry()
    assert reg.load_folder(folder) == 1
    meta = reg.get(3)
    assert [a.start_frame for a in meta.anchors] == [10, 20]
    assert [a.end_frame for a in meta.anchors] == [12, 25]
    assert [a.index for a in meta.anchors_starting_at(10)] == [0]
    assert [a.index for a in meta.anchors_ending_at(25)] == [1]
    assert meta.anchors_starting_at(11) == []
    assert meta.traj_end_frame == 25
    assert reg.frame_meta(3, 11).group_ids == (4,)
    assert reg.frame_meta(3, 11).goal_world.tolist() == [1.0, 0.0, 1.0]
    assert reg.frame_meta(3, 13) is None
    assert reg.global_range() == (10, 25)


def test_malformed_records_become_placeholders(write_annotations):
    bad_json = '{"globalFrames": [1, 2'
    no_frames = '{"note": "no frames here"}'
    folder = write_annotations({1: [bad_json, {"globalFrames": [5, 6]}, no_frames, '{"globalFrames": []}']})
    reg = AnchorRegistry()
    reg.load_folder(folder)
    meta = reg.get(1)
    assert len(meta.anchors) == 4
    placeholders = [a for a in meta.anchors if a.is_placeholder]
    assert [a.index for a in placeholders] == [0, 2, 3]
    for a in placeholders:
        assert a.start_captured and a.end_captured
    assert meta.anchors[0].raw_line == bad_json
    assert meta.traj_end_frame == 6


def test_capture_flags_are_one_shot(write_annotations):
    folder = write_annotations({1: [{"globalFrames": [1, 2]}]})
    reg = AnchorRegistry()
    reg.load_folder(folder)
    anchor = reg.get(1).anchors[0]
    assert anchor.mark_captured(SIDE_START, "images/a.jpg") is True
    assert anchor.mark_captured(SIDE_START, "images/b.jpg") is False
    assert anchor.image(SIDE_START) == "images/a.jpg"
    assert anchor.is_captured(SIDE_END) is False
    with pytest.raises(ValueError):
        anchor.mark_captured("middle")


def test_folder_filters(write_annotations, tmp_path):
    folder = write_annotations({1: [{"globalFrames": [1]}], 2: [{"globalFrames": [2]}]})
    (folder / "agent_1_tagged.jsonl").write_text('{"globalFrames": [9]}\n', encoding="utf-8")
    (folder / "readme.jsonl").write_text('{"globalFrames": [9]}\n', encoding="utf-8")
    reg = AnchorRegistry()
    assert reg.load_folder(folder) == 2
    assert 1 in reg and 2 in reg
    assert reg.get(1).source_name == "agent_1"


def test_missing_or_empty_folder(tmp_path):
    reg = AnchorRegistry()
    with pytest.raises(TaggerError) as ei:
        reg.load_folder(tmp_path / "nope")
    assert ei.value.code == EC_INPUT_FOLDER
    (tmp_path / "empty").mkdir()
    with pytest.raises(TaggerError) as ei:
        reg.load_folder(tmp_path / "empty")
    assert ei.value.code == EC_INPUT_EMPTY


def test_pinned_frames_follow_cursor(write_annotations):
    folder = write_annotations({1: [{"globalFrames": [1, 3]}, "broken", {"globalFrames": [5, 8]}]})
    reg = AnchorRegistry()
    reg.load_folder(folder)
    meta = reg.get(1)
    assert meta.pinned_frames() == {1, 3, 5, 8}
    meta.advance_cursor()
    meta.advance_cursor()
    assert meta.pinned_frames() == {5, 8}
    assert meta.pending_count == 1


def test_pinned_frames_count_shared_frames(write_annotations):
    # 2本目の start が1本目の end と同じフレーム
    folder = write_annotations({1: [{"globalFrames": [1, 4]}, {"globalFrames": [4, 7]}, {"globalFrames": [7, 7]}]})
    reg = AnchorRegistry()
    reg.load_folder(folder)
    meta = reg.get(1)
    assert meta.pinned_frames() == {1, 4, 7}
    meta.advance_cursor()
    assert meta.pinned_frames() == {4, 7}
    meta.advance_cursor()
    assert meta.pinned_frames() == {7}
    meta.advance_cursor()
    assert meta.pinned_frames() == set()
    assert meta.pending_count == 0


def test_invalid_bytes_do_not_drop_agent(write_annotations):
    folder = write_annotations({2: [{"globalFrames": [9]}]})
    (folder / "agent_1.jsonl").write_bytes(
        b'{"globalFrames": [1]}\n{"globalFrames": [2], "label": "\xff"}\n{"globalFrames": [3]}\n'
    )
    reg = AnchorRegistry()
    assert reg.load_folder(folder) == 2
    meta = reg.get(1)
    assert len(meta.anchors) == 3
    assert not any(a.is_placeholder for a in meta.anchors)
    assert meta.anchors[1].payload["label"] == "\ufffd"
    assert meta.traj_end_frame == 3


def test_bom_prefixed_file(write_annotations):
    folder = write_annotations({2: [{"globalFrames": [9]}]})
    (folder / "agent_1.jsonl").write_text(
        '{"globalFrames": [1, 2]}\n{"globalFrames": [3, 4]}\n', encoding="utf-8-sig"
    )
    reg = AnchorRegistry()
    reg.load_folder(folder)
    meta = reg.get(1)
    assert (folder / "agent_1.jsonl").read_bytes().startswith(b"\xef\xbb\xbf")
    assert [a.is_placeholder for a in meta.anchors] == [False, False]
    assert meta.anchors[0].start_frame == 1
