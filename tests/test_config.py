# tests/test_config.py
import json

import pytest

from crowdtag.core import naming
from crowdtag.core.config import (
    MIN_QUERY_RADIUS,
    CaptureParams,
    CategoryRadius,
    RadiusTable,
    StateThresholds,
    TaggerConfig,
    WriteFailurePolicy,
)
from crowdtag.core.errors import EC_CONFIG_INVALID, TaggerError
from crowdtag.core.validation import coerce_frames, coerce_group_ids, coerce_vec3


def test_classify_inclusive_bounds():
    th = StateThresholds(2.0, 6.0)
    assert th.classify(-1.0) == "none"
    assert th.classify(0.0) == "close"
    assert th.classify(2.0) == "close"
    assert th.classify(4.0) == "mid"
    assert th.classify(6.0) == "far"


def test_thresholds_order_validated():
    with pytest.raises(TaggerError) as ei:
        StateThresholds(5.0, 1.0)
    assert ei.value.code == EC_CONFIG_INVALID


def test_radius_table_defaults_and_max():
    table = RadiusTable({"vehicle": (3.5, 1.2), "obstacle": {"near": 1.0, "hit": 0.3}})
    assert table.near("vehicle") == 3.5 and table.hit("vehicle") == 1.2
    assert table.near("building") == 2.0  # 既定値で補完
    assert table.max_near == 3.5
    assert table.max_hit == 1.2


def test_radius_clamped_and_floored():
    assert CategoryRadius(-1.0, -2.0) == CategoryRadius(0.0, 0.0)
    table = RadiusTable({c: (0.0, 0.0) for c in ("agent", "obstacle", "building", "entrance", "vehicle")})
    assert table.max_near == MIN_QUERY_RADIUS
    assert table.max_hit == MIN_QUERY_RADIUS


def test_unknown_category_rejected():
    with pytest.raises(TaggerError):
        RadiusTable({"tree": (1.0, 0.5)})


def test_capture_params_normalized():
    p = CaptureParams(image_format=".JPEG", width=2, jpg_quality=400)
    assert p.image_format == "jpg"
    assert p.width == 8
    assert p.jpg_quality == 100
    with pytest.raises(TaggerError):
        CaptureParams(image_format="gif")


def test_time_per_frame_must_be_positive():
    with pytest.raises(TaggerError):
        TaggerConfig(time_per_frame=0)


def test_config_round_trip_through_json():
    cfg = TaggerConfig(
        time_per_frame=0.1,
        radii=RadiusTable({"agent": (1.5, 0.5)}),
        write_failure_policy="retry",
        capture=CaptureParams(image_format="png"),
    )
    restored = TaggerConfig.from_dict(json.loads(json.dumps(cfg.to_dict())))
    assert restored.time_per_frame == 0.1
    assert restored.radii.near("agent") == 1.5
    assert restored.write_failure_policy is WriteFailurePolicy.RETRY
    assert restored.capture.image_format == "png"
    assert restored.ground.tags == cfg.ground.tags


@pytest.mark.parametrize("data", [
    {"write_failure_policy": "bogus"},
    {"capture": {"bogus": 1}},
    {"radii": {"vehicle": {"near": 1.0, "far": 2.0}}},
    {"radii": {"vehicle": [1.0]}},
    {"group_thresholds": {"close": 1.0, "middle": 3.0}},
    {"ground": ["sidewalk"]},
    {"output": {"suffix": "_x", "unknown": True}},
])
def test_from_dict_invalid_values_raise_config_error(data):
    with pytest.raises(TaggerError) as ei:
        TaggerConfig.from_dict(data)
    assert ei.value.code == EC_CONFIG_INVALID


def test_invalid_policy_in_constructor():
    with pytest.raises(TaggerError) as ei:
        TaggerConfig(write_failure_policy="later")
    assert ei.value.code == EC_CONFIG_INVALID


def test_from_dict_output_options():
    cfg = TaggerConfig.from_dict({"output": {"legacy_entrance_keys": True}})
    assert cfg.output.legacy_entrance_keys is True
    assert TaggerConfig().output.legacy_entrance_keys is False


def test_coerce_frames():
    assert coerce_frames([3, 1, 2]) == (3, 1, 2)
    assert coerce_frames([1.0, 2.0]) == (1, 2)
    assert coerce_frames([]) is None
    assert coerce_frames([1, "x"]) is None
    assert coerce_frames([True]) is None
    assert coerce_frames(None) is None


def test_coerce_vec3_and_groups():
    assert coerce_vec3([1, 2, 3, 4]).tolist() == [1.0, 2.0, 3.0]
    assert coerce_vec3([1, 2]) is None
    assert coerce_group_ids([2, 3, 2]) == (2, 3)
    assert coerce_group_ids([{"groupId": 0, "members": [{"id": 4}, {"id": 5}]}]) == (4, 5)
    assert coerce_group_ids("x") == ()


def test_naming_helpers(tmp_path):
    assert naming.parse_agent_id("agent_12") == 12
    assert naming.parse_agent_id("scene_agent_7_chunk") == 7
    assert naming.parse_agent_id("walker") == -1
    assert naming.image_file_name(3, "start", 120, "jpg") == "anchor_000003_start_gf_000120.jpg"
    assert naming.tagged_output_path(tmp_path, "agent_1").name == "agent_1_tagged.jsonl"
    assert naming.relative_posix(tmp_path / "images" / "a.jpg", tmp_path) == "images/a.jpg"
    paths = naming.meta_paths("20250101_000000", "t1")
    assert paths["log_path"].parent.name == "logs"
    assert str(paths["config_path"]).startswith(str(tmp_path / "meta"))
