# tests/test_capture.py
import numpy as np
import pytest

import matplotlib
matplotlib.use("Agg")  # ヘッドレス

from crowdtag.core.anchors import AnchorRegistry
from crowdtag.core.capture import CaptureCoordinator, TopDownCamera, TopDownCaptureService
from crowdtag.core.config import CaptureParams
from crowdtag.core.errors import TaggerError
from crowdtag.core.runtime import AgentPose, AgentRuntime
from crowdtag.core.spatial import SceneIndex


def setup_coordinator(write_annotations, tmp_path, service, **params):
    folder = write_annotations({1: [{"globalFrames": [10, 11, 12]}, {"globalFrames": [12, 14]}]})
    reg = AnchorRegistry()
    reg.load_folder(folder)
    out = folder / "_TAGGED_OUT"
    coord = CaptureCoordinator(reg, CaptureParams(**params), service, out / "images", out)
    return reg, coord, out


def active_agent(camera="cam"):
    a = AgentRuntime.create(1, 0.05, camera=camera)
    a.apply_pose(AgentPose(position=np.zeros(3)))
    return a


def test_capture_start_and_end(write_annotations, tmp_path, fake_capture):
    service = fake_capture()
    reg, coord, out = setup_coordinator(write_annotations, tmp_path, service)
    agents = {1: active_agent()}

    assert coord.capture_at_frame(10, agents) == 1
    a0, a1 = reg.get(1).anchors
    assert a0.start_image == "images/agent_1/anchor_000000_start_gf_000010.jpg"
    assert (out / a0.start_image).read_bytes() == b"\x89PNG-fake"

    # 12: a0 の end と a1 の start
    assert coord.capture_at_frame(12, agents) == 2
    assert a0.end_image.endswith("anchor_000000_end_gf_000012.jpg")
    assert a1.start_image.endswith("anchor_000001_start_gf_000012.jpg")
    assert len(service.calls) == 3
    assert service.calls[0] == ("cam", 640, 360)


def test_capture_is_idempotent(write_annotations, tmp_path, fake_capture):
    service = fake_capture()
    reg, coord, _ = setup_coordinator(write_annotations, tmp_path, service)
    agents = {1: active_agent()}
    coord.capture_at_frame(10, agents)
    coord.capture_at_frame(10, agents)
    assert len(service.calls) == 1


def test_inactive_or_no_camera_is_permanent(write_annotations, tmp_path, fake_capture):
    service = fake_capture()
    reg, coord, _ = setup_coordinator(write_annotations, tmp_path, service)
    inactive = AgentRuntime.create(1, 0.05, camera="cam")
    coord.capture_at_frame(10, {1: inactive})
    a0 = reg.get(1).anchors[0]
    assert a0.start_captured and a0.start_image == ""

    coord.capture_at_frame(12, {1: active_agent(camera=None)})
    assert a0.end_captured and a0.end_image == ""
    assert service.calls == []


def test_failure_is_terminal(write_annotations, tmp_path, fake_capture):
    service = fake_capture(fail=True)
    reg, coord, _ = setup_coordinator(write_annotations, tmp_path, service)
    agents = {1: active_agent()}
    assert coord.capture_at_frame(10, agents) == 0
    a0 = reg.get(1).anchors[0]
    assert a0.start_captured and a0.start_image == ""
    assert coord.failures == 1
    service.fail = False
    coord.capture_at_frame(10, agents)
    assert a0.start_image == ""


def test_existing_image_is_reused(write_annotations, tmp_path, fake_capture):
    service = fake_capture()
    reg, coord, out = setup_coordinator(write_annotations, tmp_path, service)
    target = out / "images" / "agent_1" / "anchor_000000_start_gf_000010.jpg"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"old")
    coord.capture_at_frame(10, {1: active_agent()})
    assert service.calls == []
    assert target.read_bytes() == b"old"
    assert reg.get(1).anchors[0].start_image != ""


def test_overwrite_existing(write_annotations, tmp_path, fake_capture):
    service = fake_capture()
    reg, coord, out = setup_coordinator(write_annotations, tmp_path, service, overwrite_existing=True)
    target = out / "images" / "agent_1" / "anchor_000000_start_gf_000010.jpg"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"old")
    coord.capture_at_frame(10, {1: active_agent()})
    assert target.read_bytes() == b"\x89PNG-fake"


class _Poses:
    def __init__(self, poses):
        self.poses = poses

    def pose(self, agent_id):
        return self.poses.get(agent_id)


def make_service(fmt):
    scene = SceneIndex()
    scene.add_node("road", "road")
    scene.add_node("bus", "Vehicle")
    scene.add_box("road", [0, -0.05, 0], [20, 0.05, 3])
    scene.add_box("bus", [3, 1, 2], [2, 1, 1])
    poses = _Poses({
        1: AgentPose(position=np.zeros(3), forward=np.array([1.0, 0.0, 0.0])),
        2: AgentPose(position=np.array([1.0, 0.0, 1.0])),
    })
    return TopDownCaptureService(scene, poses, lambda: [1, 2, 3], image_format=fmt)


def test_top_down_png_size():
    data = make_service("png").render(TopDownCamera(1, 6.0), 160, 90)
    assert data[:8] == b"\x89PNG\r\n\x1a\n"
    # IHDR の幅・高さ
    assert int.from_bytes(data[16:20], "big") == 160
    assert int.from_bytes(data[20:24], "big") == 90


def test_top_down_jpeg():
    data = make_service("jpg").render(TopDownCamera(1), 64, 48)
    assert data[:2] == b"\xff\xd8"


def test_top_down_missing_pose_raises():
    with pytest.raises(TaggerError):
        make_service("png").render(TopDownCamera(7), 64, 48)
