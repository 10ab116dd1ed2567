# tests/conftest.py
import json
import os
import sys
from pathlib import Path

import numpy as np
import pytest

# プロジェクトの src/ を import パスへ
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from crowdtag.core.runtime import AgentPose


@pytest.fixture(autouse=True)
def patch_output_dirs(monkeypatch, tmp_path):
    """
    カレント直下への出力を避け、テスト毎に一時ディレクトリへ出力させる。
    """
    monkeypatch.setenv("CROWDTAG_RESULT_ROOT", str(tmp_path / "results"))
    monkeypatch.setenv("CROWDTAG_META_ROOT", str(tmp_path / "meta"))


class FakeSpatial:
    """距離・所有チェーンを直接与える空間クエリのスタブ。

    shapes: handle -> {"dist": float, "chain": [tags], "trigger": bool}
    rays:   [(handle, dist), ...]（逆順で返す）
    chains: レイ専用ハンドルの所有チェーン
    """

    def __init__(self, shapes=None, rays=None, chains=None):
        self.shapes = dict(shapes or {})
        self.rays = list(rays or [])
        self.chains = dict(chains or {})
        self.range_calls = []

    def range_query(self, center, radius):
        self.range_calls.append(radius)
        return [h for h, s in self.shapes.items() if s["dist"] <= radius]

    def closest_point_distance(self, center, handle):
        return self.shapes[handle]["dist"]

    def downward_ray(self, origin, max_distance):
        return [r for r in reversed(self.rays) if r[1] <= max_distance]

    def ownership_chain(self, handle):
        if handle in self.shapes:
            return self.shapes[handle]["chain"]
        return self.chains.get(handle, [])

    def is_trigger(self, handle):
        return self.shapes[handle].get("trigger", True)


class FakeDriver:
    """フレーム番号とエージェント位置を直接設定できるドライバ。"""

    def __init__(self):
        self.frame = None
        self.positions = {}

    def set(self, frame, positions=None):
        self.frame = frame
        if positions is not None:
            self.positions = dict(positions)

    def current_global_frame(self):
        return self.frame

    def pose(self, agent_id):
        pos = self.positions.get(agent_id)
        if pos is None:
            return None
        return AgentPose(position=np.asarray(pos, dtype=float))


class FakeCapture:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def render(self, camera, width, height):
        self.calls.append((camera, width, height))
        if self.fail:
            raise RuntimeError("render failed")
        return b"\x89PNG-fake"


@pytest.fixture
def fake_spatial():
    return FakeSpatial


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def fake_capture():
    return FakeCapture


@pytest.fixture
def write_annotations(tmp_path):
    """
    {agent_id: [record(dict) or raw line(str), ...]} を agent_<id>.jsonl として書き出す。
    """
    def _write(records_by_agent, folder=None):
        folder = Path(folder or tmp_path / "input")
        folder.mkdir(parents=True, exist_ok=True)
        for aid, records in records_by_agent.items():
            with open(folder / f"agent_{aid}.jsonl", "w", encoding="utf-8") as fp:
                for rec in records:
                    fp.write((rec if isinstance(rec, str) else json.dumps(rec)) + "\n")
        return folder
    return _write


@pytest.fixture
def read_jsonl():
    def _read(path):
        with open(path, encoding="utf-8") as fp:
            return [line.rstrip("\n") for line in fp if line.strip()]
    return _read
