"""外部ドライバとのインターフェースと、エージェントの実行時状態。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import numpy as np

from .kinematics import KinematicsTracker

DEFAULT_FORWARD = np.array([0.0, 0.0, 1.0])


class FrameSource(Protocol):
    def current_global_frame(self) -> Optional[int]:
        """現在のグローバルフレーム。未準備なら None。"""
        ...


@dataclass(frozen=True)
class AgentPose:
    position: np.ndarray
    forward: np.ndarray = field(default_factory=lambda: DEFAULT_FORWARD.copy())
    active: bool = True


class PoseSource(Protocol):
    def pose(self, agent_id: int) -> Optional[AgentPose]:
        ...


@dataclass
class AgentRuntime:
    """tick毎に外部シミュレーションから姿勢を写し取るエージェント状態。

    姿勢そのものは外部が所有し、ここでは参照用のスナップショットのみ保持する。
    """

    agent_id: int
    kinematics: KinematicsTracker
    camera: Any = None
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    forward: np.ndarray = field(default_factory=lambda: DEFAULT_FORWARD.copy())
    active: bool = False

    @classmethod
    def create(cls, agent_id: int, time_per_frame: float, camera: Any = None) -> "AgentRuntime":
        return cls(agent_id=agent_id, kinematics=KinematicsTracker(time_per_frame), camera=camera)

    def apply_pose(self, pose: Optional[AgentPose]) -> None:
        """姿勢を反映する。姿勢が得られない場合は非アクティブ扱い（位置は据え置き）。"""
        if pose is None:
            self.active = False
            return
        self.position = np.asarray(pose.position, dtype=float)
        self.forward = np.asarray(pose.forward, dtype=float)
        self.active = bool(pose.active)
