from .config import (
    CaptureParams,
    CategoryRadius,
    GroundParams,
    OutputParams,
    RadiusTable,
    StateThresholds,
    TaggerConfig,
    WriteFailurePolicy,
)
from .errors import TaggerError
from .anchors import AnchorInterval, AgentMeta, AnchorRegistry
from .tags import FrameTag, FrameTagStore
from .kinematics import KinematicsTracker
from .runtime import AgentPose, AgentRuntime
from .spatial import SceneIndex
from .tagger import ContextTagger
from .capture import CaptureCoordinator, TopDownCamera, TopDownCaptureService
from .writer import AnchorWriter
from .replay import TrajectoryReplay
from .engine import TaggingEngine, run_tagging
from .export import collect_tagged, export_csv, load_tagged, summarize
