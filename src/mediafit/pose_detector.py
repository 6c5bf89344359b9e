"""YOLO pose-estimation helpers used for subject framing."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.request import urlretrieve

import numpy as np

POSE_MODEL_FILENAME = "yolov8n-pose.pt"
POSE_MODEL_URL = (
    "https://github.com/ultralytics/assets/releases/download/v8.2.0/yolov8n-pose.pt"
)
POSE_MODEL_ENV_VAR = "MEDIAFIT_POSE_MODEL"
DEFAULT_KEYPOINT_MIN_SCORE = 0.3

# COCO keypoint order produced by YOLO pose models.
COCO_KEYPOINT_NAMES = (
    "nose",
    "left_eye",
    "right_eye",
    "left_ear",
    "right_ear",
    "left_shoulder",
    "right_shoulder",
    "left_elbow",
    "right_elbow",
    "left_wrist",
    "right_wrist",
    "left_hip",
    "right_hip",
    "left_knee",
    "right_knee",
    "left_ankle",
    "right_ankle",
)


@dataclass(frozen=True)
class Keypoint:
    name: str
    x: float
    y: float
    score: float = 1.0


@dataclass
class PoseCandidate:
    keypoints: list[Keypoint] = field(default_factory=list)
    score: float = 0.0

    def find(self, name: str) -> Optional[Keypoint]:
        for kp in self.keypoints:
            if kp.name == name:
                return kp
        return None


def resolve_pose_model_path(debug: bool = False) -> Path:
    """
    Resolve pose model path from env override or runtime cache.

    Priority:
      1. MEDIAFIT_POSE_MODEL (explicit local path)
      2. ~/.cache/mediafit/models/yolov8n-pose.pt (downloaded on first use)
    """
    override = os.environ.get(POSE_MODEL_ENV_VAR)
    if override:
        model_path = Path(override).expanduser()
        if debug:
            print(f"Using pose model from {POSE_MODEL_ENV_VAR}: {model_path}")
        return model_path

    cache_dir = Path.home() / ".cache" / "mediafit" / "models"
    model_path = cache_dir / POSE_MODEL_FILENAME
    if model_path.exists():
        return model_path

    cache_dir.mkdir(parents=True, exist_ok=True)
    if debug:
        print(f"Pose model not found; downloading to {model_path} ...")
    try:
        urlretrieve(POSE_MODEL_URL, model_path)
    except Exception as e:
        raise RuntimeError(
            f"Could not download pose model to {model_path}. "
            f"Set {POSE_MODEL_ENV_VAR} to a local model path to skip download."
        ) from e
    return model_path


def _pose_setup_hint(error: Exception) -> str:
    """Return a practical setup hint for common pose-model initialization failures."""
    text = str(error).lower()
    if "no module named" in text or "import" in text:
        return (
            "Install pose dependencies in your active environment:\n"
            "  python -m pip install -e '.[pose]'"
        )
    if "certificate" in text or "https" in text or "download" in text or "connection" in text:
        return (
            "Pose model download failed (network/TLS). Ensure internet access for the first run,\n"
            f"or set {POSE_MODEL_ENV_VAR} to a local yolov8n-pose.pt, or use --no-pose."
        )
    return "Pose model initialization failed. Staff images will use centered cropping."


def candidates_from_result(result, min_score: float = DEFAULT_KEYPOINT_MIN_SCORE) -> list[PoseCandidate]:
    """Convert one ultralytics pose result into PoseCandidate objects.

    Keypoints scoring below ``min_score`` are dropped, so a joint the model
    could not see is treated the same as a missing one.
    """
    kpts = getattr(result, "keypoints", None)
    if kpts is None or kpts.xy is None or len(kpts.xy) == 0:
        return []

    xy = np.asarray(kpts.xy.cpu().numpy() if hasattr(kpts.xy, "cpu") else kpts.xy, dtype=float)
    conf = kpts.conf
    if conf is not None:
        conf = np.asarray(conf.cpu().numpy() if hasattr(conf, "cpu") else conf, dtype=float)
    else:
        conf = np.ones(xy.shape[:2], dtype=float)

    box_conf = None
    boxes = getattr(result, "boxes", None)
    if boxes is not None and boxes.conf is not None and len(boxes.conf) == len(xy):
        raw = boxes.conf
        box_conf = np.asarray(raw.cpu().numpy() if hasattr(raw, "cpu") else raw, dtype=float)

    candidates: list[PoseCandidate] = []
    for i in range(len(xy)):
        keypoints = []
        for j, name in enumerate(COCO_KEYPOINT_NAMES[: xy.shape[1]]):
            score = float(conf[i][j])
            if score < min_score:
                continue
            keypoints.append(Keypoint(name, float(xy[i][j][0]), float(xy[i][j][1]), score))
        score = float(box_conf[i]) if box_conf is not None else float(conf[i].mean())
        candidates.append(PoseCandidate(keypoints=keypoints, score=score))
    return candidates


class YoloPoseEstimator:
    """Single-image pose estimator backed by an ultralytics YOLO pose model.

    Not safe for concurrent use; the batch exporter serializes calls.
    """

    def __init__(self, model=None, min_score: float = DEFAULT_KEYPOINT_MIN_SCORE, debug: bool = False):
        self.min_score = min_score
        self.debug = debug
        self._model = model
        self._last_candidates: Optional[list[PoseCandidate]] = None

    @classmethod
    def load(cls, min_score: float = DEFAULT_KEYPOINT_MIN_SCORE, debug: bool = False) -> "YoloPoseEstimator":
        from ultralytics import YOLO

        model_path = resolve_pose_model_path(debug=debug)
        return cls(model=YOLO(str(model_path)), min_score=min_score, debug=debug)

    @property
    def last_candidates(self) -> Optional[list[PoseCandidate]]:
        return self._last_candidates

    def reset(self) -> None:
        self._last_candidates = None

    def estimate_poses(self, image: np.ndarray) -> list[PoseCandidate]:
        """Run the model on a BGR image and return every detected person."""
        results = self._model(image, verbose=False)
        candidates: list[PoseCandidate] = []
        for result in results or []:
            candidates.extend(candidates_from_result(result, min_score=self.min_score))
        if self.debug:
            print(f"Pose model returned {len(candidates)} candidate(s)")
        self._last_candidates = candidates
        return candidates
