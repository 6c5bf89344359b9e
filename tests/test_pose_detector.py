from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest

import mediafit.pose_detector as pose_detector
from mediafit.pose_detector import COCO_KEYPOINT_NAMES, YoloPoseEstimator


def _fake_result(xy: np.ndarray, conf, box_conf=None):
    keypoints = SimpleNamespace(xy=xy, conf=conf)
    boxes = SimpleNamespace(conf=box_conf) if box_conf is not None else None
    return SimpleNamespace(keypoints=keypoints, boxes=boxes)


def _person_arrays(offset: float = 0.0):
    xy = np.zeros((1, 17, 2), dtype=float)
    conf = np.full((1, 17), 0.05, dtype=float)
    for name, (x, y) in {
        "nose": (150, 100),
        "left_shoulder": (200, 150),
        "right_shoulder": (100, 150),
    }.items():
        idx = COCO_KEYPOINT_NAMES.index(name)
        xy[0, idx] = (x + offset, y)
        conf[0, idx] = 0.9
    return xy, conf


def test_candidates_from_result_drops_low_confidence_keypoints() -> None:
    xy, conf = _person_arrays()

    candidates = pose_detector.candidates_from_result(
        _fake_result(xy, conf, box_conf=np.array([0.88])), min_score=0.3
    )

    assert len(candidates) == 1
    person = candidates[0]
    assert person.score == pytest.approx(0.88)
    assert {kp.name for kp in person.keypoints} == {"nose", "left_shoulder", "right_shoulder"}
    nose = person.find("nose")
    assert (nose.x, nose.y) == (150.0, 100.0)
    assert person.find("left_wrist") is None


def test_candidates_from_result_handles_missing_confidences() -> None:
    xy_a, _ = _person_arrays()
    xy_b, _ = _person_arrays(offset=200)
    xy = np.concatenate([xy_a, xy_b])

    candidates = pose_detector.candidates_from_result(_fake_result(xy, None), min_score=0.3)

    assert len(candidates) == 2
    assert all(len(c.keypoints) == 17 for c in candidates)
    assert candidates[1].find("nose").x == pytest.approx(350.0)


def test_candidates_from_result_empty_when_no_people() -> None:
    result = _fake_result(np.zeros((0, 17, 2)), np.zeros((0, 17)))
    assert pose_detector.candidates_from_result(result) == []
    assert pose_detector.candidates_from_result(SimpleNamespace(keypoints=None)) == []


def test_yolo_pose_estimator_runs_model_and_resets_state() -> None:
    xy, conf = _person_arrays()
    calls = []

    def fake_model(image, verbose=False):
        calls.append((image.shape, verbose))
        return [_fake_result(xy, conf, box_conf=np.array([0.7]))]

    estimator = YoloPoseEstimator(model=fake_model, min_score=0.5)
    image = np.zeros((300, 400, 3), dtype=np.uint8)

    candidates = estimator.estimate_poses(image)

    assert calls == [((300, 400, 3), False)]
    assert len(candidates) == 1
    assert estimator.last_candidates == candidates
    estimator.reset()
    assert estimator.last_candidates is None


def test_resolve_pose_model_path_prefers_env_override(monkeypatch, tmp_path) -> None:
    custom = tmp_path / "custom-pose.pt"
    monkeypatch.setenv("MEDIAFIT_POSE_MODEL", str(custom))

    assert pose_detector.resolve_pose_model_path() == custom


def test_resolve_pose_model_path_uses_cached_model(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("MEDIAFIT_POSE_MODEL", raising=False)
    monkeypatch.setattr(pose_detector.Path, "home", lambda: tmp_path)
    cached = tmp_path / ".cache" / "mediafit" / "models" / "yolov8n-pose.pt"
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"weights")

    def fail_download(*_args, **_kwargs):
        raise AssertionError("should not download")

    monkeypatch.setattr(pose_detector, "urlretrieve", fail_download)

    assert pose_detector.resolve_pose_model_path() == cached


def test_resolve_pose_model_path_wraps_download_errors(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("MEDIAFIT_POSE_MODEL", raising=False)
    monkeypatch.setattr(pose_detector.Path, "home", lambda: tmp_path)

    def broken_download(*_args, **_kwargs):
        raise OSError("network unreachable")

    monkeypatch.setattr(pose_detector, "urlretrieve", broken_download)

    with pytest.raises(RuntimeError, match="MEDIAFIT_POSE_MODEL"):
        pose_detector.resolve_pose_model_path()


def test_pose_setup_hint_mentions_install_for_missing_module() -> None:
    hint = pose_detector._pose_setup_hint(ModuleNotFoundError("No module named 'ultralytics'"))
    assert "pip install" in hint
    assert "[pose]" in hint

    fallback = pose_detector._pose_setup_hint(RuntimeError("CUDA error"))
    assert "centered cropping" in fallback


def test_pose_model_path_is_under_user_cache(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("MEDIAFIT_POSE_MODEL", raising=False)
    monkeypatch.setattr(pose_detector.Path, "home", lambda: tmp_path)
    downloaded = []
    monkeypatch.setattr(
        pose_detector,
        "urlretrieve",
        lambda url, dest: downloaded.append((url, Path(dest))),
    )

    path = pose_detector.resolve_pose_model_path()

    assert downloaded == [(pose_detector.POSE_MODEL_URL, path)]
    assert path.parent == tmp_path / ".cache" / "mediafit" / "models"
