#!/usr/bin/env python3
"""
Media Profile Batch Resizer
=================================================

Converts a batch of photos into the exact pixel sizes each publishing target
("media profile") requires, framing staff portraits around the detected person.

Pipeline (per image):
  1. Classify the image (Photo / Staff / Logo) from its file name
  2. Look up the target size for the selected media profile
  3. Resolve the source crop: manual crop > pose-guided frame (Staff) > centered cover
  4. Downscale progressively (halving steps, then one high-quality resize)
  5. Encode as JPEG and add to the output ZIP archive

Usage:
  mediafit ./photos --profile EPARK --output resized.zip
  mediafit staff_tanaka.jpg shop_top.png --profile PeakManager --quality 0.8
  mediafit ./photos --type logo_mark.png=Logo --crop staff_a.jpg=120,40,300,348
  python -m mediafit ./photos --preview-dir ./previews

Requirements:
  pip install Pillow opencv-python-headless numpy pillow-heif tqdm

  For pose-guided staff framing:
    pip install ultralytics
"""

import argparse
import json
import os
import sys
import threading
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

import cv2
import numpy as np
from PIL import Image, ImageOps
from mediafit.pose_detector import (
    DEFAULT_KEYPOINT_MIN_SCORE,
    Keypoint,
    PoseCandidate,
    YoloPoseEstimator,
    _pose_setup_hint,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SUPPORTED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic", ".heif"}
HEIC_EXTENSIONS = {".heic", ".heif"}
MAX_BATCH_FILES = 30
MAX_FILE_BYTES = 10 * 1024 * 1024  # 10 MB per source file
DEFAULT_PROFILE = "EPARK"
DEFAULT_JPEG_QUALITY = 0.9
MIN_JPEG_QUALITY = 0.05
MAX_JPEG_QUALITY = 1.0
PREVIEW_JPEG_QUALITY = 0.85
DEFAULT_PREVIEW_SIZE = 200  # longest preview edge in px
HALVING_THRESHOLD = 1.5  # keep halving while both axes exceed 1.5x target
NOSE_ANCHOR_WEIGHT = 0.5
FRAME_ABOVE_ANCHOR_RATIO = 0.55
FRAME_BELOW_ANCHOR_RATIO = 0.45
ASPECT_TOLERANCE = 1e-3
ARCHIVE_NAME_PREFIX = "resized_images"

JPEG_QUALITY_ENV_VAR = "MEDIAFIT_JPEG_QUALITY"
WORKERS_ENV_VAR = "MEDIAFIT_WORKERS"
PREVIEW_SIZE_ENV_VAR = "MEDIAFIT_PREVIEW_SIZE"
POSE_MIN_SCORE_ENV_VAR = "MEDIAFIT_POSE_MIN_SCORE"
USE_POSE_ENV_VAR = "MEDIAFIT_USE_POSE"
PROFILES_FILE_ENV_VAR = "MEDIAFIT_PROFILES_FILE"

STAFF_KEYWORDS = ("staff",)
LOGO_KEYWORDS = ("logo", "ロゴ")
PHOTO_KEYWORDS = ("main", "top", "shop", "photo")

SKIP_EXCLUDED = "category excluded for profile"
SKIP_CANCELLED = "cancelled"
SKIP_DEADLINE = "deadline exceeded"

_HEIF_OPENER_READY = False


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class MediaFitError(Exception):
    """Base class for resizer errors."""


class ResampleError(MediaFitError):
    """Raster could not be decoded, cropped, resized or encoded."""


class CapabilityLoadError(MediaFitError):
    """An optional capability (pose model, HEIC decoder) failed to initialize."""


class BatchLimitError(MediaFitError, ValueError):
    """Too many files submitted in one batch."""


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


def _read_env_file(env_path: Path) -> dict[str, str]:
    """Parse a simple .env file into key/value pairs."""
    values: dict[str, str] = {}
    try:
        content = env_path.read_text(encoding="utf-8")
    except OSError:
        return values

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            continue

        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        values[key] = value

    return values


def _resolve_env_string(var_name: str, search_dir: Optional[Path] = None) -> Optional[str]:
    """Resolve a string env var from environment first, then .env files."""
    env_value = (os.environ.get(var_name) or "").strip()
    if env_value:
        return env_value

    candidates = [Path.cwd() / ".env"]
    if search_dir is not None:
        candidates.append(search_dir / ".env")

    seen: set[Path] = set()
    for env_file in candidates:
        resolved = env_file.resolve()
        if resolved in seen or not env_file.exists():
            continue
        seen.add(resolved)

        values = _read_env_file(env_file)
        value = (values.get(var_name) or "").strip()
        if value:
            os.environ.setdefault(var_name, value)
            print(f"  📝 Loaded {var_name} from {env_file}")
            return value
    return None


def _resolve_env_int(var_name: str, default: int) -> int:
    raw = (os.environ.get(var_name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _resolve_env_float(var_name: str, default: float) -> float:
    raw = (os.environ.get(var_name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _resolve_env_bool(var_name: str, default: bool) -> bool:
    raw = (os.environ.get(var_name) or "").strip().lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


def resolve_jpeg_quality() -> float:
    """Resolve output JPEG quality factor (0.05-1.0)."""
    value = _resolve_env_float(JPEG_QUALITY_ENV_VAR, DEFAULT_JPEG_QUALITY)
    return min(MAX_JPEG_QUALITY, max(MIN_JPEG_QUALITY, value))


def resolve_worker_count() -> int:
    """Resolve thread count for batch export."""
    return min(16, max(1, _resolve_env_int(WORKERS_ENV_VAR, 1)))


def resolve_preview_size() -> int:
    """Resolve longest edge of preview thumbnails."""
    return min(1024, max(64, _resolve_env_int(PREVIEW_SIZE_ENV_VAR, DEFAULT_PREVIEW_SIZE)))


def resolve_pose_min_score() -> float:
    """Resolve the keypoint confidence below which a joint counts as missing."""
    return min(1.0, max(0.0, _resolve_env_float(POSE_MIN_SCORE_ENV_VAR, DEFAULT_KEYPOINT_MIN_SCORE)))


def resolve_use_pose() -> bool:
    """Resolve whether staff images should try pose-guided framing."""
    return _resolve_env_bool(USE_POSE_ENV_VAR, True)


def resolve_profiles_file(search_dir: Optional[Path] = None) -> Optional[Path]:
    """Resolve an optional JSON file with extra media profiles."""
    value = _resolve_env_string(PROFILES_FILE_ENV_VAR, search_dir=search_dir)
    return Path(value).expanduser() if value else None


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


class Category(str, Enum):
    PHOTO = "Photo"
    STAFF = "Staff"
    LOGO = "Logo"

    @classmethod
    def parse(cls, value: str) -> "Category":
        """Parse an english or localized category name."""
        text = (value or "").strip()
        if text in LOCALIZED_CATEGORY_NAMES:
            return LOCALIZED_CATEGORY_NAMES[text]
        for member in cls:
            if text.lower() in {member.value.lower(), member.name.lower()}:
                return member
        raise ValueError(f"Unknown image category: {value!r}")


LOCALIZED_CATEGORY_NAMES = {
    "写真": Category.PHOTO,
    "スタッフ": Category.STAFF,
    "ロゴ": Category.LOGO,
}


@dataclass(frozen=True)
class TargetSize:
    width: int
    height: int

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Target size must be positive, got {self.width}x{self.height}")

    @property
    def aspect(self) -> float:
        return self.width / self.height

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class CropRect:
    """Source rectangle in (possibly fractional) pixel coordinates."""

    x: float
    y: float
    width: float
    height: float

    @property
    def aspect(self) -> float:
        if self.height <= 0:
            return 0.0
        return self.width / self.height

    def is_inside(self, img_w: int, img_h: int, tol: float = 1e-6) -> bool:
        return (
            self.x >= -tol
            and self.y >= -tol
            and self.x + self.width <= img_w + tol
            and self.y + self.height <= img_h + tol
        )

    def pixel_box(self, img_w: int, img_h: int) -> tuple[int, int, int, int]:
        """Round to an integer (x0, y0, x1, y1) box clipped to the image."""
        x0 = min(max(int(round(self.x)), 0), img_w)
        y0 = min(max(int(round(self.y)), 0), img_h)
        x1 = min(max(int(round(self.x + self.width)), 0), img_w)
        y1 = min(max(int(round(self.y + self.height)), 0), img_h)
        return x0, y0, x1, y1

    def as_list(self) -> list[float]:
        return [round(self.x, 2), round(self.y, 2), round(self.width, 2), round(self.height, 2)]


@dataclass(frozen=True)
class ImageAsset:
    """Decoded source image. ``pixels`` is a BGR uint8 array and is never modified."""

    name: str
    pixels: np.ndarray = field(repr=False, compare=False)
    category: Category = Category.PHOTO
    manual_crop: Optional[CropRect] = None
    source_path: Optional[Path] = None

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def with_category(self, category: Category) -> "ImageAsset":
        """Return a copy with a new category; any manual crop no longer applies."""
        return replace(self, category=category, manual_crop=None)

    def with_manual_crop(self, crop: Optional[CropRect]) -> "ImageAsset":
        return replace(self, manual_crop=crop)


STATUS_SUCCESS = "success"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class ProcessingOutcome:
    name: str
    status: str
    filename: Optional[str] = None
    raster: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    jpeg_bytes: Optional[bytes] = field(default=None, repr=False, compare=False)
    reason: str = ""
    error: Optional[BaseException] = field(default=None, compare=False)
    crop: Optional[CropRect] = None
    crop_method: str = ""

    @classmethod
    def success(cls, name, filename, raster, jpeg_bytes, crop=None, crop_method=""):
        return cls(
            name=name,
            status=STATUS_SUCCESS,
            filename=filename,
            raster=raster,
            jpeg_bytes=jpeg_bytes,
            crop=crop,
            crop_method=crop_method,
        )

    @classmethod
    def skipped(cls, name, reason):
        return cls(name=name, status=STATUS_SKIPPED, reason=reason)

    @classmethod
    def failed(cls, name, error):
        return cls(name=name, status=STATUS_FAILED, reason=str(error), error=error)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


class PoseEstimator(Protocol):
    def estimate_poses(self, image: np.ndarray) -> list[PoseCandidate]: ...

    def reset(self) -> None: ...


class ArchiveWriter(Protocol):
    def add(self, filename: str, data: bytes) -> str: ...


# ---------------------------------------------------------------------------
# Classification and media profiles
# ---------------------------------------------------------------------------


MEDIA_PROFILES: dict[str, dict[Category, Optional[TargetSize]]] = {
    "EPARK": {
        Category.PHOTO: TargetSize(660, 440),
        Category.STAFF: TargetSize(150, 174),
        Category.LOGO: TargetSize(330, 220),
    },
    "PeakManager": {
        Category.PHOTO: TargetSize(900, 600),
        Category.STAFF: TargetSize(400, 400),
        Category.LOGO: None,  # not exported
    },
}

PROFILE_ALIASES = {"ピークマネージャー": "PeakManager"}


def classify_image_type(file_name: str) -> Category:
    """Infer the image category from its file name (first keyword match wins)."""
    lower = file_name.lower()
    if any(keyword in lower for keyword in STAFF_KEYWORDS):
        return Category.STAFF
    if any(keyword in lower for keyword in LOGO_KEYWORDS):
        return Category.LOGO
    if any(keyword in lower for keyword in PHOTO_KEYWORDS):
        return Category.PHOTO
    return Category.PHOTO


def _parse_target_size(value: object) -> TargetSize:
    if isinstance(value, dict):
        width = value.get("width", value.get("w"))
        height = value.get("height", value.get("h"))
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        width, height = value
    else:
        raise ValueError(f"Invalid target size: {value!r}")
    return TargetSize(int(width), int(height))


def load_media_profiles(path: Optional[Path] = None) -> dict[str, dict[Category, Optional[TargetSize]]]:
    """
    Return the built-in profile table, merged with entries from a JSON file.

    File format: {"Profile": {"Photo": [w, h], "Logo": null, ...}}
    """
    profiles = {name: dict(table) for name, table in MEDIA_PROFILES.items()}
    if path is None:
        return profiles

    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ValueError(f"Cannot read media profiles from {path}: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError(f"Media profiles file {path} must contain a JSON object")

    for profile_name, table in payload.items():
        if not isinstance(table, dict):
            raise ValueError(f"Profile {profile_name!r} must map categories to sizes")
        merged = profiles.setdefault(str(profile_name), {})
        for category_name, size in table.items():
            category = Category.parse(category_name)
            merged[category] = None if size is None else _parse_target_size(size)
    return profiles


def resolve_profile_name(
    profile: str,
    profiles: Optional[dict[str, dict[Category, Optional[TargetSize]]]] = None,
) -> str:
    """Match a profile name exactly, by alias, or case-insensitively."""
    profiles = MEDIA_PROFILES if profiles is None else profiles
    if profile in profiles:
        return profile
    alias = PROFILE_ALIASES.get(profile)
    if alias in profiles:
        return alias
    for name in profiles:
        if name.lower() == profile.lower():
            return name
    raise ValueError(f"Unknown media profile {profile!r}. Known profiles: {', '.join(profiles)}")


def resolve_target_size(
    profile: str,
    category: Category,
    profiles: Optional[dict[str, dict[Category, Optional[TargetSize]]]] = None,
) -> Optional[TargetSize]:
    """Target size for (profile, category), or None when the category is not exported."""
    profiles = MEDIA_PROFILES if profiles is None else profiles
    return profiles.get(profile, {}).get(category)


# ---------------------------------------------------------------------------
# Crop geometry
# ---------------------------------------------------------------------------


def centered_cover_crop(img_w: int, img_h: int, target: TargetSize) -> CropRect:
    """Largest rectangle with the target aspect ratio, centered in the image."""
    if img_w <= 0 or img_h <= 0:
        raise ResampleError(f"Image has no pixels ({img_w}x{img_h})")
    image_aspect = img_w / img_h
    target_aspect = target.aspect
    if image_aspect > target_aspect:
        crop_h = float(img_h)
        crop_w = img_h * target_aspect
        return CropRect((img_w - crop_w) / 2.0, 0.0, crop_w, crop_h)
    crop_w = float(img_w)
    crop_h = img_w / target_aspect
    return CropRect(0.0, (img_h - crop_h) / 2.0, crop_w, crop_h)


def subject_frame_from_keypoints(
    nose: Keypoint,
    left_shoulder: Keypoint,
    right_shoulder: Keypoint,
    img_w: int,
    img_h: int,
    target_aspect: float,
) -> CropRect:
    """Frame a person from nose and shoulder positions.

    The horizontal anchor is the shoulder midpoint; the vertical anchor sits
    halfway between the nose and the shoulder line. The crop is as large as
    possible while keeping the anchor horizontally centered and leaving at
    most 55% of the crop height above the anchor and 45% below it.
    """
    anchor_x = (left_shoulder.x + right_shoulder.x) / 2.0
    shoulder_y = (left_shoulder.y + right_shoulder.y) / 2.0
    anchor_y = NOSE_ANCHOR_WEIGHT * nose.y + (1.0 - NOSE_ANCHOR_WEIGHT) * shoulder_y

    if not (0 < anchor_x < img_w and 0 < anchor_y < img_h):
        raise ValueError(f"Subject anchor ({anchor_x:.1f}, {anchor_y:.1f}) is outside the image")
    if target_aspect <= 0:
        raise ValueError(f"Invalid target aspect ratio: {target_aspect}")

    max_w = 2.0 * min(anchor_x, img_w - anchor_x)
    max_h = min(anchor_y / FRAME_ABOVE_ANCHOR_RATIO, (img_h - anchor_y) / FRAME_BELOW_ANCHOR_RATIO)

    if max_w / target_aspect <= max_h:
        crop_w = max_w
        crop_h = crop_w / target_aspect
    else:
        crop_h = max_h
        crop_w = crop_h * target_aspect

    crop_x = anchor_x - crop_w * 0.5
    crop_y = anchor_y - crop_h * 0.5
    crop_x = max(0.0, min(crop_x, img_w - crop_w))
    crop_y = max(0.0, min(crop_y, img_h - crop_h))
    return CropRect(crop_x, crop_y, crop_w, crop_h)


def estimate_subject_frame(
    image: np.ndarray,
    target_aspect: float,
    pose_estimator: PoseEstimator,
    debug: bool = False,
) -> Optional[CropRect]:
    """
    Ask the pose capability for keypoints and derive a framing rectangle.

    Returns None when no usable pose is found or anything goes wrong; framing
    is an enhancement and never fails the caller.
    """
    try:
        reset = getattr(pose_estimator, "reset", None)
        if callable(reset):
            reset()
        poses = pose_estimator.estimate_poses(image)
        if not poses:
            if debug:
                print("Pose: no person detected")
            return None

        pose = max(poses, key=lambda p: p.score)
        nose = pose.find("nose")
        left_shoulder = pose.find("left_shoulder")
        right_shoulder = pose.find("right_shoulder")
        if nose is None or left_shoulder is None or right_shoulder is None:
            if debug:
                print("Pose: nose/shoulder keypoints missing")
            return None

        img_h, img_w = image.shape[:2]
        rect = subject_frame_from_keypoints(
            nose, left_shoulder, right_shoulder, img_w, img_h, target_aspect
        )
        x0, y0, x1, y1 = rect.pixel_box(img_w, img_h)
        if x1 <= x0 or y1 <= y0:
            if debug:
                print("Subject frame rounds to an empty box")
            return None
        return rect
    except Exception as e:
        if debug:
            print(f"Subject framing failed: {e}")
        return None


def resolve_crop(
    image: np.ndarray,
    category: Category,
    target: TargetSize,
    manual_crop: Optional[CropRect] = None,
    pose_estimator: Optional[PoseEstimator] = None,
    debug: bool = False,
) -> tuple[CropRect, str]:
    """Resolve the source rectangle and report which rule produced it.

    Precedence: manual crop > subject frame (Staff only) > centered cover.
    """
    if manual_crop is not None:
        return manual_crop, "manual"

    if category == Category.STAFF and pose_estimator is not None:
        rect = estimate_subject_frame(image, target.aspect, pose_estimator, debug=debug)
        if rect is not None:
            return rect, "subject"
        if debug:
            print("Subject frame unavailable; using centered crop")

    img_h, img_w = image.shape[:2]
    return centered_cover_crop(img_w, img_h, target), "center"


def resolve_crop_rect(
    image: np.ndarray,
    category: Category,
    target: TargetSize,
    manual_crop: Optional[CropRect] = None,
    pose_estimator: Optional[PoseEstimator] = None,
    debug: bool = False,
) -> CropRect:
    rect, _method = resolve_crop(image, category, target, manual_crop, pose_estimator, debug)
    return rect


# ---------------------------------------------------------------------------
# Resampling and encoding
# ---------------------------------------------------------------------------


def extract_crop(image: np.ndarray, rect: CropRect) -> np.ndarray:
    """Copy the crop rectangle out of the source at native resolution."""
    if image is None or image.ndim < 2 or image.size == 0:
        raise ResampleError("Source raster is empty or could not be decoded")
    img_h, img_w = image.shape[:2]
    x0, y0, x1, y1 = rect.pixel_box(img_w, img_h)
    if x1 <= x0 or y1 <= y0:
        raise ResampleError(
            f"Crop ({rect.x:.1f}, {rect.y:.1f}, {rect.width:.1f}, {rect.height:.1f}) "
            f"has no area inside the {img_w}x{img_h} image"
        )
    return image[y0:y1, x0:x1].copy()


def halving_steps(width: int, height: int, target: TargetSize) -> list[tuple[int, int]]:
    """Intermediate sizes for stepped downscaling.

    Both axes halve while each still exceeds HALVING_THRESHOLD times the
    target; a step never drops below the target itself.
    """
    steps: list[tuple[int, int]] = []
    while width > HALVING_THRESHOLD * target.width and height > HALVING_THRESHOLD * target.height:
        width = max(target.width, width // 2)
        height = max(target.height, height // 2)
        steps.append((width, height))
    return steps


def progressive_resample(image: np.ndarray, rect: CropRect, target: TargetSize) -> np.ndarray:
    """Crop and resize to exactly target.width x target.height."""
    working = extract_crop(image, rect)
    for step_w, step_h in halving_steps(working.shape[1], working.shape[0], target):
        working = cv2.resize(working, (step_w, step_h), interpolation=cv2.INTER_LINEAR)

    cur_h, cur_w = working.shape[:2]
    if (cur_w, cur_h) == (target.width, target.height):
        return working

    shrinking = cur_w >= target.width and cur_h >= target.height
    final_interp = cv2.INTER_AREA if shrinking else cv2.INTER_LANCZOS4
    return cv2.resize(working, (target.width, target.height), interpolation=final_interp)


def _validate_quality(quality: float) -> float:
    if not MIN_JPEG_QUALITY <= quality <= MAX_JPEG_QUALITY:
        raise ValueError(
            f"JPEG quality must be between {MIN_JPEG_QUALITY} and {MAX_JPEG_QUALITY}, got {quality}"
        )
    return quality


def encode_jpeg(raster: np.ndarray, quality: float = DEFAULT_JPEG_QUALITY) -> bytes:
    """Encode a BGR raster as JPEG with a 0.05-1.0 quality factor."""
    _validate_quality(quality)
    ok, buf = cv2.imencode(".jpg", raster, [cv2.IMWRITE_JPEG_QUALITY, int(round(quality * 100))])
    if not ok:
        raise ResampleError("JPEG encoding failed")
    return buf.tobytes()


# ---------------------------------------------------------------------------
# Preview thumbnails
# ---------------------------------------------------------------------------


def compose_thumbnail(
    image: np.ndarray,
    crop_rect: Optional[CropRect],
    target: TargetSize,
    preview_size: int = DEFAULT_PREVIEW_SIZE,
) -> np.ndarray:
    """Aspect-fit preview of the cropped region, longest edge = preview_size.

    Without a crop the centered-cover rectangle for ``target`` is shown.
    """
    if crop_rect is None:
        img_h, img_w = image.shape[:2]
        crop_rect = centered_cover_crop(img_w, img_h, target)

    region = extract_crop(image, crop_rect)
    region_h, region_w = region.shape[:2]
    aspect = region_w / region_h
    if aspect >= 1:
        preview_w = preview_size
        preview_h = max(1, int(round(preview_size / aspect)))
    else:
        preview_h = preview_size
        preview_w = max(1, int(round(preview_size * aspect)))

    interp = cv2.INTER_AREA if preview_w < region_w else cv2.INTER_LANCZOS4
    return cv2.resize(region, (preview_w, preview_h), interpolation=interp)


# ---------------------------------------------------------------------------
# Input loading
# ---------------------------------------------------------------------------


def _ensure_heif_support() -> None:
    """Register the pillow-heif opener once."""
    global _HEIF_OPENER_READY
    if _HEIF_OPENER_READY:
        return
    try:
        import pillow_heif

        pillow_heif.register_heif_opener()
    except Exception as e:
        raise CapabilityLoadError(f"HEIC decoder unavailable: {e}") from e
    _HEIF_OPENER_READY = True


def collect_input_files(paths: Iterable) -> tuple[list[Path], list[str]]:
    """
    Expand input paths into image files and enforce batch limits.

    Returns (accepted files, rejection messages). Raises BatchLimitError when
    more than MAX_BATCH_FILES files are submitted.
    """
    files: list[Path] = []
    rejections: list[str] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(
                p
                for p in sorted(path.iterdir())
                if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
            )
        elif not path.exists():
            rejections.append(f"File not found: {path}")
        elif path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            rejections.append(f"Unsupported file type: {path.name}")
        else:
            files.append(path)

    if len(files) + len(rejections) > MAX_BATCH_FILES:
        raise BatchLimitError(
            f"At most {MAX_BATCH_FILES} files can be processed at once "
            f"(got {len(files) + len(rejections)})."
        )

    accepted: list[Path] = []
    for path in files:
        if path.stat().st_size > MAX_FILE_BYTES:
            rejections.append(f"File too large: {path.name} (max {MAX_FILE_BYTES // (1024 * 1024)}MB)")
            continue
        accepted.append(path)
    return accepted, rejections


def load_image_asset(
    path: Path,
    category: Optional[Category] = None,
    manual_crop: Optional[CropRect] = None,
) -> ImageAsset:
    """Decode an image file into an ImageAsset (EXIF orientation applied)."""
    path = Path(path)
    if path.suffix.lower() in HEIC_EXTENSIONS:
        _ensure_heif_support()

    try:
        with Image.open(path) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode != "RGB":
                img = img.convert("RGB")
            rgb = np.asarray(img)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ResampleError(f"Cannot decode {path.name}: {e}") from e

    return ImageAsset(
        name=path.name,
        pixels=cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR),
        category=category or classify_image_type(path.name),
        manual_crop=manual_crop,
        source_path=path,
    )


def load_pose_estimator(debug: bool = False) -> YoloPoseEstimator:
    """Load the default pose capability, wrapping any failure."""
    try:
        return YoloPoseEstimator.load(min_score=resolve_pose_min_score(), debug=debug)
    except Exception as e:
        raise CapabilityLoadError(f"Pose model unavailable: {e}") from e


# ---------------------------------------------------------------------------
# Archive output
# ---------------------------------------------------------------------------


def output_filename_for(name: str) -> str:
    """Replace the original extension with .jpg."""
    dot = name.rfind(".")
    stem = name[:dot] if dot > 0 else name
    return f"{stem}.jpg"


def default_archive_name(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{ARCHIVE_NAME_PREFIX}_{now:%Y%m%d}_{now:%H%M%S}.zip"


class ZipArchiveWriter:
    """Writes one ZIP entry per exported image."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._zip: Optional[zipfile.ZipFile] = None
        self._names: set[str] = set()

    def __enter__(self) -> "ZipArchiveWriter":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def names(self) -> list[str]:
        return sorted(self._names)

    def open(self) -> None:
        if self._zip is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # JPEG data is already compressed.
            self._zip = zipfile.ZipFile(self.path, "w", compression=zipfile.ZIP_STORED)

    def close(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None

    def _unique_name(self, filename: str) -> str:
        if filename not in self._names:
            return filename
        stem, dot, ext = filename.rpartition(".")
        if not dot:
            stem, ext = filename, ""
        counter = 2
        while True:
            candidate = f"{stem}_{counter}.{ext}" if dot else f"{stem}_{counter}"
            if candidate not in self._names:
                return candidate
            counter += 1

    def add(self, filename: str, data: bytes) -> str:
        self.open()
        name = self._unique_name(filename)
        self._zip.writestr(name, data)
        self._names.add(name)
        return name


# ---------------------------------------------------------------------------
# Batch export
# ---------------------------------------------------------------------------


class _SerializedPoseEstimator:
    """Lets worker threads share one pose estimator; reset + estimate run under one lock."""

    def __init__(self, inner: PoseEstimator):
        self._inner = inner
        self._lock = threading.Lock()

    def reset(self) -> None:
        # The inner reset happens inside estimate_poses, under the lock.
        pass

    def estimate_poses(self, image: np.ndarray) -> list[PoseCandidate]:
        with self._lock:
            reset = getattr(self._inner, "reset", None)
            if callable(reset):
                reset()
            return self._inner.estimate_poses(image)


def process_asset(
    asset: ImageAsset,
    profile: str,
    quality: float = DEFAULT_JPEG_QUALITY,
    pose_estimator: Optional[PoseEstimator] = None,
    profiles: Optional[dict[str, dict[Category, Optional[TargetSize]]]] = None,
    debug: bool = False,
) -> ProcessingOutcome:
    """Classify, crop, resample and encode one asset."""
    target = resolve_target_size(profile, asset.category, profiles)
    if target is None:
        return ProcessingOutcome.skipped(asset.name, SKIP_EXCLUDED)

    try:
        rect, method = resolve_crop(
            asset.pixels,
            asset.category,
            target,
            manual_crop=asset.manual_crop,
            pose_estimator=pose_estimator,
            debug=debug,
        )
        raster = progressive_resample(asset.pixels, rect, target)
        data = encode_jpeg(raster, quality)
    except Exception as e:
        return ProcessingOutcome.failed(asset.name, e)

    if debug:
        print(
            f"{asset.name}: {asset.category.value} -> {target} via {method} crop "
            f"({rect.x:.1f}, {rect.y:.1f}, {rect.width:.1f}, {rect.height:.1f})"
        )
    return ProcessingOutcome.success(
        asset.name, output_filename_for(asset.name), raster, data, crop=rect, crop_method=method
    )


def export_batch(
    assets: list[ImageAsset],
    profile: str,
    quality: float = DEFAULT_JPEG_QUALITY,
    *,
    pose_estimator: Optional[PoseEstimator] = None,
    archive_writer: Optional[ArchiveWriter] = None,
    workers: int = 1,
    cancel_event: Optional[threading.Event] = None,
    deadline: Optional[float] = None,
    progress: Optional[Callable[[ProcessingOutcome], None]] = None,
    profiles: Optional[dict[str, dict[Category, Optional[TargetSize]]]] = None,
    debug: bool = False,
) -> list[ProcessingOutcome]:
    """
    Export every asset for one media profile.

    Outcomes come back in input order. A failing asset is recorded as failed
    and the batch continues. ``cancel_event`` and ``deadline`` (a
    time.monotonic() value) only stop assets that have not started yet.
    Successful rasters are handed to ``archive_writer`` in input order.
    """
    profiles = MEDIA_PROFILES if profiles is None else profiles
    profile = resolve_profile_name(profile, profiles)
    _validate_quality(quality)
    if pose_estimator is not None and not isinstance(pose_estimator, _SerializedPoseEstimator):
        pose_estimator = _SerializedPoseEstimator(pose_estimator)

    def run_one(asset: ImageAsset) -> ProcessingOutcome:
        if cancel_event is not None and cancel_event.is_set():
            return ProcessingOutcome.skipped(asset.name, SKIP_CANCELLED)
        if deadline is not None and time.monotonic() >= deadline:
            return ProcessingOutcome.skipped(asset.name, SKIP_DEADLINE)
        return process_asset(
            asset,
            profile,
            quality,
            pose_estimator=pose_estimator,
            profiles=profiles,
            debug=debug,
        )

    outcomes: list[ProcessingOutcome] = []
    if workers <= 1 or len(assets) <= 1:
        for asset in assets:
            outcome = run_one(asset)
            outcomes.append(outcome)
            if progress is not None:
                progress(outcome)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            for outcome in executor.map(run_one, assets):
                outcomes.append(outcome)
                if progress is not None:
                    progress(outcome)

    if archive_writer is not None:
        for idx, outcome in enumerate(outcomes):
            if outcome.ok:
                stored_name = archive_writer.add(outcome.filename, outcome.jpeg_bytes)
                if stored_name and stored_name != outcome.filename:
                    outcomes[idx] = replace(outcome, filename=stored_name)

    return outcomes


def summarize_outcomes(outcomes: list[ProcessingOutcome]) -> dict[str, int]:
    summary = {STATUS_SUCCESS: 0, STATUS_SKIPPED: 0, STATUS_FAILED: 0}
    for outcome in outcomes:
        summary[outcome.status] = summary.get(outcome.status, 0) + 1
    return summary


def preview_for_asset(
    asset: ImageAsset,
    profile: str,
    pose_estimator: Optional[PoseEstimator] = None,
    preview_size: int = DEFAULT_PREVIEW_SIZE,
    profiles: Optional[dict[str, dict[Category, Optional[TargetSize]]]] = None,
) -> Optional[np.ndarray]:
    """Preview thumbnail showing how the asset will be cropped, or None if excluded."""
    profiles = MEDIA_PROFILES if profiles is None else profiles
    profile = resolve_profile_name(profile, profiles)
    target = resolve_target_size(profile, asset.category, profiles)
    if target is None:
        return None
    rect = resolve_crop_rect(
        asset.pixels, asset.category, target, asset.manual_crop, pose_estimator
    )
    return compose_thumbnail(asset.pixels, rect, target, preview_size=preview_size)


# ---------------------------------------------------------------------------
# Main pipeline
# ---------------------------------------------------------------------------


def _write_previews(
    pairs: list[tuple[ProcessingOutcome, Optional[ImageAsset]]],
    profile: str,
    preview_dir: Path,
    preview_size: int,
    profiles: dict[str, dict[Category, Optional[TargetSize]]],
) -> int:
    preview_dir.mkdir(parents=True, exist_ok=True)
    written = 0
    for outcome, asset in pairs:
        if not outcome.ok or asset is None:
            continue
        target = resolve_target_size(profile, asset.category, profiles)
        thumb = compose_thumbnail(asset.pixels, outcome.crop, target, preview_size=preview_size)
        dest = preview_dir / f"{Path(outcome.filename).stem}_preview.jpg"
        cv2.imwrite(str(dest), thumb, [cv2.IMWRITE_JPEG_QUALITY, int(PREVIEW_JPEG_QUALITY * 100)])
        written += 1
    return written


def run_pipeline(
    inputs: list[str],
    profile: str = DEFAULT_PROFILE,
    output: Optional[str] = None,
    quality: Optional[float] = None,
    workers: Optional[int] = None,
    use_pose: Optional[bool] = None,
    type_overrides: Optional[dict[str, Category]] = None,
    crop_overrides: Optional[dict[str, CropRect]] = None,
    preview_dir: Optional[str] = None,
    debug: bool = False,
) -> list[dict]:
    """
    Full pipeline: collect → decode → classify → crop → resample → ZIP.

    Args:
        inputs: Image files and/or folders
        profile: Media profile name (EPARK, PeakManager, or one from MEDIAFIT_PROFILES_FILE)
        output: ZIP path (default: resized_images_<timestamp>.zip in the cwd)
        quality: JPEG quality factor 0.05-1.0 (default from MEDIAFIT_JPEG_QUALITY)
        workers: Parallel export threads (default from MEDIAFIT_WORKERS)
        use_pose: Try pose-guided framing for Staff images
        type_overrides: File name → category, replacing the name-based guess
        crop_overrides: File name → manual crop rectangle
        preview_dir: Optional folder for preview thumbnails
    """
    quality = resolve_jpeg_quality() if quality is None else quality
    workers = resolve_worker_count() if workers is None else max(1, workers)
    use_pose = resolve_use_pose() if use_pose is None else use_pose
    type_overrides = type_overrides or {}
    crop_overrides = crop_overrides or {}

    try:
        profiles = load_media_profiles(resolve_profiles_file())
        profile = resolve_profile_name(profile, profiles)
        _validate_quality(quality)
    except ValueError as e:
        print(f"❌ {e}")
        sys.exit(1)

    try:
        files, rejections = collect_input_files(inputs)
    except BatchLimitError as e:
        print(f"❌ {e}")
        sys.exit(1)

    archive_path = Path(output) if output else Path.cwd() / default_archive_name()

    print("=" * 60)
    print("🖼️  Media Profile Batch Resizer")
    print(f"   Files:   {len(files)}")
    print(f"   Profile: {profile}")
    print(f"   Quality: {quality:.2f}")
    print(f"   Output:  {archive_path}")
    print("=" * 60)

    for message in rejections:
        print(f"  ⚠ {message}")
    if not files:
        print("❌ No valid images found.")
        sys.exit(1)

    # --- Stage 1: Decode and classify ---
    print(f"\n📂 Stage 1: Loading {len(files)} images...")
    slots: list = []
    heic_warned = False
    for path in files:
        category = type_overrides.get(path.name)
        try:
            asset = load_image_asset(path)
        except CapabilityLoadError as e:
            if not heic_warned:
                print(f"  ⚠ {e}")
                print("  💡 Install HEIC support: python -m pip install pillow-heif")
                heic_warned = True
            slots.append(ProcessingOutcome.failed(path.name, e))
            continue
        except ResampleError as e:
            print(f"  ⚠ {e}")
            slots.append(ProcessingOutcome.failed(path.name, e))
            continue
        if category is not None and category != asset.category:
            asset = asset.with_category(category)
        if path.name in crop_overrides:
            asset = asset.with_manual_crop(crop_overrides[path.name])
        slots.append(asset)

    assets = [slot for slot in slots if isinstance(slot, ImageAsset)]
    for asset in assets:
        target = resolve_target_size(profile, asset.category, profiles)
        target_label = str(target) if target else "not exported"
        print(f"  {asset.name}: {asset.category.value} ({asset.width}x{asset.height}) → {target_label}")

    # --- Stage 2: Pose capability ---
    pose_estimator = None
    wants_pose = use_pose and any(
        a.category == Category.STAFF
        and a.manual_crop is None
        and resolve_target_size(profile, a.category, profiles) is not None
        for a in assets
    )
    if wants_pose:
        print("\n🧍 Stage 2: Loading pose model for staff framing...")
        try:
            pose_estimator = load_pose_estimator(debug=debug)
        except CapabilityLoadError as e:
            print(f"  ⚠ {e}")
            print(f"  💡 {_pose_setup_hint(e.__cause__ or e)}")
            print("  ↪ Falling back to centered cropping for staff images.")

    # --- Stage 3: Export ---
    print(f"\n✂️  Stage 3: Resizing {len(assets)} images for {profile}...")
    progress_bar = None
    progress_write = print
    try:
        from tqdm.auto import tqdm

        progress_bar = tqdm(total=len(assets), desc="  Resizing", unit="img")
        progress_write = tqdm.write
    except ImportError:
        progress_bar = None

    def on_progress(outcome: ProcessingOutcome) -> None:
        if outcome.status == STATUS_FAILED:
            progress_write(f"  ⚠ Could not process {outcome.name}: {outcome.reason}")
        if progress_bar is not None:
            progress_bar.update(1)

    with ZipArchiveWriter(archive_path) as archive:
        exported = export_batch(
            assets,
            profile,
            quality,
            pose_estimator=pose_estimator,
            archive_writer=archive,
            workers=workers,
            progress=on_progress,
            profiles=profiles,
            debug=debug,
        )
    if progress_bar is not None:
        progress_bar.close()

    exported_iter = iter(exported)
    pairs = [
        (next(exported_iter), slot) if isinstance(slot, ImageAsset) else (slot, None)
        for slot in slots
    ]
    outcomes = [outcome for outcome, _asset in pairs]

    preview_count = 0
    if preview_dir:
        preview_count = _write_previews(
            pairs,
            profile,
            Path(preview_dir),
            resolve_preview_size(),
            profiles,
        )

    report = []
    for outcome, asset in pairs:
        report.append(
            {
                "filename": outcome.name,
                "category": asset.category.value if asset is not None else None,
                "status": outcome.status,
                "output": outcome.filename,
                "crop_method": outcome.crop_method or None,
                "crop_xywh": outcome.crop.as_list() if outcome.crop else None,
                "reason": outcome.reason or None,
            }
        )
    report_path = archive_path.with_suffix(".json")
    report_path.write_text(json.dumps(report, indent=2, ensure_ascii=False), encoding="utf-8")

    summary = summarize_outcomes(outcomes)
    print(f"\n{'=' * 60}")
    print(
        f"🏆 Done! {summary[STATUS_SUCCESS]} exported, "
        f"{summary[STATUS_SKIPPED]} skipped, {summary[STATUS_FAILED]} failed"
    )
    print(f"📦 Archive: {archive_path}")
    if preview_dir:
        print(f"🔍 Previews: {preview_count} written to {preview_dir}")
    print(f"📋 JSON Report: {report_path}")
    print(f"{'=' * 60}")

    return report


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class _HelpOnErrorArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that prints full help text on parse errors."""

    def error(self, message):
        self.print_help(sys.stderr)
        self.exit(2, f"\n{self.prog}: error: {message}\n")


def _parse_type_override(text: str) -> tuple[str, Category]:
    name, sep, value = text.rpartition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=CATEGORY, got {text!r}")
    try:
        return name, Category.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _parse_crop_override(text: str) -> tuple[str, CropRect]:
    name, sep, value = text.rpartition("=")
    parts = value.split(",")
    if not sep or not name or len(parts) != 4:
        raise argparse.ArgumentTypeError(f"expected NAME=X,Y,W,H, got {text!r}")
    try:
        x, y, w, h = (float(p) for p in parts)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"crop values must be numbers: {text!r}") from e
    return name, CropRect(x, y, w, h)


def _print_profiles(profiles: dict[str, dict[Category, Optional[TargetSize]]]) -> None:
    header = "Profile".ljust(16) + "".join(c.value.ljust(12) for c in Category)
    print(header)
    for name, table in profiles.items():
        cells = []
        for category in Category:
            size = table.get(category)
            cells.append((str(size) if size else "excluded").ljust(12))
        print(name.ljust(16) + "".join(cells))


def main():
    parser = _HelpOnErrorArgumentParser(
        description="Resize and crop images to the pixel sizes required by a media profile.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ./photos --profile EPARK
  %(prog)s ./photos --profile PeakManager --output peak.zip --quality 0.8
  %(prog)s staff_sato.jpg --crop staff_sato.jpg=40,10,300,348
  %(prog)s ./photos --type brand.png=Logo --preview-dir ./previews
  %(prog)s --list-profiles
        """,
    )
    parser.add_argument("input", nargs="*", help="Image files or folders (max 30 images, 10MB each)")
    parser.add_argument(
        "--profile", "-p", default=DEFAULT_PROFILE, help=f"Media profile (default: {DEFAULT_PROFILE})"
    )
    parser.add_argument("--output", "-o", default=None, help="Output ZIP path")
    parser.add_argument(
        "--quality",
        "-q",
        type=float,
        default=None,
        help=f"JPEG quality 0.05-1.0 (default from {JPEG_QUALITY_ENV_VAR} or {DEFAULT_JPEG_QUALITY})",
    )
    parser.add_argument(
        "--type",
        dest="types",
        action="append",
        type=_parse_type_override,
        default=[],
        metavar="NAME=CATEGORY",
        help="Override the detected category (Photo, Staff, Logo) for one file",
    )
    parser.add_argument(
        "--crop",
        dest="crops",
        action="append",
        type=_parse_crop_override,
        default=[],
        metavar="NAME=X,Y,W,H",
        help="Manual crop rectangle in source pixels for one file",
    )
    parser.add_argument("--preview-dir", default=None, help="Also write preview thumbnails here")
    parser.add_argument(
        "--workers", "-w", type=int, default=None, help=f"Export threads (default from {WORKERS_ENV_VAR} or 1)"
    )
    parser.add_argument(
        "--no-pose",
        dest="use_pose",
        action="store_false",
        default=None,
        help="Disable pose-guided framing for staff images",
    )
    parser.add_argument("--list-profiles", action="store_true", help="Show the media profile table and exit")
    parser.add_argument("--debug", action="store_true", help="Print crop decisions")

    args = parser.parse_args()

    if args.list_profiles:
        _print_profiles(load_media_profiles(resolve_profiles_file()))
        return
    if not args.input:
        parser.error("the following arguments are required: input")

    type_overrides = dict(args.types)
    crop_overrides = dict(args.crops)

    run_pipeline(
        inputs=args.input,
        profile=args.profile,
        output=args.output,
        quality=args.quality,
        workers=args.workers,
        use_pose=args.use_pose,
        type_overrides=type_overrides,
        crop_overrides=crop_overrides,
        preview_dir=args.preview_dir,
        debug=args.debug,
    )


if __name__ == "__main__":
    main()
