import json
from pathlib import Path

import numpy as np
import pytest

import mediafit.media_resizer as resizer
from mediafit.media_resizer import Category, CropRect, ImageAsset, TargetSize


def test_read_env_file_parses_comments_exports_and_quotes(tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "# comment",
                "export MEDIAFIT_JPEG_QUALITY='0.7'",
                'MEDIAFIT_PROFILES_FILE="profiles.json"',
                "INVALID_LINE",
                "  EMPTY = spaced-value  ",
            ]
        ),
        encoding="utf-8",
    )

    parsed = resizer._read_env_file(env_file)

    assert parsed["MEDIAFIT_JPEG_QUALITY"] == "0.7"
    assert parsed["MEDIAFIT_PROFILES_FILE"] == "profiles.json"
    assert parsed["EMPTY"] == "spaced-value"
    assert "INVALID_LINE" not in parsed


def test_resolve_jpeg_quality_clamps_and_ignores_garbage(monkeypatch) -> None:
    monkeypatch.delenv("MEDIAFIT_JPEG_QUALITY", raising=False)
    assert resizer.resolve_jpeg_quality() == pytest.approx(0.9)

    monkeypatch.setenv("MEDIAFIT_JPEG_QUALITY", "5")
    assert resizer.resolve_jpeg_quality() == pytest.approx(1.0)

    monkeypatch.setenv("MEDIAFIT_JPEG_QUALITY", "0.01")
    assert resizer.resolve_jpeg_quality() == pytest.approx(0.05)

    monkeypatch.setenv("MEDIAFIT_JPEG_QUALITY", "not-a-number")
    assert resizer.resolve_jpeg_quality() == pytest.approx(0.9)


def test_resolve_worker_and_preview_bounds(monkeypatch) -> None:
    monkeypatch.setenv("MEDIAFIT_WORKERS", "64")
    assert resizer.resolve_worker_count() == 16
    monkeypatch.setenv("MEDIAFIT_WORKERS", "0")
    assert resizer.resolve_worker_count() == 1

    monkeypatch.setenv("MEDIAFIT_PREVIEW_SIZE", "10")
    assert resizer.resolve_preview_size() == 64
    monkeypatch.delenv("MEDIAFIT_PREVIEW_SIZE")
    assert resizer.resolve_preview_size() == 200


def test_resolve_use_pose_reads_boolean_words(monkeypatch) -> None:
    monkeypatch.setenv("MEDIAFIT_USE_POSE", "off")
    assert resizer.resolve_use_pose() is False
    monkeypatch.setenv("MEDIAFIT_USE_POSE", "YES")
    assert resizer.resolve_use_pose() is True
    monkeypatch.setenv("MEDIAFIT_USE_POSE", "maybe")
    assert resizer.resolve_use_pose() is True


def test_resolve_profiles_file_reads_search_dir_env(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("MEDIAFIT_PROFILES_FILE", raising=False)
    cwd = tmp_path / "cwd"
    search = tmp_path / "search"
    cwd.mkdir()
    search.mkdir()
    monkeypatch.chdir(cwd)
    (search / ".env").write_text("MEDIAFIT_PROFILES_FILE=/data/profiles.json", encoding="utf-8")

    assert resizer.resolve_profiles_file() is None
    assert resizer.resolve_profiles_file(search_dir=search) == Path("/data/profiles.json")


@pytest.mark.parametrize(
    "file_name, expected",
    [
        ("STAFF_photo.jpg", Category.STAFF),
        ("staff_photo.jpg", Category.STAFF),
        ("Shop_Logo.PNG", Category.LOGO),
        ("店舗ロゴ.png", Category.LOGO),
        ("main_visual.jpg", Category.PHOTO),
        ("IMG_0042.HEIC", Category.PHOTO),
        ("staff_logo.png", Category.STAFF),
    ],
)
def test_classify_image_type(file_name, expected) -> None:
    assert resizer.classify_image_type(file_name) == expected


def test_category_parse_accepts_english_and_localized_names() -> None:
    assert Category.parse("staff") == Category.STAFF
    assert Category.parse(" LOGO ") == Category.LOGO
    assert Category.parse("写真") == Category.PHOTO
    assert Category.parse("スタッフ") == Category.STAFF
    with pytest.raises(ValueError, match="Unknown image category"):
        Category.parse("banner")


def test_target_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TargetSize(0, 10)
    assert TargetSize(150, 174).aspect == pytest.approx(150 / 174)


def test_builtin_profile_table_values() -> None:
    assert resizer.resolve_target_size("EPARK", Category.PHOTO) == TargetSize(660, 440)
    assert resizer.resolve_target_size("EPARK", Category.STAFF) == TargetSize(150, 174)
    assert resizer.resolve_target_size("EPARK", Category.LOGO) == TargetSize(330, 220)
    assert resizer.resolve_target_size("PeakManager", Category.PHOTO) == TargetSize(900, 600)
    assert resizer.resolve_target_size("PeakManager", Category.STAFF) == TargetSize(400, 400)
    assert resizer.resolve_target_size("PeakManager", Category.LOGO) is None


def test_resolve_profile_name_handles_alias_and_case() -> None:
    assert resizer.resolve_profile_name("epark") == "EPARK"
    assert resizer.resolve_profile_name("ピークマネージャー") == "PeakManager"
    with pytest.raises(ValueError, match="Unknown media profile"):
        resizer.resolve_profile_name("Instagram")


def test_load_media_profiles_merges_json_file(tmp_path) -> None:
    path = tmp_path / "profiles.json"
    path.write_text(
        json.dumps(
            {
                "Instagram": {"Photo": [1080, 1350], "Staff": {"w": 1080, "h": 1080}, "ロゴ": None},
                "EPARK": {"Logo": None},
            }
        ),
        encoding="utf-8",
    )

    profiles = resizer.load_media_profiles(path)

    assert resizer.resolve_target_size("Instagram", Category.PHOTO, profiles) == TargetSize(1080, 1350)
    assert resizer.resolve_target_size("Instagram", Category.STAFF, profiles) == TargetSize(1080, 1080)
    assert resizer.resolve_target_size("Instagram", Category.LOGO, profiles) is None
    assert resizer.resolve_target_size("EPARK", Category.LOGO, profiles) is None
    assert resizer.resolve_target_size("EPARK", Category.PHOTO, profiles) == TargetSize(660, 440)
    # Built-in table is untouched.
    assert resizer.resolve_target_size("EPARK", Category.LOGO) == TargetSize(330, 220)


def test_load_media_profiles_rejects_bad_files(tmp_path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="Cannot read media profiles"):
        resizer.load_media_profiles(broken)

    bad_size = tmp_path / "bad_size.json"
    bad_size.write_text(json.dumps({"X": {"Photo": [100]}}), encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid target size"):
        resizer.load_media_profiles(bad_size)


def test_category_override_drops_manual_crop() -> None:
    asset = ImageAsset(
        name="team.jpg",
        pixels=np.zeros((20, 30, 3), dtype=np.uint8),
        category=Category.PHOTO,
        manual_crop=CropRect(0, 0, 10, 10),
    )

    changed = asset.with_category(Category.STAFF)

    assert changed.category == Category.STAFF
    assert changed.manual_crop is None
    assert asset.manual_crop == CropRect(0, 0, 10, 10)
    assert (changed.width, changed.height) == (30, 20)
