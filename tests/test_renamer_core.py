import copy
import os
import threading

import ollama
import pytest

import renamer_core
from config import DEFAULT_CONFIG_DATA
from frame_extractor import ExtractionError, FrameSet, MetadataProber, ProbeError, VideoMetadata
from renamer_core import (DirectoryCleanupError, clean_suggestion, is_already_renamed, process_directory,
                          process_file, process_path, save_file)


class FakeClient:
    """Records generate() calls; answers with a fixed name or a callable."""

    def __init__(self, answer="ginger_cat_on_sofa"):
        self.answer = answer
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, **kwargs):
        with self._lock:
            self.calls.append(kwargs)
        answer = self.answer(kwargs) if callable(self.answer) else self.answer
        if isinstance(answer, Exception):
            raise answer
        return {"response": answer}


class StubProber:
    def __init__(self, duration=95.0):
        self.metadata = VideoMetadata(1920, 1080, duration)

    def get(self, path):
        return self.metadata


@pytest.fixture
def config():
    cfg = copy.deepcopy(DEFAULT_CONFIG_DATA)
    cfg["processing"]["skip_metadata"] = True
    return cfg


@pytest.fixture
def video(tmp_path):
    folder = tmp_path / "input"
    folder.mkdir()
    path = folder / "VID_0001.mp4"
    path.write_bytes(b"not really a video")
    return path


@pytest.fixture
def temp_root(tmp_path):
    root = tmp_path / "frames"
    root.mkdir()
    return root


def fake_smart_extraction(succeed):
    def extract(input_file, output_dir, frames, prober, log_callback=None):
        assert os.path.isdir(output_dir)
        if not succeed:
            raise ExtractionError("Frame extraction failed: decode error")
        image = os.path.join(output_dir, "frame_000.jpg")
        with open(image, "wb") as f:
            f.write(b"\xff\xd8\xff\xd9")
        return FrameSet(images=[image], prompt="You are analyzing 1 video frames", timestamps=[47.5], warning=None)
    return extract


@pytest.mark.parametrize("extraction_ok", [True, False])
@pytest.mark.parametrize("naming_ok", [True, False])
def test_frame_directory_removed_after_pipeline(monkeypatch, config, video, temp_root, extraction_ok, naming_ok):
    monkeypatch.setattr(renamer_core, "extract_frames_smartly", fake_smart_extraction(extraction_ok))
    client = FakeClient("city_night_timelapse" if naming_ok else ollama.ResponseError("model 'llava' not found", 404))

    result = process_file(client, str(video), str(video.parent), config, StubProber(),
                          {"temp_root": str(temp_root)}, log_callback=lambda m: None)

    assert os.listdir(temp_root) == []
    if extraction_ok and naming_ok:
        assert result == "city_night_timelapse.mp4"
        assert (video.parent / "city_night_timelapse.mp4").exists()
    else:
        assert result is None
        assert video.exists()


def test_frame_directory_removed_after_unexpected_error(monkeypatch, config, video, temp_root):
    monkeypatch.setattr(renamer_core, "extract_frames_smartly", fake_smart_extraction(True))
    client = FakeClient(RuntimeError("connection reset"))

    assert process_file(client, str(video), str(video.parent), config, StubProber(),
                        {"temp_root": str(temp_root)}, log_callback=lambda m: None) is None
    assert os.listdir(temp_root) == []


def test_cleanup_failure_is_only_a_warning(monkeypatch, config, video, temp_root):
    monkeypatch.setattr(renamer_core, "extract_frames_smartly", fake_smart_extraction(True))

    def broken_delete(path):
        raise DirectoryCleanupError(f"Failed to delete directory {path}: busy")
    monkeypatch.setattr(renamer_core, "delete_directory", broken_delete)
    messages = []

    result = process_file(FakeClient("harbor_sunset"), str(video), str(video.parent), config, StubProber(),
                          {"temp_root": str(temp_root)}, log_callback=messages.append)

    assert result == "harbor_sunset.mp4"
    assert any("Warning: Failed to delete directory" in m for m in messages)


def test_probe_error_is_logged_with_relative_path(monkeypatch, config, video, temp_root):
    def extract(*args, **kwargs):
        raise ProbeError("Failed to get video metadata: moov atom not found")
    monkeypatch.setattr(renamer_core, "extract_frames_smartly", extract)
    messages = []

    assert process_file(FakeClient(), str(video), str(video.parent), config, StubProber(),
                        {"temp_root": str(temp_root)}, log_callback=messages.append) is None
    assert any("VID_0001.mp4" in m and "moov atom" in m for m in messages)


def test_broken_video_is_probed_once(config, video, temp_root):
    config["processing"]["skip_metadata"] = False
    probes = []

    class BrokenProber(MetadataProber):
        def probe(self, video_filepath):
            probes.append(video_filepath)
            raise ProbeError("Failed to get video metadata: moov atom not found")

    assert process_file(FakeClient(), str(video), str(video.parent), config, BrokenProber(),
                        {"temp_root": str(temp_root)}, log_callback=lambda m: None) is None
    assert len(probes) == 1


def test_summary_mode_uses_interval_strategy(monkeypatch, config, video, temp_root):
    config["video_processing"].update(video_summary=True, summary_interval=30, summary_max_frames=2)
    seen = {}

    def extract(input_file, output_dir, prober, interval, max_frames, log_callback=None):
        seen.update(interval=interval, max_frames=max_frames)
        image = os.path.join(output_dir, "frame_000.jpg")
        with open(image, "wb") as f:
            f.write(b"\xff\xd8")
        return FrameSet([image], "frames captured every 30 seconds", [0], None)
    monkeypatch.setattr(renamer_core, "extract_frames_at_intervals", extract)

    def answer(kwargs):
        return "A chef cooks pasta in a small kitchen." if kwargs.get("images") else "pasta_cooking_demo"
    client = FakeClient(answer)

    result = process_file(client, str(video), str(video.parent), config, StubProber(duration=95.0),
                          {"temp_root": str(temp_root)}, log_callback=lambda m: None)

    assert result == "pasta_cooking_demo.mp4"
    assert seen == {"interval": 30, "max_frames": 2}
    summary_call, name_call = client.calls
    assert summary_call["model"] == config["models"]["vision_model"]
    assert "frames captured every 30 seconds" in summary_call["prompt"]
    assert name_call["model"] == config["models"]["text_model"]
    assert "images" not in name_call
    assert "A chef cooks pasta" in name_call["prompt"]


def test_image_is_sent_to_vision_model(config, tmp_path):
    image = tmp_path / "DSC0042.jpg"
    image.write_bytes(b"\xff\xd8\xff\xd9")
    client = FakeClient("Ginger cat on sofa")

    result = process_file(client, str(image), str(tmp_path), config, StubProber(), log_callback=lambda m: None)

    assert result == "ginger_cat_on_sofa.jpg"
    assert client.calls[0]["model"] == config["models"]["vision_model"]
    assert len(client.calls[0]["images"]) == 1


def test_text_file_content_is_in_prompt(config, tmp_path):
    notes = tmp_path / "notes.txt"
    notes.write_text("Quarterly budget review for the marketing team")
    client = FakeClient("q3_marketing_budget_review")

    assert process_file(client, str(notes), str(tmp_path), config, StubProber(),
                        log_callback=lambda m: None) == "q3_marketing_budget_review.txt"
    assert "Quarterly budget review" in client.calls[0]["prompt"]
    assert client.calls[0]["model"] == config["models"]["text_model"]


def test_skips_already_renamed_and_unsupported_files(config, tmp_path):
    (tmp_path / "ginger_cat_on_sofa.jpg").write_bytes(b"x")
    (tmp_path / "archive.bin").write_bytes(b"x")
    client = FakeClient()

    for name in ("ginger_cat_on_sofa.jpg", "archive.bin"):
        assert process_file(client, str(tmp_path / name), str(tmp_path), config, StubProber(),
                            log_callback=lambda m: None) is None
    assert client.calls == []


@pytest.mark.parametrize("raw, expected", [
    ("Ginger cat on sofa", "ginger_cat_on_sofa"),
    ("the_red_car.png", "red_car"),
    ("'mountain-lake-sunrise'", "mountain_lake_sunrise"),
    ("!!!", None),
])
def test_clean_suggestion(raw, expected):
    assert clean_suggestion(raw, 40) == expected


def test_clean_suggestion_truncates_on_word_boundary():
    assert clean_suggestion("alpha_beta_gamma", 12) == "alpha_beta"


@pytest.mark.parametrize("filename, expected", [
    ("ginger_cat_sofa.jpg", True),
    ("IMG_1234.jpg", False),
    ("20250501_134034.mp4", False),
    ("Screenshot_2024_01_01.png", False),
    ("cat.jpg", False),
    ("Vacation Photo.png", False),
    ("dsc_0042.jpg", False),
    ("pxl_20240101_123456.jpg", False),
    ("vid_20240101_120000.mp4", False),
    ("gopr_0012.mp4", False),
    ("beach_day_2024.jpg", True),
])
def test_is_already_renamed(filename, expected):
    assert is_already_renamed(filename) is expected


def test_save_file_avoids_collisions(config, tmp_path):
    (tmp_path / "cat.jpg").write_bytes(b"existing")
    (tmp_path / "cat_1.jpg").write_bytes(b"existing")
    source = tmp_path / "IMG_1.JPG"
    source.write_bytes(b"new")

    name = save_file(str(source), "cat", config, False, threading.Lock(), log_callback=lambda m: None)

    assert name == "cat_2.jpg"
    assert (tmp_path / "cat_2.jpg").read_bytes() == b"new"


def test_save_file_dry_run_keeps_file(config, tmp_path):
    source = tmp_path / "IMG_1.jpg"
    source.write_bytes(b"new")

    assert save_file(str(source), "cat", config, True, threading.Lock(), log_callback=lambda m: None) == "cat.jpg"
    assert source.exists()
    assert not (tmp_path / "cat.jpg").exists()


def test_save_file_keep_original_name(config, tmp_path):
    config["naming"]["keep_original_name"] = True
    source = tmp_path / "holiday.jpg"
    source.write_bytes(b"x")

    assert save_file(str(source), "beach", config, False, threading.Lock(),
                     log_callback=lambda m: None) == "holiday_beach.jpg"


def test_process_directory_continues_after_failing_file(config, tmp_path):
    (tmp_path / "a.txt").write_text("alpha report")
    (tmp_path / "b.txt").write_text("explode")
    (tmp_path / "c.txt").write_text("gamma report")
    (tmp_path / ".hidden.txt").write_text("secret")
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / "d.txt").write_text("delta report")

    def answer(kwargs):
        prompt = kwargs["prompt"]
        if "explode" in prompt:
            return RuntimeError("boom")
        for word in ("alpha", "gamma", "delta"):
            if f"{word} report" in prompt:
                return f"{word}_report"
        return "unexpected"

    renamed = process_directory(FakeClient(answer), str(tmp_path), config, prober=StubProber(),
                                log_callback=lambda m: None)

    assert sorted(renamed) == ["alpha_report.txt", "gamma_report.txt"]
    assert sorted(os.listdir(tmp_path)) == [".hidden.txt", "alpha_report.txt", "b.txt", "gamma_report.txt", "sub"]
    assert os.listdir(sub) == ["d.txt"]


def test_process_directory_includes_subdirectories(config, tmp_path):
    config["processing"]["include_subdirectories"] = True
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / "d.txt").write_text("delta report")

    renamed = process_directory(FakeClient("delta_report"), str(tmp_path), config, prober=StubProber(),
                                log_callback=lambda m: None)

    assert renamed == ["delta_report.txt"]
    assert os.listdir(sub) == ["delta_report.txt"]


def test_process_path_missing(config, tmp_path):
    with pytest.raises(FileNotFoundError):
        process_path(FakeClient(), str(tmp_path / "nope"), config, prober=StubProber())
