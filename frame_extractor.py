# frame_extractor.py
import math
import os
import subprocess
import sys
from collections import namedtuple

FRAME_PADDING = 0.1
KEY_POSITIONS = [0, 0.25, 0.5, 0.75, 1]
MAX_SMART_FRAMES = 10
SHORT_VIDEO_SECONDS = 5
LONG_VIDEO_SECONDS = 60
MAX_FRAME_WIDTH = 1920
HD_PIXELS = 1920 * 1080
DEFAULT_INTERVAL = 30
PROBE_TIMEOUT = 30
EXTRACT_TIMEOUT = 120

VideoMetadata = namedtuple('VideoMetadata', ['width', 'height', 'duration'])
FrameSet = namedtuple('FrameSet', ['images', 'prompt', 'timestamps', 'warning'])


class FrameExtractionError(Exception):
    """Base class for errors that abort frame extraction for one file."""


class ProbeError(FrameExtractionError):
    """ffprobe could not report usable metadata for a video."""


class ExtractionError(FrameExtractionError):
    """ffmpeg could not produce the frames we asked for."""


class PartialExtractionWarning(UserWarning):
    """Some, but not all, interval frames were extracted."""

    def __init__(self, succeeded, attempted):
        super().__init__(f"Only {succeeded}/{attempted} frames were successfully extracted")
        self.succeeded = succeeded
        self.attempted = attempted


def log_message(message, log_callback):
    """Utility to print messages and send them to a callback if available."""
    if log_callback:
        log_callback(message + '\n')
    else:
        print(message)


def run_command(cmd, timeout):
    """Runs an external tool without popping a console window on Windows."""
    flags = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, creationflags=flags)


# --- Metadata probing ---

class MetadataCache:
    """Maps absolute video paths to probed VideoMetadata, or to the ProbeError a probe raised."""

    def __init__(self):
        self._entries = {}

    def get(self, key, loader):
        # Two threads missing the same key may both load; the later write wins.
        if key not in self._entries:
            try:
                self._entries[key] = loader(key)
            except ProbeError as e:
                self._entries[key] = e
        entry = self._entries[key]
        if isinstance(entry, ProbeError):
            raise entry
        return entry

    def clear(self):
        self._entries.clear()

    def __contains__(self, key):
        return key in self._entries

    def __len__(self):
        return len(self._entries)


def _parse_number(value, cast):
    try:
        return cast(value)
    except (TypeError, ValueError):
        return None


def parse_probe_output(output):
    """Parses ffprobe csv output: 'width,height,duration' plus an optional format duration line."""
    lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    if not lines:
        raise ProbeError("No video stream found")

    fields = [field.strip() for field in lines[0].split(',')]
    if len(fields) < 2:
        raise ProbeError(f"Unexpected ffprobe output: {output.strip()!r}")

    width = _parse_number(fields[0], int)
    height = _parse_number(fields[1], int)
    duration = _parse_number(fields[2], float) if len(fields) > 2 else None
    if duration is None or math.isnan(duration):
        # Containers like mkv only report the duration at format level.
        for line in lines[1:]:
            duration = _parse_number(line.split(',')[0], float)
            if duration is not None:
                break

    if width is None or height is None or duration is None or math.isnan(duration):
        raise ProbeError(f"Unexpected ffprobe output: {output.strip()!r}")
    if duration <= 0:
        raise ProbeError(f"Video has a non-positive duration ({duration})")
    return VideoMetadata(width=width, height=height, duration=duration)


class MetadataProber:
    """Reads width, height and duration with ffprobe, caching results per path."""

    def __init__(self, cache=None, ffprobe_path='ffprobe', timeout=PROBE_TIMEOUT):
        self.cache = cache if cache is not None else MetadataCache()
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def probe(self, video_filepath):
        """Runs ffprobe once, bypassing the cache."""
        cmd = [self.ffprobe_path, '-v', 'error', '-select_streams', 'v:0',
               '-show_entries', 'stream=width,height,duration:format=duration',
               '-of', 'csv=p=0', video_filepath]
        try:
            result = run_command(cmd, self.timeout)
        except FileNotFoundError:
            raise ProbeError("ffprobe command not found. Is FFmpeg installed and in PATH?")
        except subprocess.TimeoutExpired:
            raise ProbeError(f"ffprobe timed out after {self.timeout}s")
        if result.returncode != 0:
            raise ProbeError(f"Failed to get video metadata: {result.stderr.strip()}")
        return parse_probe_output(result.stdout)

    def get(self, video_filepath):
        return self.cache.get(os.path.abspath(video_filepath), self.probe)

    def clear_cache(self):
        self.cache.clear()


# --- Planning ---

def _key_frame_positions(num_frames):
    """Fractional positions: evenly picked key points, then infill inside the gaps."""
    key_count = min(len(KEY_POSITIONS), num_frames)
    positions = []
    for i in range(key_count):
        key_index = (i * (len(KEY_POSITIONS) - 1)) // (key_count - 1)
        positions.append(KEY_POSITIONS[key_index])

    remaining = num_frames - key_count
    if remaining > 0:
        segments = key_count - 1
        per_segment = math.ceil(remaining / segments)
        for segment in range(segments):
            start = positions[segment]
            end = positions[segment + 1]
            for i in range(1, per_segment + 1):
                if len(positions) >= num_frames:
                    break
                positions.append(start + (end - start) * (i / (per_segment + 1)))
    return positions


def select_key_frames(duration, num_frames):
    """Picks up to num_frames ascending, unique timestamps that represent the video."""
    if num_frames <= 0:
        return []
    if num_frames == 1:
        return [duration / 2]

    timestamps = []
    for position in _key_frame_positions(num_frames):
        timestamp = duration * position
        if position == 0:
            timestamp = FRAME_PADDING
        elif position == 1:
            timestamp = duration - FRAME_PADDING
        timestamps.append(min(max(timestamp, 0.0), duration))

    return sorted(set(timestamps))[:num_frames]


def calculate_optimal_settings(duration, width, height, requested_frames):
    """Returns (num_frames, quality) where quality is ffmpeg's -q:v (lower is better)."""
    num_frames = min(requested_frames, math.floor(duration), MAX_SMART_FRAMES)
    if duration < SHORT_VIDEO_SECONDS:
        num_frames = min(num_frames, 3)

    quality = 5 if width * height > HD_PIXELS else 2
    return num_frames, quality


def interval_timestamps(duration, interval=DEFAULT_INTERVAL, max_frames=None):
    if interval <= 0:
        raise ValueError(f"interval must be positive, got {interval}")
    timestamps = []
    index = 0
    while index * interval < duration:
        timestamps.append(index * interval)
        index += 1
    if max_frames is not None:
        timestamps = timestamps[:max_frames]
    return timestamps


# --- ffmpeg commands ---

def frame_filename(index):
    return f"frame_{index:03d}.jpg"


def scale_filter(metadata):
    if metadata.width > MAX_FRAME_WIDTH:
        return f"scale={MAX_FRAME_WIDTH}:-2:flags=lanczos"
    return None


def build_frame_command(input_file, timestamp, output_path, quality=2, video_filter=None, ffmpeg_path='ffmpeg'):
    cmd = [ffmpeg_path, '-ss', f"{timestamp:.3f}", '-i', input_file]
    if video_filter:
        cmd += ['-vf', video_filter]
    cmd += ['-frames:v', '1', '-q:v', str(quality), '-loglevel', 'error', '-y', output_path]
    return cmd


def build_batch_command(input_file, output_dir, timestamps, quality, metadata, ffmpeg_path='ffmpeg'):
    """One ffmpeg call with a seeked input and a single-frame output per timestamp."""
    video_filter = scale_filter(metadata)
    cmd = [ffmpeg_path, '-loglevel', 'error', '-y']
    for timestamp in timestamps:
        cmd += ['-ss', f"{timestamp:.3f}", '-i', input_file]
    for index in range(len(timestamps)):
        # Without an explicit map every output would read from input 0.
        cmd += ['-map', f"{index}:v:0"]
        if video_filter:
            cmd += ['-vf', video_filter]
        cmd += ['-frames:v', '1', '-q:v', str(quality), os.path.join(output_dir, frame_filename(index))]
    return cmd


# --- Prompts ---

def format_timestamps(timestamps):
    return ', '.join(f"{t:.1f}s" for t in timestamps)


def build_smart_prompt(metadata, timestamps):
    intervals = [f"{later - earlier:.1f}" for earlier, later in zip(timestamps, timestamps[1:])]
    lines = [
        f"You are analyzing {len(timestamps)} video frames from a {metadata.duration:.1f}-second video "
        f"({metadata.width}x{metadata.height} resolution).",
        f"FRAME TIMESTAMPS: {format_timestamps(timestamps)}",
        "",
        "ANALYSIS TASK:",
        "- Examine each frame systematically",
        "- Identify key visual elements and actions",
        "- Track changes between frames",
        "- Describe how the content progresses",
    ]
    if intervals:
        lines.append(f"Intervals between frames: {', '.join(intervals)} seconds")
    if metadata.duration < SHORT_VIDEO_SECONDS:
        lines.append("Note: This is a very short video - focus on rapid changes")
    elif metadata.duration > LONG_VIDEO_SECONDS:
        lines.append("Note: This is a longer video - look for scene changes and key moments")
    return '\n'.join(lines)


def build_interval_prompt(metadata, interval, timestamps):
    lines = [
        f"You are analyzing video frames captured every {interval:g} seconds from a "
        f"{metadata.duration:.1f}-second video ({metadata.width}x{metadata.height} resolution).",
        "FRAME DATA:",
        f"- Frames captured at: {format_timestamps(timestamps)}",
        f"- Total frames analyzed: {len(timestamps)}",
        f"- Capture interval: {interval:g} seconds",
        f"- Video duration: {metadata.duration:.1f} seconds",
        f"- Resolution: {metadata.width}x{metadata.height}",
        "",
        "ANALYSIS INSTRUCTIONS:",
        "- Examine each frame in chronological order",
        "- Identify visual elements, actions, and scene changes",
        "- Note the progression and timeline of events",
        "- Cover the entire video, not only its opening",
        "",
        "These frames form the timeline of the whole video.",
    ]
    return '\n'.join(lines)


# --- Strategies ---

def extract_frames_smartly(input_file, output_dir, frames, prober, ffmpeg_path='ffmpeg',
                           timeout=EXTRACT_TIMEOUT, log_callback=None):
    """Extracts representative frames with a single batched ffmpeg call."""
    metadata = prober.get(input_file)
    num_frames, quality = calculate_optimal_settings(metadata.duration, metadata.width, metadata.height, frames)
    timestamps = select_key_frames(metadata.duration, num_frames)
    if not timestamps:
        raise ExtractionError(f"Video is too short to extract frames ({metadata.duration:.2f}s)")

    cmd = build_batch_command(input_file, output_dir, timestamps, quality, metadata, ffmpeg_path)
    log_message(f"  Extracting {len(timestamps)} frames from {os.path.basename(input_file)}...", log_callback)
    try:
        result = run_command(cmd, timeout)
    except FileNotFoundError:
        raise ExtractionError("ffmpeg command not found. Is FFmpeg installed and in PATH?")
    except subprocess.TimeoutExpired:
        raise ExtractionError(f"Frame extraction timed out after {timeout}s")
    if result.returncode != 0:
        raise ExtractionError(f"Frame extraction failed: {result.stderr.strip()}")

    images = [os.path.join(output_dir, frame_filename(i)) for i in range(len(timestamps))]
    missing = [os.path.basename(p) for p in images if not (os.path.exists(p) and os.path.getsize(p) > 0)]
    if missing:
        raise ExtractionError(f"ffmpeg produced no image for {', '.join(missing)}")
    return FrameSet(images=images, prompt=build_smart_prompt(metadata, timestamps),
                    timestamps=timestamps, warning=None)


def extract_frames_at_intervals(input_file, output_dir, prober, interval=DEFAULT_INTERVAL, max_frames=None,
                                ffmpeg_path='ffmpeg', timeout=EXTRACT_TIMEOUT, log_callback=None):
    """Extracts one frame every `interval` seconds, one ffmpeg call per frame.

    A frame that fails is logged and skipped so a single bad seek does not
    lose the rest of the video. Raises ExtractionError only when nothing
    could be extracted.
    """
    metadata = prober.get(input_file)
    timestamps = interval_timestamps(metadata.duration, interval, max_frames)
    log_message(f"  Extracting {len(timestamps)} frames at {interval:g}s intervals from "
                f"{os.path.basename(input_file)}...", log_callback)

    images = []
    extracted_timestamps = []
    for index, timestamp in enumerate(timestamps):
        output_path = os.path.join(output_dir, frame_filename(index))
        cmd = build_frame_command(input_file, timestamp, output_path, ffmpeg_path=ffmpeg_path)
        try:
            result = run_command(cmd, timeout)
        except FileNotFoundError:
            raise ExtractionError("ffmpeg command not found. Is FFmpeg installed and in PATH?")
        except subprocess.TimeoutExpired:
            log_message(f"  Warning: Timed out extracting frame at {timestamp:.1f}s", log_callback)
            continue

        if result.returncode != 0:
            log_message(f"  Warning: Failed to extract frame at {timestamp:.1f}s: {result.stderr.strip()}", log_callback)
            continue
        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            log_message(f"  Warning: No frame written at {timestamp:.1f}s", log_callback)
            continue

        images.append(output_path)
        extracted_timestamps.append(timestamp)
        if len(timestamps) > 10 and (index + 1) % 10 == 0:
            log_message(f"  Progress: {index + 1}/{len(timestamps)} frames", log_callback)

    if not images:
        raise ExtractionError("No frames were successfully extracted")

    warning = None
    if len(images) < len(timestamps):
        warning = PartialExtractionWarning(len(images), len(timestamps))
        log_message(f"  Warning: {warning}", log_callback)

    prompt = build_interval_prompt(metadata, interval, extracted_timestamps)
    return FrameSet(images=images, prompt=prompt, timestamps=extracted_timestamps, warning=warning)
