# renamer_core.py
import base64
import datetime
import os
import re
import shutil
import tempfile
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

import ollama
from pypdf import PdfReader

from frame_extractor import (FrameExtractionError, MetadataProber, extract_frames_at_intervals,
                             extract_frames_smartly, log_message)
from prompts import build_name_prompt, build_summary_prompt, build_video_name_prompt

IMAGE_EXTENSIONS = ['.jpg', '.jpeg', '.png', '.bmp', '.tif', '.tiff', '.gif', '.ico', '.webp']
VIDEO_EXTENSIONS = ['.mp4', '.avi', '.mov', '.wmv', '.flv', '.mkv', '.webm', '.ts', '.mts', '.mpg', '.mpeg',
                    '.mpeg4', '.m4v']
TEXT_EXTENSIONS = [
    '.js', '.jsx', '.tsx', '.py', '.rb', '.php', '.java', '.c', '.cpp', '.h', '.hpp', '.cs', '.go', '.rs',
    '.swift', '.kt', '.scala', '.lua', '.pl', '.r', '.dart', '.sql', '.sh', '.bash', '.zsh', '.ps1', '.bat',
    '.html', '.htm', '.css', '.scss', '.vue', '.svelte',
    '.md', '.markdown', '.json', '.xml', '.yaml', '.yml', '.csv', '.svg', '.ini', '.cfg', '.toml',
    '.txt', '.log', '.diff', '.patch', '.proto', '.tex', '.ipynb',
]
# Names from cameras, screenshots and trackers are never treated as already renamed.
UNRENAMED_PATTERNS = [
    re.compile(r'^\d{8}_\d{6}$'),
    re.compile(r'^IMG_\d+$', re.IGNORECASE),
    re.compile(r'^Screenshot', re.IGNORECASE),
    re.compile(r'^[A-Z]{2,5}-\d+$'),
    re.compile(r'^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$'),
]
GENERATED_NAME_PATTERN = re.compile(r'^[a-z0-9]+(?:_[a-z0-9]+)+$')
COMMON_PHRASES = ["sure", "heres_a_suggestion", "suggested_filename_base", "a_good_filename_base_would_be", "how_about",
                  "filename_suggestion", "based_on_the_content", "filename_base", "the_filename", "a_filename",
                  "a_descriptive_filename", "descriptive_filename", "certainly", "the", "a", "an", "is", "of"]
TEMP_DIR_PREFIX = "ollama_renamer_"


class DirectoryCleanupError(OSError):
    """A temporary frame directory could not be removed."""


def sanitize_filename_component(component):
    """Cleans a string to be a valid filename component."""
    name = component.strip().strip("'").strip('"')
    name = re.sub(r'\s+', '_', name)
    name = re.sub(r'[^\w._-]', '', name)
    return name.lower()


def classify_file(filename):
    ext = os.path.splitext(filename)[1].lower()
    if ext in IMAGE_EXTENSIONS: return 'image'
    if ext in VIDEO_EXTENSIONS: return 'video'
    if ext == '.pdf': return 'pdf'
    if ext in TEXT_EXTENSIONS: return 'text'
    return None


def is_already_renamed(filename):
    base = os.path.splitext(os.path.basename(filename))[0]
    if any(pattern.search(base) for pattern in UNRENAMED_PATTERNS):
        return False
    if len(base) <= 3 or not GENERATED_NAME_PATTERN.match(base):
        return False
    # Camera names like dsc_0042 or pxl_20240101_123456 have a single word.
    return sum(1 for part in base.split('_') if re.search(r'[a-z]', part)) >= 2


def format_duration(seconds):
    td = datetime.timedelta(seconds=seconds)
    h, r = divmod(td.seconds, 3600)
    m, s = divmod(r, 60)
    return f"{f'{td.days}d ' if td.days>0 else ''}{f'{h}h ' if h>0 else ''}{f'{m}m ' if m>0 else ''}{s}s"


def get_file_metadata(filepath, skip_metadata, prober=None, log_callback=None):
    """Gathers metadata for a given file path."""
    if skip_metadata:
        return ""
    try:
        stat_info = os.stat(filepath)
    except OSError as e:
        return f"Original filename: '{os.path.basename(filepath)}', Error getting metadata: {e}"
    creation_time = datetime.datetime.fromtimestamp(stat_info.st_ctime).strftime('%Y-%m-%d %H:%M:%S')
    mod_time = datetime.datetime.fromtimestamp(stat_info.st_mtime).strftime('%Y-%m-%d %H:%M:%S')
    size_kb = round(stat_info.st_size / 1024, 2)
    metadata_str = f"Original: '{os.path.basename(filepath)}', Created: {creation_time}, Modified: {mod_time}, Size: {size_kb}KB"

    if prober is not None and classify_file(filepath) == 'video':
        try:
            metadata_str += f", Duration: {format_duration(prober.get(filepath).duration)}"
        except FrameExtractionError as e:
            log_message(f"  Could not get video duration: {e}", log_callback)
    return metadata_str


def encode_image(path):
    with open(path, 'rb') as f:
        return base64.b64encode(f.read()).decode('utf-8')


def read_file_content(filepath, max_text_chars, log_callback=None):
    """Returns up to max_text_chars of text from a text file or PDF."""
    if classify_file(filepath) == 'pdf':
        content = ""
        try:
            reader = PdfReader(filepath)
            for page in reader.pages[:50]:
                content += (page.extract_text() or "") + "\n"
                if len(content) >= max_text_chars: break
        except Exception as e:
            log_message(f"  Error reading PDF: {e}", log_callback)
            return ""
        return content[:max_text_chars].strip()

    with open(filepath, 'r', encoding='utf-8', errors='ignore') as f:
        return f.read(max_text_chars).strip()


# --- Temporary frame directories ---

def delete_directory(path):
    if not os.path.exists(path):
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise DirectoryCleanupError(f"Failed to delete directory {path}: {e}") from e


@contextmanager
def frames_output_dir(temp_root=None, log_callback=None):
    """Creates a private directory for one file's frames and always removes it."""
    path = tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX, dir=temp_root)
    try:
        yield path
    finally:
        try:
            delete_directory(path)
        except DirectoryCleanupError as e:
            log_message(f"  Warning: {e}", log_callback)


def extract_video_frames(filepath, frames_dir, config, prober, log_callback=None):
    """Runs the interval strategy in summary mode and the smart strategy otherwise."""
    video_cfg = config["video_processing"]
    if not video_cfg["video_summary"]:
        return extract_frames_smartly(filepath, frames_dir, video_cfg["frames_to_analyze"], prober,
                                      log_callback=log_callback)

    interval = video_cfg["summary_interval"]
    max_frames = video_cfg.get("summary_max_frames")
    log_message(f"  Summary mode: one frame every {interval:g}s", log_callback)
    return extract_frames_at_intervals(filepath, frames_dir, prober, interval=interval, max_frames=max_frames,
                                       log_callback=log_callback)


# --- Naming ---

def clean_suggestion(suggested_base, max_chars):
    """Turns a raw model answer into a filename base, or None if nothing usable is left."""
    suggested_base = suggested_base.strip()
    base_without_ext, ext = os.path.splitext(suggested_base)
    if ext and len(ext) > 1 and len(ext) < 6:
        suggested_base = base_without_ext

    cleaned_base = sanitize_filename_component(suggested_base)
    words = re.split(r'[_.-]', cleaned_base)
    cleaned_base = '_'.join(word for word in words if word and word not in COMMON_PHRASES)

    if len(cleaned_base) > max_chars:
        cut = cleaned_base.rfind('_', 0, max_chars + 1)
        cleaned_base = cleaned_base[:cut] if cut > 0 else cleaned_base[:max_chars]
    return cleaned_base.strip('_') or None


def get_video_summary(client, config, images, video_prompt):
    video_cfg = config["video_processing"]
    prompt = build_summary_prompt(video_cfg["summary_mode"], video_prompt, config["naming"].get("custom_prompt"))
    response = client.generate(model=config["models"]["vision_model"], prompt=prompt, images=images, stream=False,
                               options={"temperature": config["generation_parameters"]["temperature"]})
    return response['response'].strip()


def get_suggested_name(client, config, images=None, content=None, video_prompt=None, metadata_section="",
                       use_summary=False, log_callback=None):
    """Asks Ollama for a filename base. images are base64 strings."""
    naming = config["naming"]
    ollama_options = {
        "temperature": config["generation_parameters"]["temperature"],
        "num_predict": config["generation_parameters"]["num_predict"]
    }

    if use_summary and images:
        log_message(f"  Summarizing {len(images)} frames with {config['models']['vision_model']}...", log_callback)
        summary = get_video_summary(client, config, images, video_prompt)
        log_message(f"    Summary: {summary[:100]}...", log_callback)
        prompt = build_video_name_prompt(summary, naming["max_chars"], naming["language"],
                                         naming.get("custom_prompt"), metadata_section)
        model, images = config["models"]["text_model"], None
    else:
        prompt = build_name_prompt(naming["max_chars"], naming["language"], content=content,
                                   video_prompt=video_prompt, custom_prompt=naming.get("custom_prompt"),
                                   metadata_section=metadata_section)
        model = config["models"]["vision_model"] if images else config["models"]["text_model"]

    log_message(f"  Analyzing with {model}...", log_callback)
    kwargs = {"images": images} if images else {}
    response = client.generate(model=model, prompt=prompt, stream=False, options=ollama_options, **kwargs)
    suggested = response['response']
    cleaned = clean_suggestion(suggested, naming["max_chars"])
    if not cleaned:
        log_message(f"  Warning: Suggestion '{suggested.strip()}' was reduced to nothing after cleaning.", log_callback)
    return cleaned


def save_file(filepath, new_base, config, dry_run, rename_lock, log_callback=None):
    """Renames filepath to new_base (plus its extension), avoiding collisions."""
    folder, original_filename = os.path.split(filepath)
    original_base, original_ext = os.path.splitext(original_filename)
    final_name_to_use = new_base + original_ext.lower()
    if config["naming"].get("keep_original_name"):
        final_name_to_use = f"{original_base}_{new_base}{original_ext}"

    if final_name_to_use.lower() == original_filename.lower():
        log_message(f"  Suggested name is the same as '{original_filename}'. Skipping.", log_callback)
        return None

    base_for_collision, ext_for_collision = os.path.splitext(final_name_to_use)
    # Collision check and rename must not interleave with other workers.
    with rename_lock:
        counter = 1
        final_new_filepath = os.path.join(folder, final_name_to_use)
        while os.path.exists(final_new_filepath) and final_new_filepath.lower() != filepath.lower():
            final_name_to_use = f"{base_for_collision}_{counter}{ext_for_collision}"
            final_new_filepath = os.path.join(folder, final_name_to_use)
            counter += 1

        log_message(f"  Original:  {original_filename}\n  Suggested: {final_name_to_use}", log_callback)
        if dry_run:
            log_message("  DRY RUN: No rename performed.", log_callback)
            return final_name_to_use
        try:
            os.rename(filepath, final_new_filepath)
        except OSError as e:
            log_message(f"  ERROR renaming: {e}", log_callback)
            return None
    log_message(f"  SUCCESS: Renamed to '{final_name_to_use}'", log_callback)
    return final_name_to_use


def process_file(client, filepath, input_root, config, prober, run_opts=None, rename_lock=None, log_callback=None):
    """Analyzes and renames a single file. Returns the new filename or None.

    Errors are logged with the file's path relative to input_root and never
    propagate, so one bad file does not stop a batch.
    """
    run_opts = run_opts or {}
    rename_lock = rename_lock or threading.Lock()
    filename = os.path.basename(filepath)
    relative_path = os.path.relpath(filepath, input_root)
    ext = os.path.splitext(filename)[1].lower()
    file_kind = classify_file(filename)

    if filename.startswith('.'):
        log_message(f"Skipping hidden file: '{relative_path}'", log_callback)
        return None
    if ext in run_opts.get("skip_extensions", []):
        log_message(f"Skipping '{relative_path}' due to extension filter.", log_callback)
        return None
    if file_kind is None:
        log_message(f"Skipping unsupported file: {relative_path}", log_callback)
        return None
    if is_already_renamed(filename):
        log_message(f"Skipping already renamed: {relative_path}", log_callback)
        return None

    models = config["models"]
    video_cfg = config["video_processing"]
    if file_kind in ('image', 'video') and not models.get("vision_model"):
        log_message(f"Vision model not set, skipping {relative_path}", log_callback)
        return None
    if file_kind in ('pdf', 'text') and not models.get("text_model"):
        log_message(f"Text model not set, skipping {relative_path}", log_callback)
        return None
    if file_kind == 'video':
        if video_cfg["video_summary"] and not models.get("text_model"):
            log_message(f"Text model not set for video summaries, skipping {relative_path}", log_callback)
            return None
        if not video_cfg["video_summary"] and video_cfg["frames_to_analyze"] <= 0:
            log_message(f"Skipping video: {relative_path}", log_callback)
            return None

    log_message(f"\nProcessing: {relative_path} (Type: {file_kind})", log_callback)
    skip_metadata = config["processing"].get("skip_metadata", False)
    try:
        metadata_info = get_file_metadata(filepath, skip_metadata, prober, log_callback)
        metadata_section = f"File Metadata:\n{metadata_info}\n" if metadata_info else ""

        if file_kind == 'video':
            with frames_output_dir(run_opts.get("temp_root"), log_callback) as frames_dir:
                frame_set = extract_video_frames(filepath, frames_dir, config, prober, log_callback)
                images = [encode_image(path) for path in frame_set.images]
                new_base = get_suggested_name(client, config, images=images, video_prompt=frame_set.prompt,
                                              metadata_section=metadata_section,
                                              use_summary=video_cfg["video_summary"], log_callback=log_callback)
        elif file_kind == 'image':
            new_base = get_suggested_name(client, config, images=[encode_image(filepath)],
                                          metadata_section=metadata_section, log_callback=log_callback)
        else:
            content = read_file_content(filepath, config["generation_parameters"]["max_text_chars"], log_callback)
            if not content:
                log_message(f"No text content: {relative_path}", log_callback)
                return None
            new_base = get_suggested_name(client, config, content=content, metadata_section=metadata_section,
                                          log_callback=log_callback)

        if not new_base:
            return None
        return save_file(filepath, new_base, config, run_opts.get("dry_run", False), rename_lock, log_callback)

    except FrameExtractionError as e:
        log_message(f"  ERROR extracting frames from {relative_path}: {e}", log_callback)
    except ollama.ResponseError as e:
        log_message(f"  Ollama API Error for {relative_path}: {e.error}", log_callback)
        if "not found" in str(e.error).lower():
            log_message("  Please make sure the model is downloaded with `ollama pull <model>`", log_callback)
    except Exception as e:
        log_message(f"  ERROR processing {relative_path}: {e}", log_callback)
        traceback.print_exc()
    return None


def collect_files(target_folder, include_subdirectories):
    if not include_subdirectories:
        return [os.path.join(target_folder, name) for name in sorted(os.listdir(target_folder))
                if os.path.isfile(os.path.join(target_folder, name))]
    files = []
    for root, dirs, names in os.walk(target_folder):
        dirs[:] = sorted(d for d in dirs if not d.startswith('.'))
        files.extend(os.path.join(root, name) for name in sorted(names))
    return files


def process_directory(client, target_folder, config, run_opts=None, prober=None, log_callback=None):
    """Processes every file in target_folder with a bounded pool of worker threads."""
    prober = prober or MetadataProber()
    rename_lock = threading.Lock()
    processing = config["processing"]
    files = collect_files(target_folder, processing.get("include_subdirectories", False))
    log_message(f"Scanning folder: {target_folder} ({len(files)} files)", log_callback)

    with ThreadPoolExecutor(max_workers=processing.get("max_concurrent_files", 3)) as executor:
        futures = [executor.submit(process_file, client, filepath, target_folder, config, prober, run_opts,
                                   rename_lock, log_callback)
                   for filepath in files]
        results = [future.result() for future in futures]

    renamed = [name for name in results if name]
    verb = "Would rename" if (run_opts or {}).get("dry_run") else "Renamed"
    log_message(f"\nRenaming complete. {verb} {len(renamed)} of {len(files)} files.", log_callback)
    return renamed


def process_path(client, input_path, config, run_opts=None, prober=None, log_callback=None):
    if os.path.isdir(input_path):
        return process_directory(client, input_path, config, run_opts, prober, log_callback)
    if os.path.isfile(input_path):
        result = process_file(client, input_path, os.path.dirname(os.path.abspath(input_path)) or '.', config,
                              prober or MetadataProber(), run_opts, log_callback=log_callback)
        return [result] if result else []
    raise FileNotFoundError(f"Path not found: {input_path}")


def connect_client(host, log_callback=None):
    """Returns an ollama.Client after checking the server answers."""
    client = ollama.Client(host=host)
    client.list()
    log_message(f"Connected to Ollama at {host}", log_callback)
    return client
