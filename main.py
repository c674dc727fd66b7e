#!/usr/bin/env python3
import argparse
import sys

import config as cfg
import renamer_core as core
from frame_extractor import MetadataProber
from prompts import SUMMARY_MODES

# (argument dest, config section, config key); section None means a top-level key.
CONFIG_OVERRIDES = [
    ("text_model", "models", "text_model"),
    ("vision_model", "models", "vision_model"),
    ("ollama_host", None, "ollama_host"),
    ("temperature", "generation_parameters", "temperature"),
    ("num_predict", "generation_parameters", "num_predict"),
    ("max_text_chars", "generation_parameters", "max_text_chars"),
    ("max_chars", "naming", "max_chars"),
    ("language", "naming", "language"),
    ("custom_prompt", "naming", "custom_prompt"),
    ("keep_original_name", "naming", "keep_original_name"),
    ("video_frames", "video_processing", "frames_to_analyze"),
    ("video_summary", "video_processing", "video_summary"),
    ("summary_mode", "video_processing", "summary_mode"),
    ("summary_interval", "video_processing", "summary_interval"),
    ("summary_max_frames", "video_processing", "summary_max_frames"),
    ("include_subdirectories", "processing", "include_subdirectories"),
    ("concurrency", "processing", "max_concurrent_files"),
    ("skip_metadata", "processing", "skip_metadata"),
]


def build_parser(config):
    parser = argparse.ArgumentParser(
        description="Rename images, videos and text files based on their content using Ollama.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    models = config["models"]
    video = config["video_processing"]
    naming = config["naming"]
    # Defaults stay None so only flags given on the command line override the config file.
    parser.add_argument("path", help="File or folder to rename.")
    parser.add_argument("--config", default=cfg.DEFAULT_CONFIG_FILENAME, help="Path to the JSON config file.")
    parser.add_argument("--text-model", help=f"Ollama model for text files (config: {models.get('text_model')}).")
    parser.add_argument("--vision-model", help=f"Ollama model for images and video frames (config: {models.get('vision_model')}).")
    parser.add_argument("--ollama-host", help=f"Ollama server address (config: {config.get('ollama_host')}).")
    parser.add_argument("--temperature", type=float, help="Temperature for model generation.")
    parser.add_argument("--num-predict", type=int, help="Max tokens to predict for a filename.")
    parser.add_argument("--max-text-chars", type=int, help="Max characters read from text files and PDFs.")
    parser.add_argument("--max-chars", type=int, help=f"Max characters in the new filename (config: {naming.get('max_chars')}).")
    parser.add_argument("--language", help=f"Language of the new filename (config: {naming.get('language')}).")
    parser.add_argument("--custom-prompt", help="Extra instructions added to every prompt.")
    parser.add_argument("--video-frames", type=int, help=f"Max keyframes to analyze per video (config: {video.get('frames_to_analyze')}). Set to 0 to skip videos.")
    parser.add_argument("--video-summary", action="store_true", default=None, help="Name videos from a summary of frames taken at fixed intervals.")
    parser.add_argument("--summary-mode", choices=list(SUMMARY_MODES), help=f"Video summary style (config: {video.get('summary_mode')}).")
    parser.add_argument("--summary-interval", type=float, help=f"Seconds between summary frames (config: {video.get('summary_interval')}).")
    parser.add_argument("--summary-max-frames", type=int, help="Max frames extracted for a video summary.")
    parser.add_argument("--include-subdirectories", action="store_true", default=None, help="Also rename files in subfolders.")
    parser.add_argument("--concurrency", type=int, help="Number of files processed at the same time.")
    parser.add_argument("--keep-original-name", action="store_true", default=None, help="Append suggested name to the original filename instead of replacing it.")
    parser.add_argument("--skip-metadata", action="store_true", default=None, help="Do not include file metadata in the LLM prompt.")
    parser.add_argument("--skip-extensions", nargs="*", default=[], help="List of file extensions to skip (e.g., .log .tmp).")
    parser.add_argument("--dry-run", action="store_true", help="Show proposed renames without actually renaming files.")
    parser.add_argument("--save-config", action="store_true", help="Store the given options as new defaults in the config file.")
    return parser


def apply_overrides(config, args):
    for dest, section, key in CONFIG_OVERRIDES:
        value = getattr(args, dest, None)
        if value is None:
            continue
        target = config if section is None else config.setdefault(section, {})
        target[key] = value
    return config


def _config_path(argv):
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", default=cfg.DEFAULT_CONFIG_FILENAME)
    known, _ = pre_parser.parse_known_args(argv)
    return known.config


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    config_path = _config_path(argv)
    config = cfg.load_config(config_path)
    args = build_parser(config).parse_args(argv)
    apply_overrides(config, args)

    try:
        cfg.validate_config(config)
    except cfg.ConfigError as e:
        print(f"Error: {e}")
        return 1
    if args.save_config:
        cfg.save_config(config, config_path)

    try:
        client = core.connect_client(config["ollama_host"])
    except Exception as e:
        print(f"Error: Could not connect to Ollama at {config['ollama_host']}. Ensure Ollama is running. Details: {e}")
        return 1

    run_opts = {
        "dry_run": args.dry_run,
        "skip_extensions": [ext.lower() if ext.startswith('.') else '.' + ext.lower() for ext in args.skip_extensions],
    }
    if args.dry_run: print("DRY RUN MODE: No files will actually be renamed.")
    if config["naming"].get("keep_original_name"): print("KEEP ORIGINAL NAME MODE: Suggested name will be appended to the original.")

    try:
        core.process_path(client, args.path, config, run_opts, MetadataProber())
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
