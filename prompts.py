# prompts.py
SUMMARY_MODES = {
    "standard": [
        "You are a video content analyzer. Provide a comprehensive summary of this video.",
        "",
        "ANALYSIS FOCUS:",
        "- Main actions and events",
        "- Key visual elements and objects",
        "- Scene transitions and changes",
        "- Overall theme and purpose",
    ],
    "detailed": [
        "You are a video content analyzer. Provide an in-depth analysis of this video.",
        "",
        "DETAILED ANALYSIS REQUIREMENTS:",
        "- The complete sequence of actions",
        "- Every notable visual element, with context",
        "- Temporal structure and pacing",
        "- Technical aspects such as lighting, composition and camera work",
        "- Emotional tone and atmosphere",
    ],
    "brief": [
        "You are a video content analyzer. Provide a concise summary of this video.",
        "",
        "BRIEF SUMMARY FOCUS:",
        "- The primary action or main subject only",
        "- The most important visual elements",
        "",
        "Keep the response under 3 sentences.",
    ],
    "narrative": [
        "You are a video storyteller. Describe this video as a short narrative.",
        "",
        "NARRATIVE STRUCTURE:",
        "- Beginning: the scene and its subjects",
        "- Middle: how things develop",
        "- End: the outcome or resolution",
        "- Setting and environment details",
    ],
}
DEFAULT_SUMMARY_MODE = "standard"

FILENAME_RULES = [
    "- Lowercase words separated by underscores",
    "- No file extension",
    "- No special characters (/, \\, :, *, ?, \", <, >, |)",
]


def _requirements(max_chars, language):
    return ["FILENAME REQUIREMENTS:",
            f"- Maximum length: {max_chars} characters",
            f"- Language: {language} only"] + FILENAME_RULES


def build_summary_prompt(mode, video_prompt, custom_prompt=None):
    """Prompt asking the vision model to summarise the extracted frames."""
    lines = list(SUMMARY_MODES.get(mode, SUMMARY_MODES[DEFAULT_SUMMARY_MODE]))
    lines += ["", video_prompt or "", ""]
    if custom_prompt:
        lines += ["Custom instructions:", custom_prompt, ""]
    lines.append("Provide a concise but complete summary suitable for filename generation.")
    return '\n'.join(lines)


def build_video_name_prompt(summary, max_chars, language, custom_prompt=None, metadata_section=""):
    lines = ["You are a video content analyzer. Suggest a descriptive filename base for the video summarized below.",
             "",
             "VIDEO SUMMARY:",
             summary,
             ""]
    lines += _requirements(max_chars, language)
    lines += ["",
              "NAMING STRATEGY:",
              "- Name the primary action, event or theme",
              "- Include the kind of video when it is clear (tutorial, review, interview, demo)",
              "- Prefer searchable keywords over full sentences",
              "",
              "Example: a cook preparing pasta carbonara step by step -> 'carbonara_cooking_guide'"]
    if metadata_section:
        lines += ["", metadata_section.rstrip()]
    if custom_prompt:
        lines += ["", "Custom instructions:", custom_prompt]
    lines += ["", "Only output the suggested filename base."]
    return '\n'.join(lines)


def build_name_prompt(max_chars, language, content=None, video_prompt=None, custom_prompt=None, metadata_section=""):
    """Naming prompt for images, video keyframes and text.

    Sections are added in a fixed order: the video prompt first when frames
    are attached, then the naming instructions, file metadata, the text
    content and finally any custom instructions.
    """
    lines = []
    if video_prompt:
        lines += [video_prompt, ""]
    lines += ["Analyze the content and suggest a detailed, descriptive filename base. "
              "If a recurring subject is visible, use a consistent and specific term for it. Avoid generic names.",
              ""]
    lines += _requirements(max_chars, language)
    lines += ["", "Example: 'ginger_cat_sleeping_blue_armchair'"]
    if metadata_section:
        lines += ["", metadata_section.rstrip()]
    if content:
        lines += ["", "Content:", content]
    if custom_prompt:
        lines += ["", "Custom instructions:", custom_prompt]
    lines += ["", "Only output the suggested filename base."]
    return '\n'.join(lines)
