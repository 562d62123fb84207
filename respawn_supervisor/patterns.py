"""Terminal output pattern detection for respawn idle detection."""

import re
from typing import Optional

# ANSI/VT escape sequences: CSI, OSC and single-character escapes
ANSI_ESCAPE_RE = re.compile(r'\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]')

# Requires the "Worked for" prefix so bare durations in prose
# ("wait for 5s", "run for 2m") do not count.
COMPLETION_TIME_RE = re.compile(r'\bWorked\s+for\s+\d+[hms](\s*\d+[hms])*', re.IGNORECASE)

# Secondary ready-for-input signals, used only as a fallback
PROMPT_PATTERNS = [
    '❯',
    '⏵',
    '↵ send',
]

WORKING_PATTERNS = [
    'Thinking',
    'Writing',
    'Reading',
    'Running',
    'Searching',
    'Editing',
    'Creating',
    'Deleting',
    'Analyzing',
    'Executing',
    'Synthesizing',
    'Brewing',
    'Compiling',
    'Building',
    'Installing',
    'Fetching',
    'Downloading',
    'Processing',
    'Generating',
    'Loading',
    'Starting',
    'Updating',
    'Checking',
    'Validating',
    'Testing',
    'Formatting',
    'Linting',
    # Spinner characters
    '⠋', '⠙', '⠹', '⠸', '⠼', '⠴', '⠦', '⠧', '⠇', '⠏',
    '◐', '◓', '◑', '◒',
    '⣾', '⣽', '⣻', '⢿', '⡿', '⣟', '⣯', '⣷',
]

# "123.4k tokens", "1.5M tokens", "842 tokens"
TOKEN_RE = re.compile(r'(\d+(?:\.\d+)?)\s*([kKmM])?\s+tokens\b')

# Numbered selection menu with a cursor on one option, e.g. "❯ 1. Yes"
SELECTION_MENU_RE = re.compile(r'(?:❯|>)\s*1\.\s+\S+[\s\S]*?\n\s*2\.\s+\S+')

# Free-text question prompts (AskUserQuestion style) that must never be auto-accepted
ELICITATION_RE = re.compile(r'\?\s*\n\s*>\s*$')


def strip_ansi(data: str) -> str:
    """Remove terminal control/formatting sequences."""
    return ANSI_ESCAPE_RE.sub('', data)


def is_completion_message(data: str) -> bool:
    """True if the output contains a "Worked for 2m 46s" style completion line."""
    return bool(COMPLETION_TIME_RE.search(data))


def has_working_pattern(window: str) -> bool:
    """True if any working indicator appears in the window."""
    return any(pattern in window for pattern in WORKING_PATTERNS)


def has_prompt_pattern(window: str) -> bool:
    """True if a ready-for-input prompt indicator appears in the window."""
    return any(pattern in window for pattern in PROMPT_PATTERNS)


def looks_like_selection_menu(tail: str) -> bool:
    """True if the tail of the terminal shows a numbered selection menu."""
    return bool(SELECTION_MENU_RE.search(tail))


def looks_like_elicitation(tail: str) -> bool:
    """True if the tail ends with a free-text question prompt."""
    return bool(ELICITATION_RE.search(tail))


def extract_token_count(data: str) -> Optional[int]:
    """
    Extract a token count from terminal output.

    Parses "123.4k tokens" or "1.5M tokens". Returns None if absent.
    """
    match = TOKEN_RE.search(data)
    if not match:
        return None

    count = float(match.group(1))
    suffix = (match.group(2) or '').lower()
    if suffix == 'k':
        count *= 1000
    elif suffix == 'm':
        count *= 1000000
    return round(count)
