# utils/common.py
"""Common utilities: path management and human-readable formatting"""
import math
import os

# ⚠️ DO NOT import settings here - causes circular import with config.py


# ============= Path Management =============

def get_project_root() -> str:
    """Returns the absolute path to the project's root directory."""
    return os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))


def get_log_file_path() -> str:
    """Creates the log directory if it doesn't exist and returns the full log file path."""
    project_root = get_project_root()
    log_dir = os.path.join(project_root, 'log')

    if not os.path.exists(log_dir):
        os.makedirs(log_dir, exist_ok=True)

    return os.path.join(log_dir, 'medical_rag.log')


# ============= Formatting =============

def format_bytes(num_bytes: int) -> str:
    """Formats a byte count as a human readable string (e.g. '1.5 MB')."""
    if num_bytes <= 0:
        return "0 Bytes"

    units = ["Bytes", "KB", "MB", "GB", "TB"]
    exponent = min(int(math.floor(math.log(num_bytes, 1024))), len(units) - 1)
    value = round(num_bytes / math.pow(1024, exponent), 2)
    return f"{value:g} {units[exponent]}"


def format_time(seconds: float) -> str:
    """Formats a duration in seconds as '42s', '3m 5s' or '2h 10m'."""
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        minutes = int(seconds // 60)
        return f"{minutes}m {round(seconds % 60)}s"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours}h {minutes}m"


def truncate_text(text: str, max_length: int, ellipsis: str = "...") -> str:
    """Cut text to max_length characters, appending an ellipsis when something was cut."""
    if text is None:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + ellipsis
