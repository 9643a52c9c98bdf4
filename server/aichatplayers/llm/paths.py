from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path


LOGGER = logging.getLogger("aichatplayers.llm.paths")

MODEL_SUFFIX = ".gguf"
DEFAULT_MODEL_DIRS = ("models", os.sep + "models")


def _is_windows() -> bool:
    return os.name == "nt"


def file_exists(path: str | Path) -> bool:
    return bool(str(path)) and Path(path).is_file()


def windows_trim_rooted_path(value: str) -> str:
    """Turn ``\\models\\x`` into ``models\\x`` on Windows, where a leading
    separator without a drive is relative to the current drive root."""
    if not _is_windows():
        return ""
    cleaned = os.path.normpath(value)
    drive, _ = os.path.splitdrive(cleaned)
    if drive:
        return ""
    if cleaned.startswith(("\\", "/")):
        return cleaned.lstrip("\\/")
    return ""


def model_dir_candidates(models_dir: str = "") -> list[str]:
    directory = models_dir.strip()
    if directory:
        candidates = [directory]
        alt = windows_trim_rooted_path(directory)
        if alt and alt != directory:
            candidates.append(alt)
        return candidates
    return list(DEFAULT_MODEL_DIRS)


def first_model_file(directory: str | Path) -> str:
    try:
        entries = sorted(
            entry.name
            for entry in Path(directory).iterdir()
            if entry.is_file() and entry.name.lower().endswith(MODEL_SUFFIX)
        )
    except OSError:
        return ""
    if not entries:
        return ""
    return str(Path(directory) / entries[0])


def resolve_model_path(model_path: str, models_dir: str = "") -> str:
    """Find the model file to load.

    An explicit path wins when it exists (directly, Windows-trimmed, or
    relative to a models dir); otherwise the first model file by name in
    the models dirs. Returns the configured value unchanged when nothing
    is found.
    """
    configured = model_path.strip()
    if configured:
        if file_exists(configured):
            return configured
        alt = windows_trim_rooted_path(configured)
        if alt and alt != configured and file_exists(alt):
            LOGGER.info("llm_model_path_resolved original=%s resolved=%s", configured, alt)
            return alt
        for directory in model_dir_candidates(models_dir):
            candidate = Path(directory) / configured
            if file_exists(candidate):
                LOGGER.info("llm_model_path_resolved original=%s resolved=%s", configured, candidate)
                return str(candidate)
        LOGGER.debug("llm_model_path_missing path=%s", configured)

    for directory in model_dir_candidates(models_dir):
        candidate = first_model_file(directory)
        if candidate:
            LOGGER.info("llm_model_path_auto_detected path=%s", candidate)
            return candidate
    return configured


def command_candidates(directory: str, name: str) -> list[str]:
    candidates = [str(Path(directory) / name)]
    if _is_windows() and not name.lower().endswith(".exe"):
        candidates.append(str(Path(directory) / f"{name}.exe"))
    return candidates


def resolve_command_path(command: str, default_name: str, models_dir: str = "") -> tuple[str, bool]:
    name = command.strip() or default_name
    if Path(name).name != name or os.path.isabs(name):
        if file_exists(name):
            return name, True

    resolved = shutil.which(name)
    if resolved:
        return resolved, True

    for directory in model_dir_candidates(models_dir):
        for candidate in command_candidates(directory, name):
            if file_exists(candidate):
                return candidate, True
    return name, False
