from __future__ import annotations

import os
import signal
import subprocess
from typing import Any


def popen_kwargs() -> dict[str, Any]:
    if os.name == "nt":
        detached_process = 0x00000008
        return {
            "creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | detached_process,
            "startupinfo": _hidden_window(),
        }
    return {}


def _hidden_window() -> Any:
    info = subprocess.STARTUPINFO()
    info.dwFlags |= subprocess.STARTF_USESHOWWINDOW
    info.wShowWindow = 0
    return info


def interrupt_signal() -> int:
    if os.name == "nt":
        return signal.CTRL_BREAK_EVENT
    return signal.SIGINT
