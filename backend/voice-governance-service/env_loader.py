"""
Environment bootstrap for voice-governance-service.

Reads `.env`, `.env.local` and, when `VG_ENV_FILE` points somewhere, that
file as well. Shell exports always win over file values.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

SERVICE_DIR = Path(__file__).resolve().parent


def load_service_env() -> List[Path]:
    candidates = [SERVICE_DIR / ".env", SERVICE_DIR / ".env.local"]
    explicit = (os.getenv("VG_ENV_FILE") or "").strip()
    if explicit:
        candidates.append(Path(explicit).expanduser())

    loaded: List[Path] = []
    for path in candidates:
        if path.is_file() and load_dotenv(path, override=False):
            loaded.append(path)
    return loaded


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_str(name: str, default: str) -> str:
    return (os.getenv(name, default) or default).strip()
