# app/utils/paths.py
import os
from typing import Optional

from app.config import get_settings


def storage_root() -> str:
    return os.path.abspath(get_settings().STORAGE_DIR)


def resolve_storage_path(path: Optional[str]) -> Optional[str]:
    """Map a stored thumbnail/original path to a local file path.

    Absolute paths are returned as-is; relative ones resolve under STORAGE_DIR.
    """
    if not path:
        return None
    if os.path.isabs(path):
        return path
    return os.path.join(storage_root(), path.lstrip("/"))


def ensure_dirs():
    os.makedirs(storage_root(), exist_ok=True)
