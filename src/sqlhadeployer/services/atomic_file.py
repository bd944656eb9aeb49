"""Atomic write helpers for files other stages or runs read back."""

import json
import os
import tempfile
from typing import Any


def write_text_atomic(path: str, content: str, prefix: str = "sqlha-") -> str:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(prefix=prefix, dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as file_obj:
            file_obj.write(content)
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError:
                pass
    return path


def write_json_atomic(path: str, payload: Any, prefix: str = "sqlha-") -> str:
    content = json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n"
    return write_text_atomic(path, content, prefix=prefix)
