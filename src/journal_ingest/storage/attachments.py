from __future__ import annotations

import re
import uuid
from pathlib import Path

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class LocalAttachmentStore:
    """Writes attachment bytes under a directory and returns a URL below ``url_prefix``."""

    def __init__(self, root: Path, url_prefix: str = "/api/attachments") -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def save(self, content: bytes, filename: str, content_type: str | None = None) -> str:
        stored_name = f"{uuid.uuid4().hex}-{_safe_name(filename)}"
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / stored_name).write_bytes(content)
        return f"{self.url_prefix}/{stored_name}"

    def path_for(self, stored_name: str) -> Path | None:
        if stored_name != _safe_name(stored_name):
            return None
        path = self.root / stored_name
        return path if path.is_file() else None


def _safe_name(filename: str) -> str:
    name = Path(filename or "attachment").name
    cleaned = _UNSAFE.sub("_", name).strip("._")
    return cleaned or "attachment"
