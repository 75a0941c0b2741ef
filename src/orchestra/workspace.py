from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from orchestra.errors import OrchestraError, PatchError, WorkspacePathError
from orchestra.models import AppliedChange, FileChange
from orchestra.patches import apply_unified_patch

logger = logging.getLogger(__name__)


class Workspace:
    """File access for a session, confined to a single root directory."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def resolve(self, relative_path: str) -> Path:
        cleaned = relative_path.strip().lstrip("/")
        if not cleaned:
            raise WorkspacePathError("Empty path rejected.")
        candidate = (self.root / cleaned).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise WorkspacePathError(f"Unsafe path rejected: {relative_path}")
        return candidate

    def read_text(self, relative_path: str) -> str:
        path = self.resolve(relative_path)
        try:
            return path.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError):
            return ""

    def read_files(self, paths: list[str]) -> dict[str, str]:
        return {path: self.read_text(path) for path in paths}

    def apply_changes(self, changes: list[FileChange]) -> list[AppliedChange]:
        results: list[AppliedChange] = []
        for change in changes:
            target = self.resolve(change.path)
            target.parent.mkdir(parents=True, exist_ok=True)
            current = self.read_text(change.path)

            if change.patch and change.patch.strip():
                try:
                    updated = apply_unified_patch(current, change.patch)
                except PatchError as exc:
                    logger.warning("patch for %s did not apply, falling back: %s", change.path, exc)
                else:
                    target.write_text(updated, encoding="utf-8")
                    results.append(AppliedChange(path=change.path, mode="patch"))
                    continue

            if change.fallback_content is not None:
                target.write_text(change.fallback_content, encoding="utf-8")
                results.append(AppliedChange(path=change.path, mode="fallback_content"))
                continue

            if change.content is not None:
                target.write_text(change.content, encoding="utf-8")
                results.append(AppliedChange(path=change.path, mode="content"))
                continue

            raise OrchestraError(
                f"Unable to apply change for {change.path}: missing patch and fallback content."
            )
        return results

    def write_json(self, relative_path: str, payload: dict[str, Any]) -> Path:
        target = self.resolve(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2) + "\n",
            encoding="utf-8",
        )
        return target
