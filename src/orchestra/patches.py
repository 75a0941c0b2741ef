from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from orchestra.errors import PatchError

logger = logging.getLogger(__name__)

HUNK_HEADER_PATTERN = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
NO_NEWLINE_MARKER = "\\"


@dataclass(slots=True)
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[tuple[str, str]] = field(default_factory=list)
    old_missing_newline: bool = False
    new_missing_newline: bool = False

    @property
    def old_lines(self) -> list[str]:
        return [text for op, text in self.lines if op != "+"]

    @property
    def anchor(self) -> int:
        # A zero-length old range names the line after which new lines go.
        return self.old_start if self.old_count == 0 else self.old_start - 1


@dataclass(slots=True)
class ParsedPatch:
    old_path: str | None
    new_path: str | None
    hunks: list[Hunk]


def _header_path(raw: str) -> str | None:
    path = raw.split("\t", 1)[0].strip()
    if path == "/dev/null" or not path:
        return None
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


def parse_unified_diff(patch: str) -> ParsedPatch:
    if not patch.strip():
        raise PatchError("Patch text is empty.")
    if "@@" not in patch:
        raise PatchError("Patch does not include unified diff hunks.")

    lines = patch.replace("\r\n", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    old_path: str | None = None
    new_path: str | None = None
    hunks: list[Hunk] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        header = HUNK_HEADER_PATTERN.match(line)
        if header is None:
            next_line = lines[index + 1] if index + 1 < len(lines) else ""
            if line.startswith("--- ") and next_line.startswith("+++ "):
                if hunks:
                    raise PatchError("Patch spans more than one file.")
                old_path = _header_path(line[4:])
                new_path = _header_path(next_line[4:])
                index += 2
                continue
            if hunks and line[:1] in {"+", "-", " "}:
                raise PatchError(
                    f"Hunk {len(hunks)} has more lines than its header declares.",
                    hunk_index=len(hunks) - 1,
                )
            index += 1
            continue

        hunk = Hunk(
            old_start=int(header.group(1)),
            old_count=int(header.group(2)) if header.group(2) is not None else 1,
            new_start=int(header.group(3)),
            new_count=int(header.group(4)) if header.group(4) is not None else 1,
        )
        index = _parse_hunk_body(lines, index + 1, hunk, len(hunks))
        hunks.append(hunk)

    return ParsedPatch(old_path=old_path, new_path=new_path, hunks=hunks)


def _parse_hunk_body(lines: list[str], index: int, hunk: Hunk, hunk_index: int) -> int:
    old_seen = 0
    new_seen = 0
    while old_seen < hunk.old_count or new_seen < hunk.new_count:
        if index >= len(lines):
            raise PatchError(
                f"Hunk {hunk_index + 1} ends before its declared line counts.",
                hunk_index=hunk_index,
            )
        raw = lines[index]
        index += 1
        if raw.startswith(NO_NEWLINE_MARKER):
            _mark_missing_newline(hunk)
            continue
        # Editors and models often strip the single space of an empty context line.
        op, text = (raw[0], raw[1:]) if raw else (" ", "")
        if op == " ":
            old_seen += 1
            new_seen += 1
        elif op == "-":
            old_seen += 1
        elif op == "+":
            new_seen += 1
        else:
            raise PatchError(
                f"Unexpected line in hunk {hunk_index + 1}: {raw[:60]!r}",
                hunk_index=hunk_index,
            )
        hunk.lines.append((op, text))

    while index < len(lines) and lines[index].startswith(NO_NEWLINE_MARKER):
        _mark_missing_newline(hunk)
        index += 1
    return index


def _mark_missing_newline(hunk: Hunk) -> None:
    if not hunk.lines:
        return
    op = hunk.lines[-1][0]
    if op in {" ", "-"}:
        hunk.old_missing_newline = True
    if op in {" ", "+"}:
        hunk.new_missing_newline = True


def _matches_at(
    file_lines: list[str],
    hunk: Hunk,
    position: int,
    fuzz: int,
) -> bool:
    mismatches = 0
    cursor = position
    for op, text in hunk.lines:
        if op == "+":
            continue
        if file_lines[cursor] != text:
            if op == "-":
                return False
            mismatches += 1
            if mismatches > fuzz:
                return False
        cursor += 1
    return True


def _locate_hunk(
    file_lines: list[str],
    hunk: Hunk,
    claimed: int,
    floor: int,
    fuzz: int,
) -> int | None:
    span = len(hunk.old_lines)
    ceiling = len(file_lines) - span
    if ceiling < floor:
        return None
    start = min(max(claimed, floor), ceiling)
    if span == 0:
        return start

    # Search outward from the claimed line so the nearest matching context wins.
    distance = 0
    while start - distance >= floor or start + distance <= ceiling:
        for candidate in (start - distance, start + distance) if distance else (start,):
            if floor <= candidate <= ceiling and _matches_at(file_lines, hunk, candidate, fuzz):
                return candidate
        distance += 1
    return None


def apply_unified_patch(original: str, patch: str, *, fuzz: int = 0) -> str:
    """Apply a single-file unified diff to ``original`` and return the new text.

    Hunks are located by their context and removed lines, starting at the line the
    header claims (shifted by the drift of earlier hunks) and searching outward.
    ``fuzz`` allows that many context lines per hunk to differ from the file.
    A hunk that cannot be located raises :class:`PatchError` and nothing is applied.
    """
    parsed = parse_unified_diff(patch)
    if not parsed.hunks:
        raise PatchError("Patch does not include unified diff hunks.")

    newline = "\r\n" if "\r\n" in original else "\n"
    file_lines = original.split(newline) if original else []
    ends_with_newline = original.endswith(newline) or not original
    if original.endswith(newline):
        file_lines.pop()

    result: list[str] = []
    cursor = 0
    drift = 0
    for index, hunk in enumerate(parsed.hunks):
        position = _locate_hunk(file_lines, hunk, hunk.anchor + drift, cursor, fuzz)
        if position is None:
            raise PatchError(
                f"Hunk {index + 1} context does not match near line {hunk.old_start}.",
                hunk_index=index,
            )
        if position != hunk.anchor + drift:
            logger.debug(
                "hunk %s located at line %s instead of %s",
                index + 1,
                position + 1,
                hunk.anchor + drift + 1,
            )
        drift = position - hunk.anchor
        result.extend(file_lines[cursor:position])

        source = position
        for op, text in hunk.lines:
            if op == " ":
                result.append(file_lines[source])
                source += 1
            elif op == "-":
                source += 1
            else:
                result.append(text)
        cursor = source

        if hunk.new_missing_newline:
            ends_with_newline = False
        elif hunk.old_missing_newline:
            ends_with_newline = True

    result.extend(file_lines[cursor:])
    if not result:
        return ""
    text = newline.join(result)
    return text + newline if ends_with_newline else text
