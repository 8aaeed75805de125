"""Idempotent named-block edits for vhost documents and .htaccess files.

Every edit goes through ManagedBlock. A block is either a fixed set of marker
lines (present when each line appears verbatim, ignoring indentation) or a
sentinel-bounded range whose body is replaced wholesale. `upsert` and `remove`
are pure text functions; `apply_block` and `strip_block` add the file I/O
(backup first, then atomic replace).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

from wpguard.services.errors import BoundaryNotFound, PartialBlockError, VhostNotFound
from wpguard.services.fsutil import atomic_write_text, backup_file, read_text


logger = logging.getLogger(__name__)


INCLUDE_MARKER = "# WordPress Security Include"
VHOST_BOUNDARY = "</virtualHost>"

HTACCESS_START = "# WordPress Security Rules - Added by WordPress Security Installer"
HTACCESS_END = "# End WordPress Security Rules"
HTACCESS_BODY = (
    "# These rules provide additional protection at the directory level",
    "",
    "# Block wp-config.php",
    "<Files wp-config.php>",
    "    Require all denied",
    "</Files>",
    "",
    "# Block xmlrpc.php",
    "<Files xmlrpc.php>",
    "    Require all denied",
    "</Files>",
    "",
    "# Block PHP in uploads",
    "<Directory wp-content/uploads>",
    '    <FilesMatch "\\.php$">',
    "        Require all denied",
    "    </FilesMatch>",
    "</Directory>",
    "",
    "# Block sensitive files",
    '<FilesMatch "\\.(bak|backup|old|orig|sql|log)$">',
    "    Require all denied",
    "</FilesMatch>",
    "",
)

BOT_INCLUDE_MARKER = "# Bot Verification Include"

INDENT = "    "


def _newline(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def _indent_of(line: str) -> str:
    body = line.rstrip("\r\n")
    return body[: len(body) - len(body.lstrip())]


def _positions(lines: List[str], wanted: str) -> List[int]:
    w = wanted.strip()
    return [i for i, line in enumerate(lines) if line.strip() == w]


@dataclass(frozen=True)
class ManagedBlock:
    name: str
    lines: Tuple[str, ...]
    start: str = ""
    end: str = ""
    # Insert before the last line equal to `boundary`; None appends at end of document.
    boundary: Optional[str] = None

    @property
    def sentinel(self) -> bool:
        return bool(self.start and self.end)

    def rendered(self) -> List[str]:
        if self.sentinel:
            return [self.start, *self.lines, self.end]
        return list(self.lines)

    def _find_boundary(self, doc: List[str]) -> int:
        want = (self.boundary or "").strip().lower()
        for i in range(len(doc) - 1, -1, -1):
            if doc[i].strip().lower() == want:
                return i
        raise BoundaryNotFound(f"{self.name}: closing {self.boundary} not found")

    def _insert(self, doc: List[str], nl: str) -> None:
        block = self.rendered()
        if self.boundary is None:
            if doc and not doc[-1].endswith(("\n", "\r")):
                doc[-1] += nl
            if doc and doc[-1].strip():
                doc.append(nl)
            doc.extend(line + nl for line in block)
            return

        idx = self._find_boundary(doc)
        indent = _indent_of(doc[idx]) + INDENT
        for j in range(idx - 1, -1, -1):
            prev = doc[j].strip()
            if not prev:
                continue
            if not (prev.startswith("<") and not prev.startswith("</")):
                indent = _indent_of(doc[j])
            break
        doc[idx:idx] = [(indent + line if line else line) + nl for line in block]

    def _refresh_body(self, doc: List[str], nl: str) -> str:
        """The marker is present but the lines after it are not ours.

        Lines right after the marker that use the same directive (e.g. an
        `include` of an older path) are rewritten; missing ones are inserted.
        """
        at = _positions(doc, self.lines[0])[0]
        indent = _indent_of(doc[at])
        pos = at + 1
        for line in self.lines[1:]:
            keyword = line.split(None, 1)[0].lower() if line.strip() else ""
            following = doc[pos].strip() if pos < len(doc) else ""
            if keyword and following.lower().split(None, 1)[:1] == [keyword]:
                logger.info("%s: replacing stale line %r", self.name, following)
                doc[pos] = indent + line + nl
            else:
                doc.insert(pos, indent + line + nl)
            pos += 1
        return "".join(doc)

    def upsert(self, text: str) -> Tuple[str, bool]:
        """Insert or refresh the block. Returns (new_text, changed)."""
        text = text or ""
        nl = _newline(text)
        doc = text.splitlines(keepends=True)

        if self.sentinel:
            starts = _positions(doc, self.start)
            ends = _positions(doc, self.end)
            if not starts and not ends:
                self._insert(doc, nl)
                return "".join(doc), True
            if len(starts) == 1 and len(ends) == 1 and starts[0] < ends[0]:
                s, e = starts[0], ends[0]
                current = [line.rstrip("\r\n") for line in doc[s + 1 : e]]
                if current == list(self.lines):
                    return text, False
                doc[s + 1 : e] = [line + nl for line in self.lines]
                return "".join(doc), True
            raise PartialBlockError(
                f"{self.name}: found {len(starts)} start and {len(ends)} end sentinels; fix by hand"
            )

        counts = [len(_positions(doc, line)) for line in self.lines]
        if all(c == 1 for c in counts):
            return text, False
        if all(c == 0 for c in counts):
            self._insert(doc, nl)
            return "".join(doc), True
        if counts[0] == 1 and not any(counts[1:]):
            return self._refresh_body(doc, nl), True
        if all(c >= 1 for c in counts):
            # Duplicated by an older tool; collapse to one copy.
            stripped, _ = self.remove(text)
            new_doc = stripped.splitlines(keepends=True)
            self._insert(new_doc, nl)
            return "".join(new_doc), True
        raise PartialBlockError(f"{self.name}: block is only partially present")

    def remove(self, text: str) -> Tuple[str, bool]:
        """Delete the block. Returns (new_text, changed)."""
        text = text or ""
        doc = text.splitlines(keepends=True)

        if self.sentinel:
            starts = _positions(doc, self.start)
            ends = _positions(doc, self.end)
            if not starts and not ends:
                return text, False
            if not (len(starts) == 1 and len(ends) == 1 and starts[0] < ends[0]):
                raise PartialBlockError(
                    f"{self.name}: found {len(starts)} start and {len(ends)} end sentinels; not removing"
                )
            s, e = starts[0], ends[0]
            del doc[s : e + 1]
            if s > 0 and not doc[s - 1].strip():
                del doc[s - 1]
            return "".join(doc), True

        wanted = {line.strip() for line in self.lines}
        kept = [line for line in doc if line.strip() not in wanted]
        if len(kept) == len(doc):
            return text, False
        return "".join(kept), True

    def present(self, text: str) -> bool:
        doc = (text or "").splitlines()
        if self.sentinel:
            return bool(_positions(doc, self.start)) and bool(_positions(doc, self.end))
        return all(_positions(doc, line) for line in self.lines)


def include_block(security_conf_path: str) -> ManagedBlock:
    return ManagedBlock(
        name="security-include",
        lines=(INCLUDE_MARKER, f"include {security_conf_path}"),
        boundary=VHOST_BOUNDARY,
    )


def htaccess_block() -> ManagedBlock:
    return ManagedBlock(
        name="htaccess-rules",
        lines=HTACCESS_BODY,
        start=HTACCESS_START,
        end=HTACCESS_END,
    )


def bot_include_block(bot_rules_path: str) -> ManagedBlock:
    return ManagedBlock(
        name="bot-include",
        lines=(BOT_INCLUDE_MARKER, f"include {bot_rules_path}"),
    )


@dataclass(frozen=True)
class PatchOutcome:
    path: str
    changed: bool
    backup: Optional[str] = None


def apply_block(path: str, block: ManagedBlock, *, create: bool = False, now: Optional[float] = None) -> PatchOutcome:
    exists = os.path.isfile(path)
    if not exists and not create:
        raise VhostNotFound(f"{path} does not exist")
    text = read_text(path) if exists else ""
    new_text, changed = block.upsert(text)
    if not changed:
        logger.debug("%s already present in %s", block.name, path)
        return PatchOutcome(path=path, changed=False)
    backup = backup_file(path, now=now) if exists else None
    atomic_write_text(path, new_text)
    logger.info("Added %s to %s", block.name, path)
    return PatchOutcome(path=path, changed=True, backup=backup)


def strip_block(path: str, block: ManagedBlock, *, now: Optional[float] = None) -> PatchOutcome:
    if not os.path.isfile(path):
        return PatchOutcome(path=path, changed=False)
    text = read_text(path)
    new_text, changed = block.remove(text)
    if not changed:
        return PatchOutcome(path=path, changed=False)
    backup = backup_file(path, now=now)
    atomic_write_text(path, new_text)
    logger.info("Removed %s from %s", block.name, path)
    return PatchOutcome(path=path, changed=True, backup=backup)


def find_vhost_configs(vhosts_dir: str) -> List[str]:
    """Every *.conf below `vhosts_dir`, sorted."""
    found: List[str] = []
    if not os.path.isdir(vhosts_dir):
        return found
    for root, dirs, files in os.walk(vhosts_dir):
        dirs.sort()
        for name in sorted(files):
            if name.endswith(".conf"):
                found.append(os.path.join(root, name))
    return found
