"""
Filename sanitization and the directory write capability used to commit renames.

A DirectoryHandle is granted once per ingested directory; commit() writes the new
entry first and removes the old one only after the write succeeded.
"""

from __future__ import annotations

import errno
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

# Characters reserved on common filesystems (Windows is the strictest).
FILENAME_RESERVED_RE = re.compile(r'[<>:"/\\|?*]')

# Max collision suffixes tried when on_conflict="suffix".
MAX_RENAME_RETRIES = 20


def sanitize_filename(name: str) -> str:
    """Replace reserved characters with '_' and trim surrounding whitespace."""
    return FILENAME_RESERVED_RE.sub("_", name).strip()


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _apply_mode(source: Path, tmp_name: str) -> None:
    """Give the temp file source's permission bits, or the umask default when source does not exist."""
    if source.exists():
        shutil.copymode(source, tmp_name)
    else:
        os.chmod(tmp_name, 0o666 & ~_current_umask())


class DirectoryHandle:
    """
    Read-write capability over the immediate .pdf children of one directory.

    Entry names must be plain basenames ending in .pdf; anything else, or any use
    after revoke(), raises PermissionError.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).resolve()
        self._revoked = False

    def __repr__(self) -> str:
        state = "revoked" if self._revoked else "granted"
        return f"DirectoryHandle({str(self.path)!r}, {state})"

    @property
    def revoked(self) -> bool:
        return self._revoked

    def revoke(self) -> None:
        self._revoked = True

    def _entry_path(self, name: str) -> Path:
        if self._revoked:
            raise PermissionError(errno.EACCES, "Write capability was revoked", str(self.path))
        if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
            raise PermissionError(errno.EACCES, f"Entry name outside granted directory: {name!r}")
        if not name.lower().endswith(".pdf"):
            raise PermissionError(errno.EACCES, f"Entry is not a PDF: {name!r}")
        return self.path / name

    def exists(self, name: str) -> bool:
        return self._entry_path(name).exists()

    def read_entry(self, name: str) -> bytes:
        return self._entry_path(name).read_bytes()

    def write_entry(self, name: str, content: bytes, *, mode_from: str | None = None) -> None:
        """
        Create or overwrite name with content (temp file + os.replace).

        Permission bits are copied from mode_from (the entry being renamed) or from an
        existing name; a brand new entry gets the default mode for the current umask.
        """
        target = self._entry_path(name)
        source = self._entry_path(mode_from) if mode_from else target
        fd, tmp_name = tempfile.mkstemp(dir=self.path, prefix=".invoice_renamer_", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            _apply_mode(source if source.exists() else target, tmp_name)
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def same_entry(self, a: str, b: str) -> bool:
        """True if both names resolve to one file (e.g. a case-only rename on a case-insensitive filesystem)."""
        if a == b:
            return True
        try:
            return self._entry_path(a).samefile(self._entry_path(b))
        except FileNotFoundError:
            return False

    def remove_entry(self, name: str) -> None:
        self._entry_path(name).unlink()

    def pdf_entries(self) -> list[str]:
        """Names of visible .pdf files directly inside the directory, sorted."""
        if self._revoked:
            raise PermissionError(errno.EACCES, "Write capability was revoked", str(self.path))
        return sorted(
            p.name
            for p in self.path.iterdir()
            if p.is_file() and p.suffix.lower() == ".pdf" and not p.name.startswith(".")
        )


def commit(handle: DirectoryHandle, old_name: str, new_name: str, content: bytes) -> None:
    """
    Write content under new_name, then remove old_name unless both names are the same entry.

    Raises PermissionError when the capability is revoked or insufficient and OSError
    for any other write/delete failure. If the write fails the old entry is untouched.
    """
    try:
        handle.write_entry(new_name, content, mode_from=old_name)
    except PermissionError:
        raise
    except OSError as e:
        if getattr(errno, "ENAMETOOLONG", None) is not None and e.errno == errno.ENAMETOOLONG:
            raise OSError(
                e.errno,
                f"Filename too long for filesystem: {new_name!r}. Use a shorter template.",
            ) from e
        raise
    if handle.same_entry(old_name, new_name):
        return
    try:
        handle.remove_entry(old_name)
    except FileNotFoundError:
        logger.warning("Old entry %s already gone after writing %s", old_name, new_name)
    except PermissionError:
        raise
    except OSError as e:
        raise OSError(
            e.errno,
            f"Wrote {new_name} but could not remove {old_name}: {e.strerror or e}",
        ) from e


def resolve_collision(handle: DirectoryHandle, old_name: str, new_name: str) -> str:
    """
    Return new_name, or new_name with _1, _2, ... before the suffix when a different
    entry already uses it.
    """
    if handle.same_entry(old_name, new_name) or not handle.exists(new_name):
        return new_name
    stem, suffix = new_name[:-4], new_name[-4:]
    for counter in range(1, MAX_RENAME_RETRIES + 1):
        candidate = f"{stem}_{counter}{suffix}"
        if handle.same_entry(old_name, candidate) or not handle.exists(candidate):
            return candidate
    raise OSError(
        errno.EEXIST,
        f"Could not rename {old_name}: target exists and collision suffix limit "
        f"({MAX_RENAME_RETRIES}) reached. Move or rename conflicting files and retry.",
    )
