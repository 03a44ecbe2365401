from __future__ import annotations

import csv
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from .llm import PLACEHOLDERS, client_for_provider
from .models import ExtractedRecord, FileStatus, RenameConfig, TrackedFile
from .pdf_render import rasterize_first_page
from .rename_ops import DirectoryHandle, commit, resolve_collision, sanitize_filename
from .template import ensure_pdf_suffix, render

logger = logging.getLogger(__name__)

# (name, content, write handle or None)
IngestEntry = tuple[str, bytes, "DirectoryHandle | None"]

UpdateCallback = Callable[[int, TrackedFile], None]

EXPORT_FIELDNAMES = [
    "original_name",
    "new_name",
    "date",
    "merchant",
    "invoice",
    "month",
    "amount",
    "currency",
]


@dataclass(frozen=True)
class BatchSummary:
    total: int
    completed: int
    failed: int
    skipped: int

    @property
    def ok(self) -> bool:
        return self.failed == 0


def _is_pdf_name(name: str) -> bool:
    return bool(name) and name.lower().endswith(".pdf")


def _write_json_or_csv(path: Path, rows: list[dict], csv_fieldnames: list[str]) -> None:
    """Write rows to path as CSV (.csv suffix) or JSON. Creates parent dirs."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".csv":
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=csv_fieldnames)
            writer.writeheader()
            writer.writerows(rows)
    else:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(rows, f, ensure_ascii=False, indent=2)


def _append_rename_log(log_path: str | Path, old: str, new: str) -> None:
    p = Path(log_path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "a", encoding="utf-8") as f:
        f.write(f"{old}\t{new}\n")


class BatchRenamer:
    """
    Owns the tracked files and drives each one through
    rasterize -> extract -> template -> sanitize -> commit, one file at a time.

    A file that fails is marked FAILED with a message and the batch moves on; a
    completed file is never reprocessed, so calling run() again retries only the
    failures. on_update(index, tracked_file) is called after every status change.
    """

    def __init__(self, config: RenameConfig, *, on_update: UpdateCallback | None = None) -> None:
        self.config = config
        self.on_update = on_update
        self._files: list[TrackedFile] = []
        self._running = False

    @property
    def files(self) -> list[TrackedFile]:
        """Snapshot of the tracked files in ingestion order."""
        return list(self._files)

    @property
    def is_running(self) -> bool:
        return self._running

    # --- ingestion ---

    def ingest(self, entries: Iterable[IngestEntry], *, append: bool = False) -> int:
        """
        Track (name, content, handle) entries; names not ending in .pdf are ignored.
        Replaces the current list unless append=True, in which case names already
        tracked are skipped. Returns the number of files added.
        """
        self._ensure_idle("ingest")
        files = list(self._files) if append else []
        known = {f.original_name for f in files}
        added = 0
        for name, content, handle in entries:
            if not _is_pdf_name(name):
                logger.debug("Ignoring non-PDF entry %s", name)
                continue
            if name in known:
                logger.info("Skipping duplicate %s", name)
                continue
            files.append(TrackedFile(original_name=name, content=content, write_handle=handle))
            known.add(name)
            added += 1
        self._files = files
        return added

    def ingest_directory(
        self,
        directory: str | Path,
        *,
        writable: bool = True,
        append: bool = False,
    ) -> DirectoryHandle | None:
        """
        Track the immediate PDF children of directory. With writable=True the files carry
        a write capability over the directory (returned); otherwise they are read-only.
        """
        dir_str = str(directory).strip()
        if not dir_str:
            raise ValueError("Directory path must be non-empty.")
        path = Path(directory)
        if not path.exists():
            raise FileNotFoundError(f"Directory does not exist: {path}")
        if not path.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        handle = DirectoryHandle(path)
        granted = handle if writable else None
        entries = [(name, handle.read_entry(name), granted) for name in handle.pdf_entries()]
        added = self.ingest(entries, append=append)
        if not entries:
            logger.info("No PDFs found in %s", handle.path)
        else:
            logger.info("Tracking %s PDF(s) from %s (%s)", added, handle.path, "read-write" if writable else "read-only")
        return granted

    def ingest_paths(self, paths: Iterable[str | Path], *, append: bool = False) -> int:
        """Track files read-only (no write capability); renamed content is exported instead."""
        entries: list[IngestEntry] = []
        for p in paths:
            path = Path(p)
            if not path.is_file():
                raise FileNotFoundError(f"Not an existing file: {path}")
            entries.append((path.name, path.read_bytes(), None))
        return self.ingest(entries, append=append)

    def clear(self) -> None:
        self._ensure_idle("clear")
        self._files = []

    def _ensure_idle(self, action: str) -> None:
        if self._running:
            raise RuntimeError(f"Cannot {action} while a batch is running")

    # --- processing ---

    def _notify(self, index: int, tracked: TrackedFile) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(index, tracked)
        except Exception:
            logger.exception("Status callback failed for %s", tracked.original_name)

    def _target_name(self, extracted: ExtractedRecord) -> str:
        fallback = PLACEHOLDERS.get(self.config.language, PLACEHOLDERS["en"])
        base = render(self.config.template, extracted, fallback=fallback)
        if self.config.sanitize:
            base = sanitize_filename(base)
        if not base.strip():
            base = fallback
        return ensure_pdf_suffix(base)

    def _claimed_by_other(self, tracked: TrackedFile, name: str) -> bool:
        """
        True if name is the original name, or the committed new name, of another file
        tracked in the same directory. Writing over it would destroy that invoice.
        """
        key = name.casefold()
        for other in self._files:
            if other is tracked or other.write_handle is None:
                continue
            if other.write_handle.path != tracked.write_handle.path:
                continue
            if other.original_name.casefold() == key:
                return True
            if other.status == FileStatus.COMPLETED and other.new_name.casefold() == key:
                return True
        return False

    def _process_one_file(self, tracked: TrackedFile) -> str | None:
        """Run one file through the pipeline. Returns None on success, else the error message."""
        try:
            image = rasterize_first_page(tracked.content)
        except Exception as exc:
            logger.exception("Failed to render %s: %s", tracked.original_name, exc)
            return f"decode failed: {exc}"

        try:
            extracted = client_for_provider(self.config).extract(image)
        except Exception as exc:
            logger.exception("Failed to extract fields from %s: %s", tracked.original_name, exc)
            return f"extraction failed: {exc}"

        try:
            new_name = self._target_name(extracted)
            handle = tracked.write_handle
            if handle is not None:
                if self.config.on_conflict == "suffix" or self._claimed_by_other(tracked, new_name):
                    new_name = resolve_collision(handle, tracked.original_name, new_name)
                commit(handle, tracked.original_name, new_name, tracked.content)
        except Exception as exc:
            logger.exception("Failed to write %s: %s", tracked.original_name, exc)
            return f"write failed: {exc}"

        tracked.mark_completed(extracted, new_name)
        return None

    def _apply_post_rename_actions(self, tracked: TrackedFile, export_rows: list[dict]) -> None:
        """Rename log and metadata export row after a completed file."""
        renamed = tracked.write_handle is not None and tracked.new_name != tracked.original_name
        if self.config.rename_log_path and renamed:
            try:
                _append_rename_log(
                    self.config.rename_log_path,
                    str(tracked.write_handle.path / tracked.original_name),
                    str(tracked.write_handle.path / tracked.new_name),
                )
            except OSError as exc:
                logger.warning("Could not write rename log %s: %s", self.config.rename_log_path, exc)
        if self.config.export_metadata_path and tracked.extracted is not None:
            row = {"original_name": tracked.original_name, "new_name": tracked.new_name}
            row.update(tracked.extracted.as_dict())
            export_rows.append(row)

    def run(self) -> BatchSummary:
        """Process every non-completed file once, in ingestion order."""
        self._ensure_idle("run")
        self._running = True
        files = self._files
        completed = failed = skipped = 0
        export_rows: list[dict] = []
        try:
            for i, tracked in enumerate(files):
                if tracked.status == FileStatus.COMPLETED:
                    skipped += 1
                    continue
                if tracked.status == FileStatus.PROCESSING:
                    logger.info("Retrying %s left in processing by an earlier run", tracked.original_name)

                logger.info("Processing %s/%s: %s", i + 1, len(files), tracked.original_name)
                tracked.mark_processing()
                self._notify(i, tracked)

                error = self._process_one_file(tracked)
                if error is None:
                    completed += 1
                    if tracked.write_handle is not None and tracked.new_name != tracked.original_name:
                        logger.info("Renamed '%s' to '%s'", tracked.original_name, tracked.new_name)
                    else:
                        logger.info("Named '%s' as '%s'", tracked.original_name, tracked.new_name)
                    self._apply_post_rename_actions(tracked, export_rows)
                else:
                    failed += 1
                    tracked.mark_failed(error)
                self._notify(i, tracked)
        finally:
            self._running = False

        if self.config.export_metadata_path and export_rows:
            try:
                _write_json_or_csv(Path(self.config.export_metadata_path), export_rows, EXPORT_FIELDNAMES)
            except OSError as exc:
                logger.error("Could not write metadata export %s: %s", self.config.export_metadata_path, exc)

        summary = BatchSummary(total=len(files), completed=completed, failed=failed, skipped=skipped)
        logger.info(
            "Summary: %s file(s), %s completed, %s skipped, %s failed",
            summary.total,
            summary.completed,
            summary.skipped,
            summary.failed,
        )
        return summary

    # --- export fallback ---

    def export_renamed(self, output_dir: str | Path) -> list[Path]:
        """
        Write each completed file's content under its new name into output_dir.
        Used when no write capability was granted for the source files.
        """
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        written: list[Path] = []
        for tracked in self._files:
            if tracked.status != FileStatus.COMPLETED:
                continue
            target = out / Path(tracked.new_name).name
            target.write_bytes(tracked.content)
            written.append(target)
            logger.info("Exported '%s' as '%s'", tracked.original_name, target)
        return written
