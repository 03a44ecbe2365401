from __future__ import annotations

import errno
import os
import stat

import pytest

from invoice_renamer import rename_ops
from invoice_renamer.rename_ops import DirectoryHandle, commit, resolve_collision, sanitize_filename


def test_sanitize_replaces_reserved_characters() -> None:
    assert sanitize_filename("Invoice: Q1/2024?.pdf") == "Invoice_ Q1_2024_.pdf"
    assert sanitize_filename('a<b>c"d\\e|f*g') == "a_b_c_d_e_f_g"


def test_sanitize_trims_whitespace() -> None:
    assert sanitize_filename("  name  ") == "name"
    assert sanitize_filename("") == ""


def test_sanitize_is_idempotent() -> None:
    for s in ["Invoice: Q1/2024?.pdf", "  x ", "<>:\"/\\|?*", "plain", " a : b "]:
        once = sanitize_filename(s)
        assert sanitize_filename(once) == once


class RecordingHandle:
    def __init__(self, *, fail_write: bool = False) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_write = fail_write

    def write_entry(self, name: str, content: bytes, *, mode_from: str | None = None) -> None:
        self.calls.append(("write", name))
        if self.fail_write:
            raise OSError(errno.ENOSPC, "No space left on device")

    def remove_entry(self, name: str) -> None:
        self.calls.append(("remove", name))

    def same_entry(self, a: str, b: str) -> bool:
        return a == b


def test_commit_same_name_does_not_remove() -> None:
    handle = RecordingHandle()
    commit(handle, "a.pdf", "a.pdf", b"data")
    assert handle.calls == [("write", "a.pdf")]


def test_commit_writes_before_removing() -> None:
    handle = RecordingHandle()
    commit(handle, "old.pdf", "new.pdf", b"data")
    assert handle.calls == [("write", "new.pdf"), ("remove", "old.pdf")]


def test_commit_write_failure_keeps_old_entry() -> None:
    handle = RecordingHandle(fail_write=True)
    with pytest.raises(OSError):
        commit(handle, "old.pdf", "new.pdf", b"data")
    assert ("remove", "old.pdf") not in handle.calls


def test_directory_commit_renames_on_disk(tmp_path) -> None:
    (tmp_path / "scan.pdf").write_bytes(b"%PDF-1.4 original")
    handle = DirectoryHandle(tmp_path)

    commit(handle, "scan.pdf", "2024-01-05_Acme_42.5.pdf", b"%PDF-1.4 original")

    assert not (tmp_path / "scan.pdf").exists()
    assert (tmp_path / "2024-01-05_Acme_42.5.pdf").read_bytes() == b"%PDF-1.4 original"
    assert not any(p.name.endswith(".tmp") for p in tmp_path.iterdir())


def test_directory_commit_overwrites_existing(tmp_path) -> None:
    (tmp_path / "scan.pdf").write_bytes(b"new content")
    (tmp_path / "taken.pdf").write_bytes(b"old content")
    handle = DirectoryHandle(tmp_path)

    commit(handle, "scan.pdf", "taken.pdf", b"new content")

    assert (tmp_path / "taken.pdf").read_bytes() == b"new content"
    assert not (tmp_path / "scan.pdf").exists()


def test_revoked_handle_raises_permission_error(tmp_path) -> None:
    (tmp_path / "scan.pdf").write_bytes(b"x")
    handle = DirectoryHandle(tmp_path)
    handle.revoke()

    with pytest.raises(PermissionError):
        commit(handle, "scan.pdf", "new.pdf", b"x")
    assert (tmp_path / "scan.pdf").exists()


@pytest.mark.parametrize("name", ["../escape.pdf", "sub/inner.pdf", "notes.txt", ""])
def test_handle_rejects_names_outside_scope(tmp_path, name) -> None:
    handle = DirectoryHandle(tmp_path)
    with pytest.raises(PermissionError):
        handle.write_entry(name, b"x")


def test_pdf_entries_lists_visible_pdfs_only(tmp_path) -> None:
    (tmp_path / "b.PDF").write_bytes(b"x")
    (tmp_path / "a.pdf").write_bytes(b"x")
    (tmp_path / ".hidden.pdf").write_bytes(b"x")
    (tmp_path / "notes.txt").write_bytes(b"x")
    (tmp_path / "sub.pdf").mkdir()

    assert DirectoryHandle(tmp_path).pdf_entries() == ["a.pdf", "b.PDF"]


def test_resolve_collision_suffixes(tmp_path) -> None:
    (tmp_path / "doc.pdf").write_bytes(b"x")
    (tmp_path / "report.pdf").write_bytes(b"x")
    (tmp_path / "report_1.pdf").write_bytes(b"x")
    handle = DirectoryHandle(tmp_path)

    assert resolve_collision(handle, "doc.pdf", "report.pdf") == "report_2.pdf"
    assert resolve_collision(handle, "doc.pdf", "free.pdf") == "free.pdf"
    assert resolve_collision(handle, "report.pdf", "report.pdf") == "report.pdf"


def test_resolve_collision_gives_up(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(rename_ops, "MAX_RENAME_RETRIES", 2)
    for name in ("r.pdf", "r_1.pdf", "r_2.pdf"):
        (tmp_path / name).write_bytes(b"x")

    with pytest.raises(OSError) as excinfo:
        resolve_collision(DirectoryHandle(tmp_path), "doc.pdf", "r.pdf")
    assert excinfo.value.errno == errno.EEXIST


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_commit_keeps_permission_bits(tmp_path) -> None:
    old = tmp_path / "scan.pdf"
    old.write_bytes(b"x")
    old.chmod(0o644)

    commit(DirectoryHandle(tmp_path), "scan.pdf", "renamed.pdf", b"x")

    assert stat.S_IMODE((tmp_path / "renamed.pdf").stat().st_mode) == 0o644


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_new_entry_gets_umask_default_mode(tmp_path) -> None:
    mask = os.umask(0o022)
    try:
        DirectoryHandle(tmp_path).write_entry("fresh.pdf", b"x")
    finally:
        os.umask(mask)

    assert stat.S_IMODE((tmp_path / "fresh.pdf").stat().st_mode) == 0o644


def test_commit_case_only_rename_on_same_entry_keeps_file(monkeypatch, tmp_path) -> None:
    (tmp_path / "invoice.pdf").write_bytes(b"x")
    # Case-insensitive filesystems resolve both spellings to one file.
    monkeypatch.setattr(rename_ops.Path, "samefile", lambda self, other: True)

    commit(DirectoryHandle(tmp_path), "invoice.pdf", "Invoice.pdf", b"x")

    assert (tmp_path / "invoice.pdf").exists()


def test_same_entry_distinguishes_separate_files(tmp_path) -> None:
    (tmp_path / "a.pdf").write_bytes(b"x")
    (tmp_path / "b.pdf").write_bytes(b"x")
    handle = DirectoryHandle(tmp_path)

    assert handle.same_entry("a.pdf", "a.pdf")
    assert not handle.same_entry("a.pdf", "b.pdf")
    assert not handle.same_entry("a.pdf", "missing.pdf")
