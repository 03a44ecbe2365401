from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from .logging_utils import setup_logging
from .models import FileStatus, Provider, RenameConfig, TrackedFile, build_config_from_flat_dict
from .rename_ops import DirectoryHandle
from .renamer import BatchRenamer, BatchSummary
from .template import PLACEHOLDERS

logger = logging.getLogger(__name__)


def _load_config_file(path: str | Path) -> dict:
    """Load JSON or YAML config file. Returns a dict (empty on error or unknown format)."""
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"Error: config file not found: {p}")
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise SystemExit(f"Error: could not read config file {p}: {exc}") from exc
    suf = p.suffix.lower()
    data: object = {}
    if suf == ".json":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SystemExit(f"Error: invalid JSON in config file {p}: {exc}") from exc
    elif suf in (".yaml", ".yml"):
        try:
            import yaml
        except ImportError as exc:
            raise SystemExit("Error: YAML config needs PyYAML. Install with: pip install -e '.[yaml]'") from exc
        try:
            data = yaml.safe_load(raw) or {}
        except yaml.YAMLError as exc:
            raise SystemExit(f"Error: invalid YAML in config file {p}: {exc}") from exc
    else:
        logger.warning("Unknown config file format %s; ignoring", p)
    if not isinstance(data, dict):
        raise SystemExit(f"Error: config file {p} must contain a mapping of option names to values")
    return data


def _add_input_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--dir",
        dest="directory",
        default=None,
        metavar="DIR",
        help="Directory whose PDFs are renamed in place.",
    )
    p.add_argument(
        "--file",
        dest="files",
        action="append",
        default=None,
        metavar="PATH",
        help="PDF file to rename (can be repeated). Used instead of --dir.",
    )


def _add_naming_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--template",
        dest="template",
        default=None,
        metavar="TEMPLATE",
        help="Filename template. Placeholders: " + ", ".join("{" + k + "}" for k in PLACEHOLDERS)
        + ". Default: {date}_{merchant}_{amount}",
    )
    p.add_argument(
        "--no-sanitize",
        dest="sanitize",
        action="store_false",
        default=None,
        help='Keep characters < > : " / \\ | ? * in generated names (default: replace with _).',
    )
    p.add_argument(
        "--on-conflict",
        dest="on_conflict",
        default=None,
        choices=["overwrite", "suffix"],
        help="When the new name is taken: overwrite it (default) or append _1, _2, ...",
    )


def _add_provider_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--provider",
        dest="provider",
        default=None,
        choices=[v.value for v in Provider],
        help="Vision model provider (default: glm). API key from GLM_API_KEY, GEMINI_API_KEY or QWEN_API_KEY.",
    )
    p.add_argument(
        "--language",
        dest="language",
        default=None,
        choices=["en", "zh"],
        help="Prompt language and placeholder for unrecognized fields (default: en).",
    )
    p.add_argument(
        "--llm-url",
        dest="llm_base_url",
        default=None,
        metavar="URL",
        help="Override the provider endpoint (default: env INVOICE_RENAMER_LLM_URL or the provider's URL).",
    )
    p.add_argument(
        "--llm-model",
        dest="llm_model",
        default=None,
        metavar="MODEL",
        help="Override the model name (default: env INVOICE_RENAMER_LLM_MODEL or the provider's model).",
    )
    p.add_argument(
        "--llm-timeout",
        dest="llm_timeout_s",
        type=float,
        default=None,
        metavar="SEC",
        help="Request timeout in seconds (default: env INVOICE_RENAMER_LLM_TIMEOUT or 60).",
    )


def _add_mode_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        help="Do not touch the source files; only print the proposed names.",
    )
    p.add_argument(
        "--output-dir",
        dest="output_dir",
        default=None,
        metavar="DIR",
        help="Leave sources untouched and write renamed copies to DIR.",
    )
    p.add_argument(
        "--passes",
        dest="passes",
        type=int,
        default=1,
        metavar="N",
        help="Re-run the batch up to N times to retry failed files (default 1).",
    )


def _add_output_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--rename-log",
        dest="rename_log_path",
        default=None,
        metavar="FILE",
        help="Append old_path\\tnew_path to FILE after each rename.",
    )
    p.add_argument(
        "--export-metadata",
        dest="export_metadata_path",
        default=None,
        metavar="FILE",
        help="Write extracted fields per renamed file to CSV or JSON (.csv/.json).",
    )
    p.add_argument(
        "--config",
        dest="config",
        default=None,
        metavar="FILE",
        help="Load defaults from JSON or YAML file; CLI options override.",
    )
    p.add_argument(
        "--quiet",
        dest="quiet",
        action="store_true",
        help="Less output (log level WARNING). Overridden by --verbose.",
    )
    p.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        help="More output (log level DEBUG). Overrides --quiet.",
    )
    p.add_argument(
        "--log-file",
        dest="log_file",
        default=None,
        metavar="PATH",
        help="Log file path (default: env INVOICE_RENAMER_LOG_FILE or invoice_renamer.log)",
    )
    p.add_argument(
        "--log-level",
        dest="log_level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: env INVOICE_RENAMER_LOG_LEVEL or INFO). Overridden by --verbose/--quiet.",
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Rename PDF invoices from fields a vision model reads off page 1.")
    _add_input_args(p.add_argument_group("Input"))
    _add_naming_args(p.add_argument_group("Naming"))
    _add_provider_args(p.add_argument_group("Provider"))
    _add_mode_args(p.add_argument_group("Mode"))
    _add_output_args(p.add_argument_group("Output and logging"))
    return p


def _resolve_log_config(args: argparse.Namespace) -> tuple[str, int]:
    """Resolve log file path and log level from args and env. Returns (log_file_path, log_level)."""
    log_file = args.log_file or os.environ.get("INVOICE_RENAMER_LOG_FILE") or "invoice_renamer.log"
    if args.verbose:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.WARNING
    elif args.log_level:
        log_level = getattr(logging, args.log_level)
    else:
        env_level = os.environ.get("INVOICE_RENAMER_LOG_LEVEL", "INFO").upper()
        log_level = getattr(logging, env_level, logging.INFO)
    return (log_file, log_level)


_CONFIG_OPTIONS = (
    "template",
    "sanitize",
    "provider",
    "language",
    "on_conflict",
    "llm_base_url",
    "llm_model",
    "llm_timeout_s",
    "rename_log_path",
    "export_metadata_path",
)


def _build_config_from_args(args: argparse.Namespace, file_defaults: dict) -> RenameConfig:
    """CLI value -> config file value -> RenameConfig default."""
    data = dict(file_defaults)
    for name in _CONFIG_OPTIONS:
        value = getattr(args, name, None)
        if value is not None:
            data[name] = value
    try:
        return build_config_from_flat_dict(data)
    except (TypeError, ValueError) as exc:
        raise SystemExit(f"Error: {exc}") from exc


def _ingest(renamer: BatchRenamer, args: argparse.Namespace, *, writable: bool) -> None:
    """Track --dir or --file inputs; write capability only when files are renamed in place."""
    if args.files:
        paths = [Path(f) for f in args.files]
        missing = [p for p in paths if not p.is_file()]
        if missing:
            raise SystemExit(f"Error: --file must be an existing file: {missing[0]}")
        if not writable:
            renamer.ingest_paths(paths)
            return
        handles: dict[Path, DirectoryHandle] = {}
        entries = []
        for path in paths:
            parent = path.resolve().parent
            handle = handles.setdefault(parent, DirectoryHandle(parent))
            entries.append((path.name, path.read_bytes(), handle))
        renamer.ingest(entries)
        return

    directory = (args.directory or "").strip()
    if not directory:
        raise SystemExit("Error: --dir must be non-empty, or use --file PATH.")
    renamer.ingest_directory(directory, writable=writable)


def _print_status(index: int, tracked: TrackedFile) -> None:
    if tracked.status == FileStatus.COMPLETED:
        print(f"[{index + 1}] {tracked.original_name} -> {tracked.new_name}")
    elif tracked.status == FileStatus.FAILED:
        print(f"[{index + 1}] {tracked.original_name}: FAILED ({tracked.error})", file=sys.stderr)


def _run_passes(renamer: BatchRenamer, passes: int) -> BatchSummary:
    summary = renamer.run()
    for n in range(2, max(1, passes) + 1):
        if summary.failed == 0:
            break
        logger.info("Pass %s/%s: retrying %s failed file(s)", n, passes, summary.failed)
        summary = renamer.run()
    return summary


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    log_file, log_level = _resolve_log_config(args)
    setup_logging(log_file=log_file, level=log_level)

    if args.directory is None and not args.files:
        raise SystemExit("Error: an input is required. Use --dir DIR or --file PATH.")

    file_defaults = _load_config_file(args.config) if args.config else {}
    config = _build_config_from_args(args, file_defaults)

    writable = not args.dry_run and not args.output_dir
    renamer = BatchRenamer(config, on_update=_print_status)
    try:
        _ingest(renamer, args, writable=writable)
    except (FileNotFoundError, NotADirectoryError, OSError, ValueError) as exc:
        raise SystemExit(str(exc)) from exc

    if not renamer.files:
        print("No PDFs found.", file=sys.stderr)
        return

    summary = _run_passes(renamer, args.passes)

    if args.output_dir:
        try:
            written = renamer.export_renamed(args.output_dir)
        except OSError as exc:
            raise SystemExit(f"Error: could not export to {args.output_dir}: {exc}") from exc
        print(f"Exported {len(written)} file(s) to {args.output_dir}.", file=sys.stderr)

    print(
        f"Processed {summary.total}, completed {summary.completed}, "
        f"skipped {summary.skipped}, failed {summary.failed}.",
        file=sys.stderr,
    )
    if not summary.ok:
        sys.exit(1)
