from __future__ import annotations

import argparse
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Any

import yaml

from carlog_import.config.loader import (
    DEFAULT_CONFIG_PATH,
    CarlogConfig,
    ConfigError,
    load_config,
    resolve_dsn,
)
from carlog_import.excel.coercion import coerce_text
from carlog_import.excel.parser import parse_workbook
from carlog_import.excel.writer import export_filename, export_records
from carlog_import.logging.error_log import ErrorLogBuffer, ErrorRecord
from carlog_import.logging.init import log_summary, setup_logging
from carlog_import.models.record import parse_timestamp
from carlog_import.services.bulk_update import RecordPatch, apply_patches, coerce_patch_value
from carlog_import.services.orchestrator import import_workbook
from carlog_import.services.reconcile import current_year_suffix, next_car_number
from carlog_import.services.summary import render_patch_summary_line, render_summary_line
from carlog_import.store import InMemoryRecordStore, JsonFileRecordStore, RecordStore, StoreError

"""CLI entrypoint.

Commands:
- import <file.xlsx>       parse + reconcile, prints the SUMMARY line
- export [--output PATH]   write all records to a workbook
- inspect <file.xlsx>      show detected sheet / header row / mapping / sample rows
- next-number              print the next business key for manual entry
- apply-patches <file.yml> save field edits with conflict detection

Exit codes: 0 success, 2 partial failure, 1 fatal.
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

PATCHES_SHEET = "<PATCHES>"


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="carlog_import", description="CAR log Excel import / export tool")
    p.add_argument("--config", type=Path, default=None, help=f"Config file (default: {DEFAULT_CONFIG_PATH})")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="Import a CAR log workbook")
    imp.add_argument("file", type=Path)
    imp.add_argument("--year", default=None, help="Two-digit year for generated CAR numbers")

    exp = sub.add_parser("export", help="Export all records to a workbook")
    exp.add_argument("--output", type=Path, default=None)

    ins = sub.add_parser("inspect", help="Print detected sheet, headers and first rows")
    ins.add_argument("file", type=Path)

    nxt = sub.add_parser("next-number", help="Print the next Internal CAR #")
    nxt.add_argument("--year", default=None)

    pat = sub.add_parser("apply-patches", help="Save field edits from a YAML file")
    pat.add_argument("file", type=Path)
    return p.parse_args(argv)


def _load(config_path: Path | None) -> CarlogConfig:
    if config_path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return CarlogConfig()
        config_path = DEFAULT_CONFIG_PATH
    return load_config(config_path)


def _open_store(cfg: CarlogConfig) -> RecordStore:
    backend = cfg.store.backend
    if backend == "memory":
        return InMemoryRecordStore()
    if backend == "postgres":
        from carlog_import.store.postgres import PostgresRecordStore

        store = PostgresRecordStore.from_dsn(resolve_dsn(cfg.database), maxconn=cfg.max_workers)
        store.ensure_schema()
        return store
    return JsonFileRecordStore(Path(cfg.store.path))


def _cmd_import(args: argparse.Namespace, cfg: CarlogConfig, store: RecordStore) -> int:
    if not args.file.exists():
        raise FileNotFoundError(f"file not found: {args.file}")
    run = import_workbook(args.file, store, cfg, year=args.year)
    for message in run.parse.errors:
        print(f"  parse_error: {message}")
    if run.error_log_path is not None:
        print(f"  error_log: {run.error_log_path}")
    log_summary(render_summary_line(run.summary, run.dropped)[len("SUMMARY "):])
    return EXIT_PARTIAL_FAILURE if run.has_failures else EXIT_SUCCESS_ALL


def _cmd_export(args: argparse.Namespace, cfg: CarlogConfig, store: RecordStore) -> int:
    output = args.output or Path(export_filename(date.today()))
    records = store.list_records()
    output.write_bytes(export_records(records))
    print(f"exported {len(records)} record(s) to {output}")
    return EXIT_SUCCESS_ALL


def _cmd_inspect(args: argparse.Namespace, cfg: CarlogConfig) -> int:
    parsed = parse_workbook(
        args.file,
        sheet_match=cfg.sheet_match,
        header_keywords=cfg.header_keywords,
        keep_na_strings=cfg.keep_na_strings,
    )
    print(f"FILE: {args.file.name}")
    if parsed.errors:
        for message in parsed.errors:
            print(f"  error: {message}")
        return EXIT_PARTIAL_FAILURE
    header_row = parsed.header_row + 1 if parsed.header_row is not None else "-"
    print(f"  SHEET: {parsed.sheet_name} header_row={header_row} recognized={parsed.headers_recognized}")
    if parsed.header_map is not None:
        for raw, field_name in parsed.header_map.mapping.items():
            print(f"    {coerce_text(raw)!r} -> {field_name}")
        if parsed.header_map.unmatched:
            print(f"    unmatched={parsed.header_map.unmatched}")
    for diagnostic in parsed.diagnostics:
        print(f"  {diagnostic.kind}: {diagnostic.message}")
    print(f"  rows={len(parsed.rows)} dropped={parsed.dropped_rows}")
    for row in parsed.rows[:3]:
        print("    sample_row=", row)
    return EXIT_SUCCESS_ALL


def _cmd_next_number(args: argparse.Namespace, cfg: CarlogConfig, store: RecordStore) -> int:
    year = args.year or current_year_suffix(datetime.now(cfg.zone))
    print(next_car_number(store.list_records(), year))
    return EXIT_SUCCESS_ALL


def _read_patches(path: Path) -> list[RecordPatch]:
    """Patch file: a list (or ``patches:`` list) of ``{id, changes, updatedAt}``."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or []
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid patch file: {e}") from e
    if isinstance(data, dict):
        data = data.get("patches") or []
    if not isinstance(data, list):
        raise ConfigError("invalid patch file: expected a list of patches")
    patches: list[RecordPatch] = []
    for item in data:
        if not isinstance(item, dict) or "id" not in item:
            raise ConfigError(f"invalid patch entry: {item!r}")
        try:
            changes: dict[str, Any] = {
                name: coerce_patch_value(name, value) for name, value in (item.get("changes") or {}).items()
            }
            expected = parse_timestamp(item.get("updatedAt"))
        except ValueError as e:
            raise ConfigError(f"invalid patch for {item['id']}: {e}") from e
        patches.append(RecordPatch(id=str(item["id"]), changes=changes, expected_updated_at=expected))
    return patches


def _cmd_apply_patches(args: argparse.Namespace, cfg: CarlogConfig, store: RecordStore) -> int:
    patches = _read_patches(args.file)
    summary = apply_patches(store, patches)
    error_log = ErrorLogBuffer()
    for index, result in enumerate(summary.results):
        if result.success:
            continue
        error_type = "CONFLICT" if result.conflict else "STORE_ERROR"
        if result.error == "Record not found":
            error_type = "NOT_FOUND"
        print(f"  {result.id}: {result.error}")
        error_log.append(ErrorRecord.create(args.file.name, PATCHES_SHEET, index, error_type, result.error or ""))
    error_log.flush()
    log_summary(render_patch_summary_line(summary)[len("SUMMARY "):])
    return EXIT_PARTIAL_FAILURE if summary.failed else EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    # argv=[] must not fall back to sys.argv (pytest arguments would leak in)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    logger = setup_logging(debug=args.debug)
    logger.debug("debug mode enabled")

    try:
        cfg = _load(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    if args.command == "inspect":
        if not args.file.exists():
            logger.error(f"file not found: {args.file}")
            return EXIT_FATAL
        return _cmd_inspect(args, cfg)

    handlers = {
        "import": _cmd_import,
        "export": _cmd_export,
        "next-number": _cmd_next_number,
        "apply-patches": _cmd_apply_patches,
    }
    try:
        store = _open_store(cfg)
    except (StoreError, ConfigError) as e:
        logger.error(f"store: {e}")
        return EXIT_FATAL
    try:
        with store:
            return handlers[args.command](args, cfg, store)
    except (StoreError, ConfigError, OSError) as e:
        logger.error(f"{args.command}: {e}")
        return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
