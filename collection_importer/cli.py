"""CLI entrypoint for collection-importer."""

from __future__ import annotations

import argparse
import json
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any, Sequence
from uuid import uuid4

import jsonschema

from core.errors import ImportErrorCode, ImportFailure
from core.models import ImportResult
from core.pipeline import ImportPipeline
from core.structured_logging import emit_json_event, error_fields
from fetcher.circuit import CircuitBreaker
from fetcher.http import PinnedFetcher
from parser.ics import IcsRecordParser
from storage.sqlite import SQLiteCollectionStore


# Package data, installed alongside this module.
SCHEMAS_DIR = resources.files("collection_importer") / "schemas"
SCHEMA_FILES = ("import_result.schema.json", "import_error.schema.json")

EXIT_CODES = {
    ImportErrorCode.INTERNAL: 1,
    ImportErrorCode.BAD_REQUEST: 2,
    ImportErrorCode.NOT_FOUND: 3,
    ImportErrorCode.FORBIDDEN: 4,
    ImportErrorCode.TIMEOUT: 5,
}

# One breaker per process for the whole class of external calendar URLs.
URL_IMPORT_BREAKER = CircuitBreaker(name="url-import")


def _emit_cli_event(
    event_type: str,
    *,
    run_id: str,
    command: str,
    level: str = "info",
    **payload: Any,
) -> str:
    """Emit one structured CLI event line with standard fields."""
    return emit_json_event(
        event_type,
        run_id=run_id,
        component="cli",
        level=level,
        command=command,
        **payload,
    )


@lru_cache(maxsize=None)
def _load_schema(name: str) -> dict[str, Any]:
    return json.loads((SCHEMAS_DIR / name).read_text(encoding="utf-8"))


def _validate_schema_file(path: Any) -> None:
    """Validate that a JSON schema file is well-formed and has required top-level keys."""
    data = json.loads(path.read_text(encoding="utf-8"))
    required_keys = {"$schema", "type", "properties", "required"}
    missing = required_keys.difference(data)
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ValueError(f"{path.name} missing required schema keys: {missing_str}")
    jsonschema.Draft202012Validator.check_schema(data)


def build_pipeline(db_path: str | Path, breaker: CircuitBreaker | None = None) -> ImportPipeline:
    """Wire the concrete collaborators around the shared breaker."""
    return ImportPipeline(
        parser=IcsRecordParser(),
        store=SQLiteCollectionStore(db_path),
        fetcher=PinnedFetcher(),
        breaker=breaker or URL_IMPORT_BREAKER,
    )


def _report(args: argparse.Namespace, result: ImportResult) -> int:
    """Validate the result against its contract, then emit it."""
    payload = result.model_dump(mode="json")
    try:
        jsonschema.validate(payload, _load_schema("import_result.schema.json"))
    except (OSError, ValueError, jsonschema.ValidationError, jsonschema.SchemaError) as exc:
        # The operation has committed; its outcome stands even if the check cannot run.
        _emit_cli_event(
            "cli_result_unvalidated",
            run_id=args.run_id,
            command=args.command,
            level="error",
            **error_fields(exc),
        )
    _emit_cli_event(
        f"cli_{args.command.replace('-', '_')}_completed",
        run_id=args.run_id,
        command=args.command,
        db=str(args.db),
        result=payload,
    )
    return 0


def _cmd_validate_schemas(args: argparse.Namespace) -> int:
    """Validate schema files for basic structural correctness."""
    paths = [SCHEMAS_DIR / name for name in SCHEMA_FILES]
    for path in paths:
        if not path.is_file():
            raise FileNotFoundError(f"Schema file not found: {path}")
        _validate_schema_file(path)
    _emit_cli_event(
        "cli_validate_schemas_completed",
        run_id=args.run_id,
        command="validate-schemas",
        schema_files=[str(path) for path in paths],
    )
    return 0


def _cmd_create_collection(args: argparse.Namespace) -> int:
    pipeline = build_pipeline(args.db)
    return _report(args, pipeline.create_collection(args.owner, args.name))


def _cmd_import_file(args: argparse.Namespace) -> int:
    """Import a local .ics file into an existing collection."""
    path = Path(args.file)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    content = path.read_text(encoding="utf-8", errors="replace")
    pipeline = build_pipeline(args.db)
    result = pipeline.import_into_collection(
        args.collection_id,
        content,
        remove_duplicates=args.remove_duplicates,
    )
    return _report(args, result)


def _cmd_import_url(args: argparse.Namespace) -> int:
    pipeline = build_pipeline(args.db)
    result = pipeline.import_from_url(
        args.url,
        owner_id=args.owner,
        name=args.name,
        remove_duplicates=args.remove_duplicates,
    )
    return _report(args, result)


def _cmd_refresh(args: argparse.Namespace) -> int:
    pipeline = build_pipeline(args.db)
    result = pipeline.refresh_from_url(
        args.collection_id,
        replace_all=args.replace_all,
        skip_duplicates=args.skip_duplicates,
    )
    return _report(args, result)


def _cmd_clean_duplicates(args: argparse.Namespace) -> int:
    pipeline = build_pipeline(args.db)
    return _report(args, pipeline.clean_duplicates(args.collection_id))


def build_parser() -> argparse.ArgumentParser:
    """Create argument parser for the collection-importer CLI."""
    parser = argparse.ArgumentParser(
        prog="collection-importer",
        description="Import and refresh calendars and task lists from external URLs",
    )
    parser.add_argument("--version", action="version", version="collection-importer 0.1.0")

    subparsers = parser.add_subparsers(dest="command")

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--db", default="collections.db", help="SQLite DB path")
        sub.add_argument("--run-id", help="Optional explicit run ID for logging")

    validate_parser = subparsers.add_parser(
        "validate-schemas",
        help="Validate JSON schemas used by the CLI output contract",
    )
    add_common(validate_parser)
    validate_parser.set_defaults(func=_cmd_validate_schemas)

    create_parser = subparsers.add_parser(
        "create-collection",
        help="Create an empty collection (quota-checked)",
    )
    create_parser.add_argument("--owner", required=True, help="Owner ID")
    create_parser.add_argument("--name", required=True, help="Collection name")
    add_common(create_parser)
    create_parser.set_defaults(func=_cmd_create_collection)

    import_file_parser = subparsers.add_parser(
        "import-file",
        help="Import a local .ics file into an existing collection",
    )
    import_file_parser.add_argument("collection_id", help="Target collection ID")
    import_file_parser.add_argument("file", help="Path to .ics file")
    import_file_parser.add_argument(
        "--remove-duplicates",
        action="store_true",
        help="Skip records that duplicate ones already in the collection",
    )
    add_common(import_file_parser)
    import_file_parser.set_defaults(func=_cmd_import_file)

    import_url_parser = subparsers.add_parser(
        "import-url",
        help="Fetch a calendar URL into a new collection",
    )
    import_url_parser.add_argument("url", help="http(s) URL of the calendar")
    import_url_parser.add_argument("--owner", required=True, help="Owner ID")
    import_url_parser.add_argument("--name", help="Collection name (default: dated name)")
    import_url_parser.add_argument(
        "--remove-duplicates",
        action="store_true",
        help="Drop duplicates within the fetched file",
    )
    add_common(import_url_parser)
    import_url_parser.set_defaults(func=_cmd_import_url)

    refresh_parser = subparsers.add_parser(
        "refresh",
        help="Re-fetch a collection's stored source URL",
    )
    refresh_parser.add_argument("collection_id", help="Collection ID")
    refresh_parser.add_argument(
        "--replace-all",
        action="store_true",
        help="Replace every existing record with the fetched ones",
    )
    refresh_parser.add_argument(
        "--no-skip-duplicates",
        dest="skip_duplicates",
        action="store_false",
        help="Insert fetched records even when they match existing ones",
    )
    add_common(refresh_parser)
    refresh_parser.set_defaults(func=_cmd_refresh)

    clean_parser = subparsers.add_parser(
        "clean-duplicates",
        help="Delete duplicate records in a collection, keeping the first",
    )
    clean_parser.add_argument("collection_id", help="Collection ID")
    add_common(clean_parser)
    clean_parser.set_defaults(func=_cmd_clean_duplicates)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Execute CLI and return process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    args.run_id = args.run_id or str(uuid4())
    try:
        return int(args.func(args))
    except ImportFailure as exc:
        _emit_cli_event(
            "cli_error",
            run_id=args.run_id,
            command=str(args.command),
            level="warning",
            **error_fields(exc),
        )
        return EXIT_CODES[exc.code]
    except Exception as exc:
        _emit_cli_event(
            "cli_error",
            run_id=args.run_id,
            command=str(getattr(args, "command", "unknown")),
            level="error",
            **error_fields(exc),
        )
        return 1


def cli() -> None:
    """Console-script entrypoint."""
    raise SystemExit(main())


if __name__ == "__main__":
    raise SystemExit(main())
