"""Command-line interface for invoice field extraction.

Subcommands:

* ``analyze``: run the analysis pipeline on OCR result JSON files.
* ``extract``: OCR page images (or folders of them) and analyze each page.

Results are printed as JSON or written to a file. ``--tax-id`` and
``--accounts`` supply the account the tax ID is checked against.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import yaml

from invoice_ocr.ocr.document_processor import DocumentProcessor, load_image
from invoice_ocr.ocr.tesseract_engine import ocr_result_from_dict
from invoice_ocr.pipeline import DocumentPipeline
from invoice_ocr.utils.config import AppConfig, load_config
from invoice_ocr.utils.logger import get_logger, setup_logging
from invoice_ocr.validation.rules_engine import Account, AccountContext

logger = get_logger(__name__)

_SUPPORTED_EXTENSIONS = ("*.png", "*.jpg", "*.jpeg", "*.tiff", "*.tif", "*.bmp")


def _find_images(input_dir: Path) -> list[Path]:
    """Find all supported image files in a directory.

    Args:
        input_dir: Directory to scan.

    Returns:
        Sorted list of image paths.
    """
    files: list[Path] = []
    for ext in _SUPPORTED_EXTENSIONS:
        files.extend(input_dir.glob(ext))
        files.extend(input_dir.glob(ext.upper()))
    return sorted(set(files))


def _expand_inputs(paths: list[Path]) -> list[Path]:
    files: list[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(_find_images(path))
        else:
            files.append(path)
    return files


def load_account_context(
    accounts_path: Path | None = None,
    tax_id: str | None = None,
    username: str | None = None,
) -> AccountContext | None:
    """Build the account context from an accounts file and/or a tax ID.

    The accounts file is YAML::

        active: alice
        accounts:
          - username: alice
            tax_id: "12345678"

    ``tax_id`` overrides the active account's tax ID; alone it defines a
    single anonymous account.

    Returns:
        The context, or ``None`` when neither source is given.

    Raises:
        ValueError: If the file names an unknown active account.
    """
    known: list[Account] = []
    active_name = username
    if accounts_path is not None:
        with open(accounts_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        known = [
            Account(username=str(a["username"]), tax_id=str(a["tax_id"]))
            for a in data.get("accounts") or []
        ]
        active_name = active_name or data.get("active")

    active = next((a for a in known if a.username == active_name), None)
    if tax_id is not None:
        active = Account(username=active_name or "current", tax_id=tax_id)
    elif active is None and active_name is not None:
        raise ValueError(f"Unknown active account: {active_name}")
    if active is None:
        return None
    return AccountContext(active=active, known_accounts=known)


def analyze_files(
    files: list[Path], config: AppConfig, account: AccountContext | None = None
) -> list[dict[str, Any]]:
    """Run the pipeline on OCR result JSON files.

    Args:
        files: JSON files in the OCR provider's ``{text, confidence, lines}``
            shape.
        config: Application configuration.
        account: Account the tax ID is checked against.

    Returns:
        One result dictionary per file.
    """
    pipeline = DocumentPipeline(config)
    results: list[dict[str, Any]] = []
    for path in files:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        ocr_result = ocr_result_from_dict(data, config.ocr.low_confidence_threshold)
        analysis = pipeline.analyze(ocr_result, account=account)
        results.append({"filename": path.name, **analysis.to_dict()})
    return results


def extract_images(
    files: list[Path],
    config: AppConfig,
    account: AccountContext | None = None,
    verbose: bool = False,
) -> list[dict[str, Any]]:
    """OCR and analyze page images in order.

    Args:
        files: Image files, one page each.
        config: Application configuration.
        account: Account the tax ID is checked against.
        verbose: Whether to print per-page progress to stderr.

    Returns:
        One result dictionary per image; failed pages carry ``error``.
    """
    processor = DocumentProcessor(config)
    images = [load_image(path) for path in files]

    def report(current: int, total: int) -> None:
        if verbose:
            name = files[current - 1].name
            print(f"Processed [{current}/{total}]: {name}", file=sys.stderr)

    pages = processor.process_batch(images, on_progress=report, account=account)
    return [
        {"filename": path.name, **page.to_dict()} for path, page in zip(files, pages)
    ]


def _write_output(results: list[dict[str, Any]], output: Path | None) -> None:
    payload: Any = results[0] if len(results) == 1 else results
    output_str = json.dumps(payload, indent=2, ensure_ascii=False)
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(output_str, encoding="utf-8")
        print(f"Output written to {output}", file=sys.stderr)
    else:
        print(output_str)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-o", "--output", type=Path, help="Output JSON file")
    parser.add_argument(
        "--tax-id", help="Tax ID of the active account, for the tax-ID check"
    )
    parser.add_argument("--username", help="Active account name")
    parser.add_argument(
        "--accounts", type=Path, help="YAML file listing known accounts"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Configuration file (default: configs/config.yaml)",
    )


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="Invoice field extraction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    analyze_parser = subparsers.add_parser(
        "analyze", help="Analyze OCR result JSON files"
    )
    analyze_parser.add_argument("files", type=Path, nargs="+", help="OCR JSON files")
    _add_common_arguments(analyze_parser)

    extract_parser = subparsers.add_parser(
        "extract", help="OCR and analyze page images"
    )
    extract_parser.add_argument(
        "inputs", type=Path, nargs="+", help="Image files or directories"
    )
    extract_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Verbose output"
    )
    _add_common_arguments(extract_parser)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(0)

    config = load_config(args.config)
    setup_logging(config.log_level, stream=sys.stderr)

    if args.accounts is not None and not args.accounts.exists():
        print(f"Error: {args.accounts} does not exist", file=sys.stderr)
        sys.exit(1)
    try:
        account = load_account_context(args.accounts, args.tax_id, args.username)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.command == "analyze":
        missing = [p for p in args.files if not p.exists()]
        if missing:
            print(f"Error: {missing[0]} does not exist", file=sys.stderr)
            sys.exit(1)
        try:
            results = analyze_files(args.files, config, account)
        except json.JSONDecodeError as exc:
            print(f"Error: invalid OCR JSON: {exc}", file=sys.stderr)
            sys.exit(1)
    else:
        files = _expand_inputs(args.inputs)
        missing = [p for p in files if not p.exists()]
        if missing or not files:
            target = missing[0] if missing else args.inputs[0]
            print(f"Error: no readable images at {target}", file=sys.stderr)
            sys.exit(1)
        try:
            results = extract_images(files, config, account, args.verbose)
        except ValueError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)

    _write_output(results, args.output)


if __name__ == "__main__":
    main()
