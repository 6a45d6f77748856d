"""Command-line interface for splitting documents and running pipeline jobs.

Provides subcommands for computing page ranges, splitting a local PDF,
running the execution reconciler or a confidence recompute once, and
serving the HTTP API.
"""

import argparse
import json
import sys
from pathlib import Path

from src.errors import PipelineError
from src.main import serve
from src.pipeline.services import build_services
from src.splitting.pdf_splitter import PDFSplitter
from src.splitting.ranges import PageRange, compute_ranges
from src.utils.config import load_config
from src.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def _parse_pages(value: str) -> list[int]:
    """Parse a comma-separated page list such as ``1,3,4,7``."""
    try:
        return [int(p) for p in value.replace(" ", "").split(",") if p]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid page list: {value}") from exc


def print_ranges(pages: list[int], total_pages: int) -> list[PageRange]:
    """Compute and print page ranges.

    Args:
        pages: First page of every sub-document.
        total_pages: Page count of the source document.

    Returns:
        The computed ranges.
    """
    ranges = compute_ranges(pages, total_pages)
    print(json.dumps([[r.start, r.end] for r in ranges]))
    return ranges


def split_file(
    input_pdf: Path,
    pages: list[int],
    output_dir: Path,
    verbose: bool = False,
) -> list[Path]:
    """Split a local PDF into one file per sub-document.

    Args:
        input_pdf: Source PDF (or scanned image).
        pages: First page of every sub-document; empty keeps the file whole.
        output_dir: Directory for the output files.
        verbose: Whether to print per-file progress.

    Returns:
        Paths of the written files, in range order.
    """
    splitter = PDFSplitter()
    source = splitter.ensure_pdf(input_pdf.read_bytes())
    ranges = compute_ranges(pages, splitter.get_page_count(source))

    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for i, (page_range, fragment) in enumerate(zip(ranges, splitter.split(source, ranges)), 1):
        out_path = output_dir / f"{input_pdf.stem}-part-{i:02d}.pdf"
        out_path.write_bytes(fragment)
        written.append(out_path)
        if verbose:
            print(f"Wrote [{i}/{len(ranges)}] pages {page_range.start}-{page_range.end}: {out_path}")

    logger.info("Split %s into %d files in %s", input_pdf.name, len(written), output_dir)
    return written


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="Document Splitting Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=None, help="Configuration YAML file"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ranges_parser = subparsers.add_parser("ranges", help="Compute page ranges")
    ranges_parser.add_argument("pages", type=_parse_pages, help="First pages, e.g. 1,3,4,7")
    ranges_parser.add_argument("total_pages", type=int, help="Total page count")

    split_parser = subparsers.add_parser("split", help="Split a local PDF")
    split_parser.add_argument("file", type=Path, help="PDF or scanned image to split")
    split_parser.add_argument(
        "-p",
        "--pages",
        type=_parse_pages,
        default=[],
        help="First pages of each sub-document (default: keep whole)",
    )
    split_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("split"),
        help="Output directory (default: split)",
    )
    split_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers.add_parser("reconcile", help="Run the execution reconciler once")
    subparsers.add_parser("recompute", help="Recompute confidence for every record")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config.log_level)

    try:
        if args.command == "ranges":
            print_ranges(args.pages, args.total_pages)
        elif args.command == "split":
            if not args.file.exists():
                print(f"Error: {args.file} does not exist", file=sys.stderr)
                sys.exit(1)
            split_file(args.file, args.pages, args.output, args.verbose)
        elif args.command == "reconcile":
            summary = build_services(config).reconciler.run_once()
            print(json.dumps(summary.to_dict(), indent=2))
        elif args.command == "recompute":
            counts = build_services(config).records.recompute_all()
            print(json.dumps(counts, indent=2))
        elif args.command == "serve":
            serve(config, args.host, args.port)
        else:
            parser.print_help()
            sys.exit(0)
    except PipelineError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
