"""ziggle entry point: render a template file to stdout."""
from __future__ import annotations
import argparse
import logging
import os
import sys
from typing import List, Optional, TextIO

from diagnostics import EXIT_FAILURE, EXIT_OK, TemplateError, UsageError, format_diagnostic
from render import render_file

PROG = "ziggle"
LOG_LEVEL_ENV = "ZIGGLE_LOG_LEVEL"
USAGE = f"Usage: {PROG} FILE"


def configure_logging() -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
        root.addHandler(handler)
    level_name = os.environ.get(LOG_LEVEL_ENV, "WARNING").upper()
    root.setLevel(getattr(logging, level_name, logging.WARNING))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        usage="%(prog)s FILE",
        description="Render a template with embedded {{ statements }}",
        add_help=False,
    )
    parser.add_argument("files", nargs="*", metavar="FILE", help="Template file to render")
    return parser


def parse_filename(parser: argparse.ArgumentParser, argv: List[str]) -> Optional[str]:
    # Options are rejected before argparse sees them so nothing touches the filesystem.
    for arg in argv:
        if arg.startswith("-"):
            raise UsageError(f"unknown cmdline option '{arg}'")
    args = parser.parse_args(argv)
    if not args.files:
        return None
    if len(args.files) != 1:
        raise UsageError("script cmdline args not implemented")
    return args.files[0]


def run_cli(
    argv: Optional[List[str]] = None,
    *,
    stdout=None,
    stderr: Optional[TextIO] = None,
) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    out = stdout if stdout is not None else sys.stdout.buffer
    err = stderr if stderr is not None else sys.stderr
    parser = build_parser()

    try:
        filename = parse_filename(parser, argv)
    except UsageError as error:
        print(format_diagnostic(PROG, error), file=err)
        return EXIT_FAILURE
    if filename is None:
        print(USAGE, file=err)
        return EXIT_FAILURE

    try:
        render_file(filename, out)
    except TemplateError as error:
        out.flush()
        print(format_diagnostic(filename, error), file=err)
        return EXIT_FAILURE
    out.flush()
    return EXIT_OK


def main() -> None:
    configure_logging()
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
