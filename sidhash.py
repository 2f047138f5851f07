#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Paul Tiffany
# Project: sidhash - Precompute string IDs in source files

"""
sidhash - Turn SID("string") markers into precomputed hash constants.

Rewrites every ``SID( "literal" )`` in a source file into
``0xHHHHHHHH /* "literal" */`` where the constant is the djb2 hash of the
literal's raw bytes. The same hash is available at run time through ``sid()``
so identifiers computed on the fly match the baked-in constants.
"""

import argparse
import fnmatch
import re
import sys
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

__version__ = "1.0.0"
__license__ = "MIT"

# --- Configuration ---
MAX_SIZE = 10 * 1024 * 1024  # 10MB
MAX_LITERAL = 4096
SIDIGNORE = ".sidignore"

TRIGGER = b"SID("
DJB2_SEED = 5381
HASH_MASK = 0xFFFFFFFF

SOURCE_EXTS = {
    ".c",
    ".h",
    ".cc",
    ".cpp",
    ".cxx",
    ".hh",
    ".hpp",
    ".hxx",
    ".inl",
    ".m",
    ".mm",
    ".glsl",
    ".hlsl",
}

DEFAULT_SKIP = [
    r"(^|/)\.(git|hg|svn)($|/)",
    r"(^|/)__pycache__($|/)",
    r"(^|/)(\.?venv|env)($|/)",
    r"(^|/)node_modules($|/)",
    r"(^|/)(build|dist|out)($|/)",
    r"(^|/)" + re.escape(SIDIGNORE) + r"($|/)?",
]

# C isspace / isalnum in the "C" locale
_SPACE = frozenset(b" \t\n\r\x0b\x0c")
_ALNUM = frozenset(b"0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz")
_QUOTE = ord('"')
_BACKSLASH = ord("\\")
_CLOSE_PAREN = ord(")")

HashFunc = Callable[[bytes], int]

# --- Errors ---


class SidError(Exception):
    """Base exception for sidhash operations."""


class InputUnreadableError(SidError):
    """Raised when an input file cannot be read."""


class MalformedInvocationError(SidError):
    """Raised when a SID( trigger is not followed by a valid invocation."""

    def __init__(
        self,
        reason: str,
        offset: int,
        path: Optional[str] = None,
        line: Optional[int] = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.offset = offset
        self.path = path
        self.line = line

    def __str__(self) -> str:
        where = self.path or "<buffer>"
        if self.line is not None:
            where = f"{where}:{self.line}"
        return f"{where}: {self.reason}"


# --- Hashing ---


def djb2(data: bytes, start: int = 0, end: Optional[int] = None) -> int:
    """Hash data[start:end] with djb2, wrapping at 32 bits."""
    h = DJB2_SEED
    for c in memoryview(data)[start:end].cast("B"):
        h = ((h << 5) + h + c) & HASH_MASK
    return h


def sid(value: Union[str, bytes], encoding: str = "utf-8") -> int:
    """Run-time string ID; matches the constants written by the preprocessor."""
    if isinstance(value, str):
        value = value.encode(encoding)
    return djb2(value)


# --- Scanner ---


class State(Enum):
    """Lexer states for trigger matching and literal extraction."""

    SCANNING = "scanning"
    MATCHING_TRIGGER = "matching_trigger"
    IN_LITERAL = "in_literal"
    IN_LITERAL_ESCAPE = "in_literal_escape"
    EXPECTING_CLOSE_PAREN = "expecting_close_paren"


def skip_whitespace(data: bytes, pos: int, out: bytearray) -> int:
    """Copy whitespace at data[pos:] into out and return the new position."""
    end = pos
    size = len(data)
    while end < size and data[end] in _SPACE:
        end += 1
    out += data[pos:end]
    return end


def next_trigger(data: bytes, pos: int, out: bytearray) -> tuple[bool, int]:
    """
    Copy bytes into out until the next SID( trigger.

    Returns (True, position after the trigger) on a match and
    (False, len(data)) once the input is exhausted. Matching is only
    attempted where an alphanumeric run begins, so identifiers that merely
    end in SID are copied through untouched.
    """
    size = len(data)
    state = State.SCANNING
    while True:
        if state is State.SCANNING:
            pos = skip_whitespace(data, pos, out)
            if pos >= size:
                return False, pos
            if data[pos] not in _ALNUM:
                out.append(data[pos])
                pos += 1
                continue
            state = State.MATCHING_TRIGGER
        else:
            if data.startswith(TRIGGER, pos):
                return True, pos + len(TRIGGER)
            end = pos
            while end < size and data[end] in _ALNUM:
                end += 1
            out += data[pos:end]
            pos = end
            state = State.SCANNING


def extract_literal(
    data: bytes, pos: int, max_literal: int = MAX_LITERAL
) -> tuple[int, int, int]:
    """
    Parse ``"literal" )`` starting just after a trigger.

    Returns (start, end, pos) where data[start:end] is the raw literal between
    the quotes, escape pairs included, and pos sits just past the closing
    parenthesis. Whitespace inside the invocation is consumed, not copied.
    """
    size = len(data)
    while pos < size and data[pos] in _SPACE:
        pos += 1
    if pos >= size or data[pos] != _QUOTE:
        raise MalformedInvocationError(
            "only string literals can be placed inside of the SID macro", pos
        )

    start = pos + 1
    end = start
    pos = start
    state = State.IN_LITERAL
    while state is not State.EXPECTING_CLOSE_PAREN:
        if pos >= size:
            raise MalformedInvocationError("unterminated string literal in SID macro", start - 1)
        if pos - start > max_literal:
            raise MalformedInvocationError(
                f"string literal in SID macro exceeds {max_literal} bytes", start - 1
            )
        c = data[pos]
        if state is State.IN_LITERAL_ESCAPE:
            state = State.IN_LITERAL
        elif c == _BACKSLASH:
            state = State.IN_LITERAL_ESCAPE
        elif c == _QUOTE:
            end = pos
            state = State.EXPECTING_CLOSE_PAREN
        pos += 1

    while pos < size and data[pos] in _SPACE:
        pos += 1
    if pos >= size or data[pos] != _CLOSE_PAREN:
        literal = data[start:end].decode("utf-8", errors="replace")
        raise MalformedInvocationError(
            f'must have ) immediately after the SID macro (look near the string "{literal}")',
            pos,
        )
    return start, end, pos + 1


def format_replacement(literal: bytes, value: int) -> bytes:
    """Render the constant that replaces an invocation; 19 + len(literal) bytes."""
    return b'0x%08x /* "%b" */' % (value & HASH_MASK, literal)


# --- Rewriting ---


def rewrite(
    data: bytes, hash_func: HashFunc = djb2, max_literal: int = MAX_LITERAL
) -> tuple[bytes, int]:
    """Rewrite every SID invocation in data. Returns (output, replacements)."""
    out = bytearray()
    pos = 0
    count = 0
    while True:
        matched, pos = next_trigger(data, pos, out)
        if not matched:
            break
        try:
            start, end, pos = extract_literal(data, pos, max_literal)
        except MalformedInvocationError as e:
            e.line = data.count(b"\n", 0, e.offset) + 1
            raise
        literal = data[start:end]
        out += format_replacement(literal, hash_func(literal))
        count += 1
    return bytes(out), count


def write_output(path: Path, data: bytes) -> None:
    """Write the rewritten buffer to path."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except (OSError, PermissionError) as e:
        raise SidError(f"Error writing {path}: {e}") from e


def preprocess_file(
    path: Union[str, Path],
    out_path: Union[str, Path, None] = None,
    hash_func: HashFunc = djb2,
    max_literal: int = MAX_LITERAL,
    dry_run: bool = False,
) -> int:
    """
    Rewrite one file and return the number of replacements.

    out_path defaults to path (in-place). Nothing is written when the file
    holds no SID invocations, when dry_run is set, or when an error is raised.
    """
    path = Path(path)
    out_path = Path(out_path) if out_path is not None else path
    try:
        data = path.read_bytes()
    except (OSError, PermissionError) as e:
        raise InputUnreadableError(f"could not open input file {path}: {e}") from e

    try:
        output, count = rewrite(data, hash_func, max_literal)
    except MalformedInvocationError as e:
        e.path = str(path)
        raise

    if count and not dry_run:
        write_output(out_path, output)
    return count


def process(
    path: Union[str, Path],
    out_path: Union[str, Path, None] = None,
    hash_func: HashFunc = djb2,
) -> bool:
    """Rewrite one file, reporting failures on stderr. True if it was modified."""
    try:
        return preprocess_file(path, out_path, hash_func) > 0
    except SidError as e:
        report(e)
        return False


def report(error: SidError) -> None:
    print(f"SID ERROR: {error}. Skipping this file.", file=sys.stderr)


# --- File discovery ---


def is_source_file(path: Path, exts: set[str]) -> bool:
    """Check if a walked file should be preprocessed."""
    if not path.is_file() or path.suffix.lower() not in exts:
        return False
    try:
        size = path.stat().st_size
        if size > MAX_SIZE:
            return False
        with path.open("rb") as f:
            chunk = f.read(min(1024, size))
        return b"\x00" not in chunk
    except (OSError, PermissionError):
        return False


def _translate_globs_to_regex(globs: list[str]) -> list[str]:
    regex_list: list[str] = []
    for glob_pattern in globs:
        line = glob_pattern.strip()
        if line and not line.startswith("#"):
            regex_list.append(fnmatch.translate(line))
    return regex_list


def read_sidignore(root: Path) -> tuple[list[str], list[str]]:
    """Return (positive_globs, negative_globs) from .sidignore."""
    pos: list[str] = []
    neg: list[str] = []
    path = root / SIDIGNORE
    if not path.is_file():
        return pos, neg
    try:
        for raw in path.read_text(encoding="utf-8", errors="ignore").splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("!"):
                neg.append(line[1:].strip())
            else:
                pos.append(line)
    except (OSError, PermissionError):
        print(f"Warning: Could not read {SIDIGNORE}", file=sys.stderr)
    return pos, neg


def compile_patterns(patterns: Optional[list[str]]) -> list[re.Pattern[str]]:
    """Compile regex patterns with error handling."""
    compiled = []
    for pattern in patterns or []:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise SidError(f"Invalid regex '{pattern}': {e}") from e
    return compiled


def matches_any(text: str, patterns: list[re.Pattern[str]]) -> bool:
    return any(p.search(text) for p in patterns)


def collect_files(
    root: Path,
    exts: set[str],
    inc_patterns: list[re.Pattern[str]],
    exc_patterns: list[re.Pattern[str]],
    ign_pos_patterns: list[re.Pattern[str]],
    ign_neg_patterns: list[re.Pattern[str]],
) -> list[str]:
    """Collect root-relative source paths under root that pass every filter."""
    if not root.is_dir():
        raise SidError(f"Directory not found: {root}")

    files = []
    try:
        for path in root.rglob("*"):
            if not path.is_file():
                continue
            rel_path = path.relative_to(root).as_posix()

            # .sidignore negations re-include paths excluded by any other rule
            excluded = matches_any(rel_path, exc_patterns) or matches_any(
                rel_path, ign_pos_patterns
            )
            if excluded and not matches_any(rel_path, ign_neg_patterns):
                continue
            if inc_patterns and not matches_any(rel_path, inc_patterns):
                continue
            if is_source_file(path, exts):
                files.append(rel_path)
    except (OSError, PermissionError) as e:
        raise SidError(f"Error traversing {root}: {e}") from e
    return sorted(files)


def gather_targets(args: argparse.Namespace) -> list[Path]:
    """Expand the CLI path arguments into the list of files to preprocess."""
    exts = {e if e.startswith(".") else f".{e}" for e in args.ext} if args.ext else SOURCE_EXTS
    inc = compile_patterns(args.include)
    exc = compile_patterns((args.exclude or []) + DEFAULT_SKIP)

    targets: list[Path] = []
    for name in args.paths:
        path = Path(name)
        if path.is_file():
            targets.append(path)
        elif path.is_dir():
            pos_globs, neg_globs = read_sidignore(path)
            ign_pos = compile_patterns(_translate_globs_to_regex(pos_globs))
            ign_neg = compile_patterns(_translate_globs_to_regex(neg_globs))
            rel_files = collect_files(path, {e.lower() for e in exts}, inc, exc, ign_pos, ign_neg)
            targets.extend(path / rel for rel in rel_files)
        else:
            raise SidError(f"'{name}' is not a file or directory")
    return targets


# --- CLI and Main Execution ---


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        description='Replace SID("string") markers with precomputed hash constants'
    )
    parser.add_argument(
        "paths", nargs="*", default=["."], help="Files or directories to preprocess (default: .)"
    )
    parser.add_argument("-o", "--out", help="Output file (only with a single input file)")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Write nothing; exit 1 if any file still contains SID invocations",
    )
    parser.add_argument(
        "--ext", action="append", help="Source extension to scan in directories (repeatable)"
    )
    parser.add_argument("--include", action="append", help="Extra include regex (repeatable)")
    parser.add_argument("--exclude", action="append", help="Extra exclude regex (repeatable)")
    parser.add_argument(
        "--max-literal",
        type=int,
        default=MAX_LITERAL,
        help=f"Longest accepted string literal in bytes (default: {MAX_LITERAL})",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Only print the summary")
    parser.add_argument("--hash", metavar="TEXT", help="Print the string ID of TEXT and exit")
    parser.add_argument("--version", action="version", version=f"sidhash {__version__}")
    parser.add_argument("--about", action="store_true", help="Show project info and exit")
    return parser


def main() -> int:  # noqa: PLR0911
    """Run the main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.about:
        print(f"sidhash {__version__} ({__license__})\ndjb2 string IDs, seed {DJB2_SEED}")
        return 0

    if args.hash is not None:
        print(f"0x{sid(args.hash):08x}")
        return 0

    try:
        targets = gather_targets(args)
        if args.out and (len(targets) != 1 or not Path(args.paths[0]).is_file()):
            print("Error: --out requires exactly one input file", file=sys.stderr)
            return 1
        if not targets:
            print("No source files found matching criteria.", file=sys.stderr)
            return 0

        modified = replaced = failed = 0
        for path in targets:
            try:
                count = preprocess_file(
                    path, args.out, max_literal=args.max_literal, dry_run=args.check
                )
            except SidError as e:
                report(e)
                failed += 1
                continue
            if count:
                modified += 1
                replaced += count
                if not args.quiet:
                    print(f"  {'would rewrite' if args.check else 'rewrote'} {path} ({count} SID)")

        if args.check:
            if modified:
                print(f"✗ {modified} file(s) contain SID invocations")
            else:
                print(f"✓ No SID invocations in {len(targets)} file(s)")
        else:
            print(f"✓ Rewrote {modified} file(s), {replaced} SID invocation(s)")
        return 1 if failed or (args.check and modified) else 0

    except SidError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nCancelled by user", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 1


def cli_entrypoint() -> None:
    """Console entry point (kept tiny so tests can patch sys.exit)."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entrypoint()
