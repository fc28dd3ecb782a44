#!/usr/bin/env python3
"""
Whence - include-origin attribution for C headers

High-level goals:
- Consume the flat cursor stream a C front end (libclang) produces for one
  translation unit
- Rebuild the virtual #include stack from path comparisons alone
- Attribute every top-level declaration to the physical file that produced it,
  with the shallowest #include chain that reached that file
- Emit structured JSON so binding generators can group output per header

Single module on purpose, like the rest of our C tooling.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict, replace
from functools import partial
from pathlib import Path, PurePath
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Literal, Optional, Tuple, Union
import argparse
import json
import os
import shlex
import sys

import yaml
from clang import cindex as clang_cindex


# ============================================================
# ========================= ERRORS ===========================
# ============================================================

class WhenceError(Exception):
    """Base class for everything whence raises on purpose."""


class OriginIntegrityError(WhenceError):
    """
    The cursor stream broke the ordering contract the tracker relies on.

    This is never a data problem in the header being scanned: it means the front
    end handed us cursors out of document order (or the tracker has a bug), so the
    scan of the translation unit is aborted rather than mis-attributing bindings.
    """

    def __init__(self, message: str, path: Optional[Path] = None, context: str = "") -> None:
        super().__init__(message)
        self.path = path
        self.context = context


class FrontEndError(WhenceError):
    """The C front end could not produce a cursor stream."""


class ConfigError(WhenceError):
    pass


# ============================================================
# ================== POSITIONS & ORIGINS =====================
# ============================================================

@dataclass(frozen=True, eq=False)
class Position:
    """
    A point in source (file, line, column) plus a lazily resolved origin chain.

    `whence` is a bound query into the tracker's origin table, not the tracker
    itself. It is evaluated on every call so a Position created mid-scan reports
    the final, shallowest origin once the scan is over.
    """
    path: Optional[Path]
    line: int
    column: int
    whence: Optional[Callable[[Path], "Origin"]] = field(default=None, repr=False)

    def _resolve(self) -> Optional["Origin"]:
        if self.path is None:
            return None
        if self.whence is None:
            return Origin.TOP
        return self.whence(self.path)

    def origin(self) -> Optional["Position"]:
        """
        Position of the #include that brought this file in, NO_POSITION for the
        root file, None for NO_POSITION itself (end of the chain).
        """
        resolved = self._resolve()
        return None if resolved is None else resolved.position

    def depth(self) -> int:
        """Nesting level of this position's file: root content is 1."""
        resolved = self._resolve()
        return 0 if resolved is None else resolved.depth + 1

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Position):
            return NotImplemented
        if self is other:
            return True
        return (
            self.path == other.path
            and self.line == other.line
            and self.column == other.column
            and self.origin() == other.origin()
        )

    def __hash__(self) -> int:
        # origin is left out: it can still change while a scan is running
        return hash((self.path, self.line, self.column))

    def __str__(self) -> str:
        if self.path is None:
            return "<no position>"
        return f"{self.path}:{self.line}:{self.column}"


NO_POSITION = Position(path=None, line=0, column=0)


@dataclass(frozen=True)
class Origin:
    """
    Shallowest known inclusion context of a file: the depth of the #include
    directive (number of files open when it was seen) and its position.
    """
    depth: int
    position: Position

    TOP: ClassVar["Origin"]

    def deeper_than(self, other: "Origin") -> bool:
        return self.depth >= other.depth

    def __str__(self) -> str:
        return f"{self.position}@{self.depth}"


Origin.TOP = Origin(depth=0, position=NO_POSITION)


def origin_chain(position: Position) -> List[Position]:
    """
    Walk origin() links from `position` up to the root.
    The result holds the #include positions, innermost first; NO_POSITION is not
    included.
    """
    chain: List[Position] = []
    current = position.origin()
    while current is not None and current.path is not None:
        chain.append(current)
        current = current.origin()
    return chain


# ============================================================
# ================== FRONT-END CURSORS =======================
# ============================================================

CursorKind = Literal["declaration", "inclusion_directive", "other"]


@dataclass(frozen=True)
class SourceLocation:
    file: Optional[Path]  # None for built-ins and macro-synthesized constructs
    line: int
    column: int


@dataclass(frozen=True)
class Cursor:
    """
    One node of the front end's traversal.
    For inclusion directives `spelling` is the include target exactly as written
    ("depth1.h", "CoreFoundation/CFBase.h"); for declarations it is the name.
    """
    kind: CursorKind
    spelling: str = ""
    location: Optional[SourceLocation] = None
    native: Any = field(default=None, repr=False, compare=False)

    @property
    def is_declaration(self) -> bool:
        return self.kind == "declaration"

    @property
    def is_inclusion(self) -> bool:
        return self.kind == "inclusion_directive"


# ============================================================
# ===================== CONFIGURATION ========================
# ============================================================

PathMatchingMode = Literal["auto", "plain", "framework"]
_PATH_MATCHING_MODES = ("auto", "plain", "framework")
_TRUTHY = {"1", "true", "yes", "on"}


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _to_arg_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    raise ConfigError(f"clang_args must be a string or a list, got {type(value).__name__}")


@dataclass
class TrackerConfig:
    """
    Knobs for one PositionTracker. Passed in at construction so two trackers in
    the same process never share debug state.

    Example:
        config = TrackerConfig(debug=True, path_matching="framework")
        config = TrackerConfig.from_env()
    """
    debug: bool = False
    path_matching: PathMatchingMode = "auto"
    clang_args: List[str] = field(default_factory=list)  # appended to the front-end defaults

    def __post_init__(self) -> None:
        if self.path_matching not in _PATH_MATCHING_MODES:
            raise ConfigError(
                f"unknown path matching mode '{self.path_matching}', "
                f"expected one of {list(_PATH_MATCHING_MODES)}"
            )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "TrackerConfig":
        """
        WHENCE_DEBUG, WHENCE_PATH_MATCHING and WHENCE_CLANG_ARGS override the
        defaults.
        """
        env = os.environ if environ is None else environ
        return cls(
            debug=_to_bool(env.get("WHENCE_DEBUG", "")),
            path_matching=env.get("WHENCE_PATH_MATCHING", "auto").strip().lower() or "auto",
            clang_args=_to_arg_list(env.get("WHENCE_CLANG_ARGS")),
        )


def load_config_from_yaml(path: str) -> TrackerConfig:
    """
    Load a TrackerConfig from a YAML mapping with the same keys as the dataclass.

    A missing or unreadable file only warns and falls back to the defaults;
    malformed content raises ConfigError.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle)
    except FileNotFoundError:
        sys.stderr.write(f"[whence] Config file not found: {path}\n")
        return TrackerConfig()
    except OSError as exc:
        sys.stderr.write(f"[whence] Could not read config file {path}: {exc}\n")
        return TrackerConfig()
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc

    if raw is None:
        return TrackerConfig()
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    known = {"debug", "path_matching", "clang_args"}
    unknown = sorted(str(key) for key in raw if key not in known)
    if unknown:
        sys.stderr.write(f"[whence] Ignoring unknown config key(s) in {path}: {unknown}\n")

    return TrackerConfig(
        debug=_to_bool(raw.get("debug", False)),
        path_matching=str(raw.get("path_matching", "auto")).strip().lower(),
        clang_args=_to_arg_list(raw.get("clang_args")),
    )


# ============================================================
# ===================== PATH MATCHING ========================
# ============================================================

def _path_ends_with(path: PurePath, tail: PurePath) -> bool:
    if tail.is_absolute():
        return path == tail
    count = len(tail.parts)
    if count == 0 or count > len(path.parts):
        return False
    return path.parts[-count:] == tail.parts


class PlainSuffixMatcher:
    """A resolved path matches a spelling when its trailing components equal it."""
    name = "plain"

    def matches(self, path: Path, spelling: str) -> bool:
        return _path_ends_with(PurePath(path), PurePath(spelling))


class FrameworkAliasMatcher(PlainSuffixMatcher):
    """
    Also accepts macOS framework spellings: `#include <CoreFoundation/CFBase.h>`
    resolves to `.../CoreFoundation.framework/Headers/CFBase.h`, one directory
    deeper than the spelling and with the framework name turned into a bundle.
    """
    name = "framework"

    def matches(self, path: Path, spelling: str) -> bool:
        if super().matches(path, spelling):
            return True
        target = PurePath(spelling)
        if target.is_absolute() or len(target.parts) < 2:
            return False
        return (
            _path_ends_with(PurePath(path), PurePath(*target.parts[1:]))
            and f"{target.parts[0]}.framework" in str(path)
        )


PathMatcher = Union[PlainSuffixMatcher, FrameworkAliasMatcher]


def matcher_for(config: TrackerConfig, platform: Optional[str] = None) -> PathMatcher:
    mode = config.path_matching
    if mode == "auto":
        mode = "framework" if (platform or sys.platform) == "darwin" else "plain"
    if mode == "framework":
        return FrameworkAliasMatcher()
    return PlainSuffixMatcher()


# ============================================================
# ==================== POSITION TRACKER ======================
# ============================================================

def _lookup_origin(origins: Dict[Path, Origin], path: Path) -> Origin:
    return origins.get(path, Origin.TOP)


@dataclass
class TrackerStats:
    cursors: int = 0
    inclusions_opened: int = 0
    inclusions_rescued: int = 0   # resolved through the real-path table
    inclusions_dropped: int = 0   # no cursor and no known real path
    circular_inclusions: int = 0
    stack_rewinds: int = 0


class PositionTracker:
    """
    Turns the flat cursor stream of one translation unit into per-file
    depth/origin attribution.

    The front end never says "entered file" or "left file". Pushes are inferred
    when the first cursor after an #include comes from a file matching the
    include's spelling; pops when a cursor comes from a file further down the
    stack. Every #include in a file precedes the declarations it introduces, so
    the first declaration ends the preprocessing phase.
    """

    def __init__(self, config: Optional[TrackerConfig] = None) -> None:
        self.config = config or TrackerConfig()
        self.matcher = matcher_for(self.config)
        # included path -> shallowest known include directive
        self._origins: Dict[Path, Origin] = {}
        # spelling from the include directive -> path resolved by the front end
        self._real_paths: Dict[str, Path] = {}
        # open files, innermost last
        self._stack: List[Path] = []
        # the latest include directive, waiting for its file to show up
        self._pending: Optional[Origin] = None
        self._expected_file: Optional[str] = None
        self._preprocessing = False
        self.stats = TrackerStats()

    # ---------------- diagnostics ----------------

    def _debug(self, msg: Union[str, Callable[[], str]]) -> None:
        if not self.config.debug:
            return
        text = msg() if callable(msg) else msg
        for line in text.rstrip("\n").splitlines():
            sys.stderr.write(f"[whence] {line}\n")

    def _format_stack(self) -> str:
        lines = [f"New include: {self._expected_file}"]
        for index, path in enumerate(self._stack):
            lines.append(" " * index + str(path))
        return "\n".join(lines)

    def _format_origins(self) -> str:
        lines = ["Current origins table:"]
        for path, origin in self._origins.items():
            lines.append(f"{path} -> {origin}")
        return "\n".join(lines)

    # ---------------- read-only views ----------------

    def origin_of(self, path: Path) -> Optional[Origin]:
        return self._origins.get(path)

    def origins(self) -> Dict[Path, Origin]:
        return dict(self._origins)

    def stack(self) -> Tuple[Path, ...]:
        return tuple(self._stack)

    # ---------------- scan protocol ----------------

    def start(self, root: Union[str, Path]) -> None:
        self._preprocessing = True
        self._stack = []
        self._origins = {}
        self._real_paths = {}
        self._pending = Origin.TOP
        self._expected_file = str(root)
        self.stats = TrackerStats()

    def _merge(self, path: Path, origin: Origin) -> int:
        """Shallowest wins: an existing entry is only replaced by a strictly shallower one."""
        existing = self._origins.get(path)
        if existing is not None:
            if origin.deeper_than(existing):
                self._debug(lambda: f"Ignore {path} from {origin}, deeper than existing {existing}")
                return existing.depth
            self._debug(lambda: f"Update {path} origin to {origin} from {existing}")
        else:
            self._debug(lambda: f"Set {path} origin to {origin}")
        self._origins[path] = origin
        return origin.depth

    def _reconcile_stack(self, current: Path) -> None:
        """Make `current` the top of the stack, resolving the pending include first."""
        index = self._stack.index(current) if current in self._stack else -1
        pending = self._pending
        if pending is not None and self.matcher.matches(current, self._expected_file or ""):
            if index == -1:
                self._stack.append(current)
                self._real_paths[self._expected_file] = current
                self._merge(current, pending)
                self.stats.inclusions_opened += 1
            else:
                # Re-entered while still open. Whatever it brings in now is the
                # same and deeper than before, so nothing is recorded; the stack
                # gets fixed once the parser walks back up.
                self.stats.circular_inclusions += 1
                self._debug("Circular inclusion detected")
                self._debug(self._format_stack)
                self._debug(self._format_origins)
                recorded = self._origins.get(current)
                if recorded is None or recorded.depth != index:
                    raise OriginIntegrityError(
                        f"circular inclusion of {current}: recorded depth "
                        f"{None if recorded is None else recorded.depth} does not match "
                        f"stack position {index}",
                        path=current,
                        context=f"#include \"{self._expected_file}\" at {pending.position}",
                    )
        elif pending is not None:
            # The included file produced no cursor at all and control went
            # straight back to the includer.
            self._debug(f"Expecting {self._expected_file}, but get {current}")
            real_path = self._real_paths.get(self._expected_file or "")
            if real_path is not None:
                self._merge(real_path, pending)
                self.stats.inclusions_rescued += 1
            else:
                self._debug(f"Don't know the real path for include file: {self._expected_file}")
                self.stats.inclusions_dropped += 1
        self._pending = None

        if 0 <= index < len(self._stack) - 1:
            del self._stack[index + 1:]
            self.stats.stack_rewinds += 1
            self._debug(f"Roll back stack to {current}")
            self._debug(self._format_stack)

    def track(self, cursor: Cursor) -> int:
        """
        Feed the next cursor of the translation unit; returns its depth.
        Declarations get the depth of their file (root content is 1), other
        cursors the number of files currently open.
        """
        self.stats.cursors += 1
        loc = cursor.location
        if loc is None:
            return 0
        current = loc.file
        if current is None:
            # built-in macro or other synthesized construct
            if self._stack:
                raise OriginIntegrityError(
                    f"built-in cursor '{cursor.spelling}' seen while {self._stack[-1]} is open",
                    path=self._stack[-1],
                    context=f"{cursor.kind} '{cursor.spelling}'",
                )
            return 0

        if cursor.is_declaration:
            if self._preprocessing and not self._origins:
                # no #include anywhere, this is the root file
                self._merge(current, Origin.TOP)
                self._pending = None
                self._preprocessing = False
                return 1
            if self._pending is not None:
                self._reconcile_stack(current)
            if self._preprocessing:
                self._debug(self._format_origins)
                self._preprocessing = False
            origin = self._origins.get(current)
            if origin is None:
                raise OriginIntegrityError(
                    f"Cannot find origin for {current}",
                    path=current,
                    context=f"declaration '{cursor.spelling}' at line {loc.line}, column {loc.column}",
                )
            return origin.depth + 1

        self._reconcile_stack(current)

        if cursor.is_inclusion:
            self._pending = Origin(depth=len(self._stack), position=self.to_pos(cursor))
            self._expected_file = cursor.spelling
            self._debug(self._format_stack)
        return len(self._stack)

    def to_pos(self, cursor: Cursor) -> Position:
        loc = cursor.location
        if loc is None or loc.file is None:
            return NO_POSITION
        # start() swaps the table out, so a Position keeps the table of its own scan
        whence = partial(_lookup_origin, self._origins)
        return Position(path=loc.file, line=loc.line, column=loc.column, whence=whence)


# ============================================================
# ==================== TRANSLATION UNIT SCAN =================
# ============================================================

@dataclass
class AttributedDeclaration:
    name: str
    position: Position
    depth: int


@dataclass
class ScanResult:
    root: Path
    declarations: List[AttributedDeclaration] = field(default_factory=list)
    stats: TrackerStats = field(default_factory=TrackerStats)

    def by_header(self) -> Dict[Path, List[AttributedDeclaration]]:
        """Declarations grouped by the file that produced them, in first-seen order."""
        groups: Dict[Path, List[AttributedDeclaration]] = {}
        for decl in self.declarations:
            if decl.position.path is None:
                continue
            groups.setdefault(decl.position.path, []).append(decl)
        return groups


def scan_cursors(
    tracker: PositionTracker,
    root: Union[str, Path],
    cursors: Iterable[Cursor],
) -> ScanResult:
    """
    Run one translation unit through `tracker`, in document order.
    OriginIntegrityError propagates and aborts the scan.
    """
    tracker.start(root)
    result = ScanResult(root=Path(root))
    for cursor in cursors:
        depth = tracker.track(cursor)
        if cursor.is_declaration and cursor.location is not None and cursor.location.file is not None:
            result.declarations.append(
                AttributedDeclaration(name=cursor.spelling, position=tracker.to_pos(cursor), depth=depth)
            )
    result.stats = tracker.stats
    return result


# ============================================================
# ==================== LIBCLANG FRONT END ====================
# ============================================================

def _default_clang_args(config: Optional[TrackerConfig] = None) -> List[str]:
    base = ["-x", "c", "-std=c11"]
    if config is not None:
        base.extend(config.clang_args)
    return base


def _absolute_path(name: str) -> Path:
    # No normalisation: "src/../common/defs.h" has to keep ending with the
    # "../common/defs.h" spelling of its #include.
    path = Path(name)
    return path if path.is_absolute() else Path.cwd() / path


def cursor_from_clang(native: "clang_cindex.Cursor") -> Cursor:
    kind: CursorKind
    if native.kind == clang_cindex.CursorKind.INCLUSION_DIRECTIVE:
        kind = "inclusion_directive"
    elif native.kind.is_declaration():
        kind = "declaration"
    else:
        kind = "other"

    location = native.location
    if location is None:
        loc = None
    elif location.file is None:
        loc = SourceLocation(file=None, line=location.line, column=location.column)
    else:
        loc = SourceLocation(
            file=_absolute_path(location.file.name),
            line=location.line,
            column=location.column,
        )
    return Cursor(kind=kind, spelling=native.spelling or "", location=loc, native=native)


def clang_cursors(clang_tu: "clang_cindex.TranslationUnit") -> Iterable[Cursor]:
    for child in clang_tu.cursor.get_children():
        yield cursor_from_clang(child)


def parse_translation_unit(
    path: str,
    args: Optional[List[str]] = None,
) -> "clang_cindex.TranslationUnit":
    """
    Parse `path` with libclang, keeping the detailed preprocessing record so
    inclusion directives show up in the cursor stream.
    """
    canonical_path = os.path.abspath(path)
    if not os.path.exists(canonical_path):
        raise FrontEndError(f"Input file not found: {path}")

    if args is None:
        args = _default_clang_args(TrackerConfig.from_env())
    options = clang_cindex.TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD
    try:
        index = clang_cindex.Index.create()
        return index.parse(canonical_path, args=args, options=options)
    except clang_cindex.LibclangError as exc:
        raise FrontEndError(f"Failed to initialize libclang: {exc}") from exc
    except clang_cindex.TranslationUnitLoadError as exc:
        raise FrontEndError(f"libclang could not parse '{path}': {exc}") from exc


def attribute_header(path: str, config: Optional[TrackerConfig] = None) -> ScanResult:
    config = config or TrackerConfig.from_env()
    clang_tu = parse_translation_unit(path, args=_default_clang_args(config))
    tracker = PositionTracker(config)
    return scan_cursors(tracker, os.path.abspath(path), clang_cursors(clang_tu))


# ============================================================
# ======================= JSON OUTPUT ========================
# ============================================================

def position_to_json_obj(pos: Position) -> Dict[str, Any]:
    return {
        "path": str(pos.path),
        "line": pos.line,
        "column": pos.column,
        "depth": pos.depth(),
    }


def declaration_to_json_obj(decl: AttributedDeclaration) -> Dict[str, Any]:
    """
    One declaration with its include chain, innermost #include first.
    Kept explicit so the field order stays stable.
    """
    return {
        "name": decl.name,
        "path": str(decl.position.path),
        "line": decl.position.line,
        "column": decl.position.column,
        "depth": decl.depth,
        "origin_chain": [position_to_json_obj(pos) for pos in origin_chain(decl.position)],
    }


def scan_to_json_obj(result: ScanResult) -> Dict[str, Any]:
    return {
        "root": str(result.root),
        "declarations": [declaration_to_json_obj(d) for d in result.declarations],
        "headers": {
            str(path): [d.name for d in decls]
            for path, decls in result.by_header().items()
        },
        "stats": asdict(result.stats),
        "tool": "whence",
        "version": "0.1.0",
    }


def emit_scan_json(result: ScanResult, out: Optional[str] = None) -> None:
    text = json.dumps(scan_to_json_obj(result), indent=2, sort_keys=False)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.
    Intended usage:
      whence scan --config whence.yaml include/api.h
    """
    parser = argparse.ArgumentParser(
        prog="whence",
        description="Whence: attribute C declarations to the header that produced them"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    scan_p = subparsers.add_parser(
        "scan",
        help="Scan one header or source file and emit per-declaration origins as JSON."
    )
    scan_p.add_argument(
        "--config",
        metavar="CONFIG_YAML",
        help="YAML config file (defaults come from WHENCE_* environment variables).",
    )
    scan_p.add_argument(
        "--out",
        metavar="OUT_JSON",
        help="Write the report to this JSON file instead of stdout.",
    )
    scan_p.add_argument(
        "--debug",
        action="store_true",
        help="Trace include-stack reconstruction on stderr.",
    )
    scan_p.add_argument(
        "--path-matching",
        choices=list(_PATH_MATCHING_MODES),
        help="How resolved paths are matched against #include spellings.",
    )
    scan_p.add_argument(
        "--clang-arg",
        action="append",
        default=[],
        metavar="ARG",
        help="Extra argument for libclang (repeatable).",
    )
    scan_p.add_argument(
        "file",
        help="Root C header or source file."
    )

    args = parser.parse_args(argv)

    if args.command == "scan":
        try:
            config = load_config_from_yaml(args.config) if args.config else TrackerConfig.from_env()
            config = replace(
                config,
                debug=config.debug or args.debug,
                path_matching=args.path_matching or config.path_matching,
                clang_args=list(config.clang_args) + list(args.clang_arg),
            )
            result = attribute_header(args.file, config)
        except WhenceError as exc:
            sys.stderr.write(f"[whence] {exc}\n")
            return 2
        emit_scan_json(result, out=args.out)
        return 0

    # unreachable if parser is correct
    return 1


if __name__ == "__main__":
    sys.exit(main())
