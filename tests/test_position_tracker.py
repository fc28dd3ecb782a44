import contextlib
import io
import unittest
from pathlib import Path

import whence


ROOT = Path("/src/root.h")
A_H = Path("/src/a.h")
B_H = Path("/src/b.h")
C_H = Path("/src/c.h")
D_H = Path("/src/d.h")
X_H = Path("/src/x.h")


def at(path, line=1, column=1):
    return whence.SourceLocation(file=Path(path), line=line, column=column)


def other(path, line=1):
    return whence.Cursor(kind="other", location=at(path, line))


def include(path, target, line=1):
    return whence.Cursor(kind="inclusion_directive", spelling=target, location=at(path, line))


def decl(path, name, line=1):
    return whence.Cursor(kind="declaration", spelling=name, location=at(path, line))


def builtin(name):
    return whence.Cursor(kind="other", spelling=name, location=whence.SourceLocation(None, 0, 0))


def feed(tracker, root, cursors):
    tracker.start(root)
    return [tracker.track(cursor) for cursor in cursors]


def deep_chain_to_x(root_line):
    # root -> a.h -> b.h -> c.h -> x.h, the #include of x.h seen with 4 files open
    return [
        include(ROOT, "a.h", root_line),
        other(A_H, 1),
        include(A_H, "b.h", 2),
        other(B_H, 1),
        include(B_H, "c.h", 2),
        other(C_H, 1),
        include(C_H, "x.h", 2),
        other(X_H, 1),
    ]


def shallow_chain_to_x(root_line):
    # root -> d.h -> x.h
    return [
        include(ROOT, "d.h", root_line),
        other(D_H, 1),
        include(D_H, "x.h", 2),
        other(X_H, 1),
    ]


class DepthAttributionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tracker = whence.PositionTracker()

    def test_root_without_includes(self) -> None:
        cursors = [builtin("__STDC__")] + [decl(ROOT, name, line) for line, name in enumerate("abc", 1)]
        depths = feed(self.tracker, ROOT, cursors)
        self.assertEqual(depths, [0, 1, 1, 1])
        for cursor in cursors[1:]:
            pos = self.tracker.to_pos(cursor)
            self.assertEqual(pos.origin(), whence.NO_POSITION)
            self.assertEqual(pos.depth(), 1)

    def test_include_then_declarations(self) -> None:
        g = decl("/src/depth1.h", "g", 1)
        f = decl(ROOT, "f", 2)
        depths = feed(self.tracker, ROOT, [include(ROOT, "depth1.h", 1), g, f])
        self.assertEqual(depths, [1, 2, 1])

        f_pos = self.tracker.to_pos(f)
        self.assertEqual(f_pos.origin(), whence.NO_POSITION)

        g_origin = self.tracker.to_pos(g).origin()
        self.assertEqual(g_origin.depth(), 1)
        self.assertTrue(str(g_origin.path).endswith("root.h"))
        self.assertEqual(g_origin.line, 1)

    def test_single_include_origin_is_directive(self) -> None:
        directive = include(ROOT, "a.h", 3)
        g = decl(A_H, "g", 3)
        depths = feed(self.tracker, ROOT, [other(ROOT, 1), directive, other(A_H, 2), g, decl(ROOT, "f", 5)])
        self.assertEqual(depths, [1, 1, 2, 2, 1])
        g_pos = self.tracker.to_pos(g)
        self.assertEqual(g_pos.depth(), 2)
        self.assertEqual(g_pos.origin(), self.tracker.to_pos(directive))
        self.assertEqual(self.tracker.origin_of(A_H).depth, 1)

    def test_shallowest_wins_deep_chain_first(self) -> None:
        x_decl = decl(X_H, "x_fn", 5)
        cursors = deep_chain_to_x(1) + shallow_chain_to_x(3) + [x_decl]
        depths = feed(self.tracker, ROOT, cursors)
        self.assertEqual(depths[-1], 3)
        self.assertEqual(self.tracker.origin_of(X_H).depth, 2)
        self.assertEqual(self.tracker.to_pos(x_decl).origin().path, D_H)

    def test_shallowest_wins_shallow_chain_first(self) -> None:
        x_decl = decl(X_H, "x_fn", 5)
        cursors = shallow_chain_to_x(1) + deep_chain_to_x(3) + [x_decl]
        depths = feed(self.tracker, ROOT, cursors)
        self.assertEqual(depths[-1], 3)
        self.assertEqual(self.tracker.origin_of(X_H).depth, 2)
        self.assertEqual(self.tracker.to_pos(x_decl).origin().path, D_H)

    def test_stack_rewinds_to_ancestor(self) -> None:
        feed(self.tracker, ROOT, deep_chain_to_x(1))
        self.assertEqual(self.tracker.stack(), (ROOT, A_H, B_H, C_H, X_H))
        self.assertEqual(self.tracker.track(other(B_H, 3)), 3)
        self.assertEqual(self.tracker.stack(), (ROOT, A_H, B_H))
        self.assertEqual(self.tracker.track(other(ROOT, 2)), 1)
        self.assertEqual(self.tracker.stack(), (ROOT,))
        self.assertEqual(self.tracker.stats.stack_rewinds, 2)

    def test_cursor_without_location_is_ignored(self) -> None:
        feed(self.tracker, ROOT, [other(ROOT, 1)])
        self.assertEqual(self.tracker.track(whence.Cursor(kind="other")), 0)
        self.assertEqual(self.tracker.stack(), (ROOT,))

    def test_start_resets_state(self) -> None:
        feed(self.tracker, ROOT, deep_chain_to_x(1))
        self.tracker.start(A_H)
        self.assertEqual(self.tracker.origins(), {})
        self.assertEqual(self.tracker.stack(), ())
        self.assertEqual(self.tracker.stats.cursors, 0)
        self.assertEqual(self.tracker.track(decl(A_H, "only", 1)), 1)


class CircularInclusionTests(unittest.TestCase):
    def test_mutual_inclusion_keeps_root_depth(self) -> None:
        tracker = whence.PositionTracker()
        cursors = [
            include(A_H, "b.h", 1),
            other(B_H, 1),
            include(B_H, "a.h", 2),
            other(A_H, 2),
            decl(A_H, "fa", 3),
            decl(B_H, "fb", 3),
        ]
        depths = feed(tracker, A_H, cursors)
        self.assertEqual(depths, [1, 2, 2, 1, 1, 2])
        self.assertEqual(tracker.origin_of(A_H), whence.Origin.TOP)
        self.assertEqual(tracker.origin_of(B_H).depth, 1)
        self.assertEqual(tracker.stats.circular_inclusions, 1)
        self.assertEqual(tracker.stack(), (A_H,))

    def test_stale_depth_on_cycle_is_fatal(self) -> None:
        tracker = whence.PositionTracker()
        y_h = Path("/src/y.h")
        z_h = Path("/src/z.h")
        cursors = [
            include(ROOT, "x.h", 1),
            other(X_H, 1),
            other(ROOT, 2),
            include(ROOT, "y.h", 3),
            other(y_h, 1),
            include(y_h, "x.h", 2),
            other(X_H, 1),
            include(X_H, "z.h", 2),
            other(z_h, 1),
            include(z_h, "x.h", 2),
            other(X_H, 3),
        ]
        with self.assertRaises(whence.OriginIntegrityError) as ctx:
            feed(tracker, ROOT, cursors)
        self.assertEqual(ctx.exception.path, X_H)


class RealPathRescueTests(unittest.TestCase):
    def test_declaration_free_header_is_rescued(self) -> None:
        h_h = Path("/src/h.h")
        late = decl(h_h, "late", 4)
        cursors = [
            include(ROOT, "a.h", 1),
            other(A_H, 1),
            include(A_H, "h.h", 2),
            other(h_h, 1),
            other(A_H, 3),
            include(ROOT, "h.h", 2),
            other(ROOT, 3),
            late,
        ]
        tracker = whence.PositionTracker()
        depths = feed(tracker, ROOT, cursors)
        self.assertEqual(depths[-1], 2)
        self.assertEqual(tracker.stats.inclusions_rescued, 1)
        origin = tracker.to_pos(late).origin()
        self.assertEqual(origin.path, ROOT)
        self.assertEqual(origin.line, 2)

    def test_unknown_header_is_dropped(self) -> None:
        tracker = whence.PositionTracker()
        feed(tracker, ROOT, [include(ROOT, "empty.h", 1), other(ROOT, 2)])
        self.assertEqual(tracker.stats.inclusions_dropped, 1)
        self.assertIsNone(tracker.origin_of(Path("/src/empty.h")))


class IntegrityViolationTests(unittest.TestCase):
    def test_declaration_without_origin(self) -> None:
        tracker = whence.PositionTracker()
        with self.assertRaises(whence.OriginIntegrityError) as ctx:
            feed(tracker, ROOT, [include(ROOT, "a.h", 1), other(ROOT, 2), decl(A_H, "g", 1)])
        self.assertEqual(ctx.exception.path, A_H)
        self.assertIn("'g'", ctx.exception.context)

    def test_builtin_with_open_stack(self) -> None:
        tracker = whence.PositionTracker()
        with self.assertRaises(whence.OriginIntegrityError) as ctx:
            feed(tracker, ROOT, [other(ROOT, 1), builtin("__FILE__")])
        self.assertEqual(ctx.exception.path, ROOT)


class FrameworkTrackingTests(unittest.TestCase):
    cfbase = Path("/SDK/System/Library/Frameworks/CoreFoundation.framework/Headers/CFBase.h")

    def stream(self):
        return [include(ROOT, "CoreFoundation/CFBase.h", 1), decl(self.cfbase, "CFIndex", 10)]

    def test_framework_spelling_is_attributed(self) -> None:
        tracker = whence.PositionTracker(whence.TrackerConfig(path_matching="framework"))
        self.assertEqual(feed(tracker, ROOT, self.stream())[-1], 2)

    def test_plain_matching_cannot_see_framework_alias(self) -> None:
        tracker = whence.PositionTracker(whence.TrackerConfig(path_matching="plain"))
        with self.assertRaises(whence.OriginIntegrityError):
            feed(tracker, ROOT, self.stream())
        self.assertEqual(tracker.stats.inclusions_dropped, 1)


class DebugTraceTests(unittest.TestCase):
    def run_scan(self, debug):
        tracker = whence.PositionTracker(whence.TrackerConfig(debug=debug))
        buf = io.StringIO()
        with contextlib.redirect_stderr(buf):
            feed(tracker, ROOT, [include(ROOT, "a.h", 1), other(A_H, 1), decl(A_H, "g", 2)])
        return buf.getvalue()

    def test_trace_written_when_enabled(self) -> None:
        output = self.run_scan(True)
        self.assertIn("[whence] Set /src/a.h origin to /src/root.h:1:1@1", output)
        self.assertIn("[whence] Current origins table:", output)

    def test_silent_by_default(self) -> None:
        self.assertEqual(self.run_scan(False), "")


if __name__ == "__main__":
    unittest.main()
