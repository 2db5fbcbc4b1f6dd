"""Tests for hunk parsing, fingerprints and diff position calculation."""

from prsentry_core.diff import ChangeSet, FilePatch, fingerprint, get_diff_positions, parse_hunks

TWO_HUNKS = """\
@@ -1,2 +1,3 @@ def first():
 context a
+added in hunk 1
 context b
@@ -10,2 +11,3 @@
 context c
+added in hunk 2
 context d"""


class TestParseHunks:
    def test_parses_header_fields(self):
        hunks = parse_hunks(TWO_HUNKS)
        assert len(hunks) == 2
        first = hunks[0]
        assert (first.old_start, first.old_count, first.new_start, first.new_count) == (1, 2, 1, 3)
        assert first.section == " def first():"

    def test_new_line_numbers(self):
        hunks = parse_hunks(TWO_HUNKS)
        assert hunks[0].changed_lines == frozenset({2})
        assert hunks[1].changed_lines == frozenset({12})

    def test_removed_lines_have_no_new_line_number(self):
        hunk = parse_hunks("@@ -1,3 +1,2 @@\n context\n-removed\n+added")[0]
        removed = [line for line in hunk.lines if line.kind == "-"][0]
        assert removed.new_lineno is None
        assert removed.old_lineno == 2
        assert hunk.changed_lines == frozenset({2})

    def test_omitted_counts_default_to_one(self):
        hunk = parse_hunks("@@ -3 +3 @@\n-old\n+new")[0]
        assert hunk.old_count == 1
        assert hunk.new_count == 1

    def test_ignores_no_newline_marker(self):
        hunk = parse_hunks("@@ -1 +1 @@\n-old\n\\ No newline at end of file\n+new")[0]
        assert [line.kind for line in hunk.lines] == ["-", "+"]

    def test_ignores_lines_before_first_header(self):
        hunks = parse_hunks("garbage\n+not a hunk\n@@ -1 +1 @@\n+x")
        assert len(hunks) == 1
        assert len(hunks[0].lines) == 1

    def test_malformed_header_ends_current_hunk(self):
        hunks = parse_hunks("@@ -1 +1 @@\n+kept\n@@ bad header @@\n+dropped")
        assert len(hunks) == 1
        assert [line.text for line in hunks[0].lines] == ["kept"]

    def test_empty_patch(self):
        assert parse_hunks("") == ()

    def test_render_round_trips_the_hunk_text(self):
        text = "@@ -1,2 +1,3 @@\n context a\n+added\n context b"
        assert parse_hunks(text)[0].render() == text

    def test_head_keeps_leading_lines(self):
        hunk = parse_hunks(TWO_HUNKS)[0]
        cut = hunk.head(1)
        assert len(cut.lines) == 1
        assert cut.header == hunk.header


class TestFilePatch:
    def test_none_patch_is_empty(self):
        patch = FilePatch.from_patch("img.png", "added", None)
        assert patch.patch == ""
        assert patch.is_empty

    def test_fingerprint_depends_only_on_patch_text(self):
        a = FilePatch.from_patch("a.py", "modified", "@@ -1 +1 @@\n+x")
        b = FilePatch.from_patch("b.py", "added", "@@ -1 +1 @@\n+x")
        assert a.fingerprint == b.fingerprint
        assert a.fingerprint.startswith("sha256:")

    def test_fingerprint_changes_with_content(self):
        assert fingerprint("@@ -1 +1 @@\n+x") != fingerprint("@@ -1 +1 @@\n+y")

    def test_change_set_lookup(self):
        patch = FilePatch.from_patch("a.py", "modified", "@@ -1 +1 @@\n+x")
        change_set = ChangeSet("abc123", (patch,))
        assert change_set.get("a.py") is patch
        assert change_set.get("missing.py") is None
        assert change_set.paths == ["a.py"]


# ---------------------------------------------------------------------------
# GitHub diff positions — critical for correct comment placement
# ---------------------------------------------------------------------------


def test_single_hunk_position():
    patch = """\
@@ -1,3 +1,4 @@
 line one
+line two added
 line three
 line four"""
    positions = get_diff_positions(patch)
    # @@ is not counted; " line one" = pos 1, "+line two added" = pos 2
    assert positions[2] == 2


def test_position_is_cumulative_across_hunks():
    positions = get_diff_positions(TWO_HUNKS)
    assert positions[2] == 2
    # pos 3=" context b", pos 4=second @@ header, pos 5=" context c", pos 6="+added in hunk 2"
    assert positions[12] == 6


def test_each_later_hunk_header_takes_a_position():
    patch = "@@ -1,1 +1,2 @@\n+a\n x\n@@ -5,1 +6,2 @@\n+b\n y\n@@ -9,1 +11,2 @@\n+c\n z"
    assert get_diff_positions(patch) == {1: 1, 6: 4, 11: 7}


def test_removed_lines_do_not_increment_new_file_line():
    patch = "@@ -1,3 +1,2 @@\n context\n-removed line\n+added line"
    assert get_diff_positions(patch)[2] == 3


def test_no_added_lines():
    assert get_diff_positions("@@ -1,2 +1,1 @@\n context line\n-removed line") == {}


def test_malformed_hunk_header_does_not_raise():
    assert get_diff_positions("@@ bad header @@\n+line one") == {}
