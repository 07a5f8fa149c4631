"""Tests for .griveignore rule parsing and matching."""

from pygrive.sync.ignore import (
    IGNORE_FILE_NAME,
    IgnoreMatcher,
    IgnoreRule,
    RuleSign,
    load_ignore_file,
)


class TestIgnoreRuleParse:
    """Tests for parsing single rule-file lines."""

    def test_blank_and_comment_lines_are_skipped(self):
        """Blank lines and comments produce no rule."""
        assert IgnoreRule.parse("") is None
        assert IgnoreRule.parse("   ") is None
        assert IgnoreRule.parse("# build output") is None

    def test_exclude_rule(self):
        """A plain pattern is an exclude rule."""
        rule = IgnoreRule.parse("*.log")
        assert rule is not None
        assert rule.pattern == "*.log"
        assert rule.sign == RuleSign.EXCLUDE
        assert not rule.is_include

    def test_include_rule(self):
        """A leading ! marks an include rule."""
        rule = IgnoreRule.parse("!keep.log")
        assert rule is not None
        assert rule.pattern == "keep.log"
        assert rule.is_include

    def test_slashes_are_stripped(self):
        """Leading and trailing slashes do not change the pattern."""
        rule = IgnoreRule.parse("/build/")
        assert rule is not None
        assert rule.pattern == "build"


class TestGlobSemantics:
    """Tests for wildcard matching."""

    def test_star_does_not_cross_separator(self):
        """* matches within one path segment only."""
        rule = IgnoreRule("*.log")
        assert rule.matches("app.log")
        assert not rule.matches("logs/app.log")

    def test_question_mark_matches_one_character(self):
        """? matches exactly one non-separator character."""
        rule = IgnoreRule("file?.txt")
        assert rule.matches("file1.txt")
        assert not rule.matches("file10.txt")
        assert not rule.matches("file/.txt")

    def test_double_star_between_segments(self):
        """a/**/b matches zero or more segments between a and b."""
        rule = IgnoreRule("a/**/b")
        assert rule.matches("a/b")
        assert rule.matches("a/x/b")
        assert rule.matches("a/x/y/b")
        assert not rule.matches("a/xb")

    def test_leading_double_star(self):
        """**/a matches a at any depth."""
        rule = IgnoreRule("**/node_modules")
        assert rule.matches("node_modules")
        assert rule.matches("web/node_modules")
        assert rule.matches("a/b/c/node_modules")
        assert not rule.matches("node_modules_old")

    def test_trailing_double_star(self):
        """b/** matches everything inside b but not b itself."""
        rule = IgnoreRule("cache/**")
        assert not rule.matches("cache")
        assert rule.matches("cache/x")
        assert rule.matches("cache/x/y.bin")

    def test_character_class(self):
        """[abc] and [!abc] match character sets."""
        assert IgnoreRule("[ab].txt").matches("a.txt")
        assert not IgnoreRule("[ab].txt").matches("c.txt")
        assert IgnoreRule("[!ab].txt").matches("c.txt")

    def test_regex_characters_are_literal(self):
        """Characters special to regular expressions match literally."""
        rule = IgnoreRule("a+b (1).txt")
        assert rule.matches("a+b (1).txt")
        assert not rule.matches("aab (1).txt")


class TestIgnoreMatcher:
    """Tests for the include/exclude decision."""

    def test_empty_matcher_excludes_nothing(self):
        """Without rules nothing is excluded."""
        matcher = IgnoreMatcher()
        assert not matcher.matches("anything.txt")
        assert not matcher.is_excluded("a/b/c")

    def test_include_overrides_exclude(self):
        """keep.log stays included while other logs are excluded."""
        matcher = IgnoreMatcher.from_lines(["*.log", "!keep.log"])
        assert not matcher.matches("keep.log")
        assert matcher.matches("other.log")

    def test_include_wins_regardless_of_order(self):
        """An include rule declared before the exclude still wins."""
        matcher = IgnoreMatcher.from_lines(["!keep.log", "*.log"])
        assert not matcher.matches("keep.log")
        assert matcher.matches("other.log")

    def test_include_alone_excludes_nothing(self):
        """Include rules never exclude anything by themselves."""
        matcher = IgnoreMatcher.from_lines(["!*.txt"])
        assert not matcher.matches("a.bin")

    def test_ignore_file_is_a_normal_file(self):
        """The rule file is synced unless a rule names it."""
        matcher = IgnoreMatcher.from_lines(["*.log"])
        assert not matcher.matches(IGNORE_FILE_NAME)
        matcher = IgnoreMatcher.from_lines([IGNORE_FILE_NAME])
        assert matcher.matches(IGNORE_FILE_NAME)

    def test_is_excluded_checks_parent_folders(self):
        """Anything below an excluded folder is excluded."""
        matcher = IgnoreMatcher.from_lines(["build"])
        assert matcher.is_excluded("build")
        assert matcher.is_excluded("build/out/app.bin")
        assert not matcher.is_excluded("src/build.py")

    def test_len_counts_rules(self):
        """len() reports the number of parsed rules."""
        matcher = IgnoreMatcher.from_lines(["# comment", "*.log", "", "!keep.log"])
        assert len(matcher) == 2


class TestLoadIgnoreFile:
    """Tests for reading .griveignore from the sync root."""

    def test_missing_file_gives_empty_matcher(self, temp_dir):
        """No rule file means no rules."""
        matcher = load_ignore_file(temp_dir)
        assert len(matcher) == 0

    def test_rules_from_file_and_extra_lines(self, temp_dir):
        """Extra lines are appended after the file's rules."""
        (temp_dir / IGNORE_FILE_NAME).write_text("*.log\n# comment\n\n*.tmp\n")
        matcher = load_ignore_file(temp_dir, ["!keep.log"])
        assert len(matcher) == 3
        assert matcher.matches("a.log")
        assert matcher.matches("b.tmp")
        assert not matcher.matches("keep.log")
