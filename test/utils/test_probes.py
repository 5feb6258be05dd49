"""Unit tests for prioritized probes."""

from chat_relay.utils.probes import PatternProbe, first_match, matching_names


class TestFirstMatch:
    def test_first_matching_probe_wins(self):
        probes = [lambda text: None, lambda text: "second", lambda text: "third"]

        assert first_match(probes, "anything") == "second"

    def test_failing_probe_is_skipped(self):
        def broken(text):
            raise ValueError("bad probe")

        assert first_match([broken, lambda text: "fallback"], "anything") == "fallback"

    def test_no_match_returns_none(self):
        assert first_match([lambda text: "", lambda text: None], "anything") is None


class TestPatternProbe:
    def test_matching_names_in_priority_order(self):
        probes = [
            PatternProbe("prompt", r"^> $"),
            PatternProbe("spinner", r"thinking"),
            PatternProbe("any_line", r"^.+$"),
        ]

        assert matching_names(probes, "thinking\n> ") == ["prompt", "spinner", "any_line"]
        assert matching_names(probes, "") == []
