import random
import unittest

from bandleader.errors import ConfigError, RuleError
from bandleader.mixer import apply_rules, interleave, parse_rule
from bandleader.model import MixRule, PlayInterval


def iv(ch, start, length, note):
    return PlayInterval(ch, start, length, note)


def naive_interleave(sources, destination, unit):
    """Reference 1ms-slice scan."""
    items = [(ch, i) for ch in sorted(sources) for i in sources[ch]]
    if not items:
        return []
    hi = max(i.end_ms for _, i in items)
    slices = []
    for at in range(0, hi):
        on = [i for _, i in items if i.start_ms <= at < i.end_ms]
        if on:
            slices.append((at, on[(at // unit) % len(on)].note))
    out = []
    for at, note in slices:
        if out and out[-1].note == note and out[-1].end_ms == at:
            last = out[-1]
            out[-1] = PlayInterval(destination, last.start_ms, last.len_ms + 1, note)
        else:
            out.append(PlayInterval(destination, at, 1, note))
    return out


class TestParseRule(unittest.TestCase):
    def test_parse(self):
        self.assertEqual(parse_rule("3=0,1,2"), MixRule(3, (0, 1, 2)))
        self.assertEqual(parse_rule(" 1 = 4 , 5 "), MixRule(1, (4, 5)))
        self.assertEqual(parse_rule("0=2"), MixRule(0, (2,)))

    def test_duplicate_sources_collapsed(self):
        self.assertEqual(parse_rule("0=2,1,2"), MixRule(0, (2, 1)))

    def test_malformed(self):
        for text in ["abc", "1=x", "=1", "1=", "x=1", "1=2,,3", "1=-2", "1=300"]:
            with self.subTest(text=text):
                with self.assertRaises(RuleError) as cm:
                    parse_rule(text)
                self.assertIn("Invalid rule", str(cm.exception))

    def test_rule_error_is_value_error(self):
        with self.assertRaises(ValueError):
            parse_rule("nope")


class TestInterleave(unittest.TestCase):
    def test_two_sources_alternate_per_unit(self):
        src = {0: [iv(0, 0, 200, 60)], 1: [iv(1, 0, 200, 62)]}
        out = interleave(src, 5, unit=40)
        self.assertEqual(
            out,
            [iv(5, 0, 40, 60), iv(5, 40, 40, 62), iv(5, 80, 40, 60), iv(5, 120, 40, 62), iv(5, 160, 40, 60)],
        )
        self.assertEqual(sum(i.len_ms for i in out), 200)

    def test_same_note_coalesced(self):
        src = {0: [iv(0, 0, 200, 60)], 1: [iv(1, 0, 200, 60)]}
        self.assertEqual(interleave(src, 0, unit=40), [iv(0, 0, 200, 60)])

    def test_disjoint_sources(self):
        src = {0: [iv(0, 0, 100, 60)], 1: [iv(1, 100, 100, 62)]}
        self.assertEqual(interleave(src, 0, unit=40), [iv(0, 0, 100, 60), iv(0, 100, 100, 62)])

    def test_partial_overlap(self):
        src = {0: [iv(0, 0, 100, 60)], 1: [iv(1, 50, 100, 62)]}
        self.assertEqual(
            interleave(src, 9, unit=40),
            [iv(9, 0, 50, 60), iv(9, 50, 30, 62), iv(9, 80, 20, 60), iv(9, 100, 50, 62)],
        )

    def test_gap_is_left_silent(self):
        src = {0: [iv(0, 0, 50, 60), iv(0, 150, 50, 60)], 1: []}
        self.assertEqual(interleave(src, 0, unit=40), [iv(0, 0, 50, 60), iv(0, 150, 50, 60)])

    def test_matches_millisecond_scan(self):
        rng = random.Random(3)
        for _ in range(30):
            src = {}
            for ch in rng.sample(range(6), rng.randint(2, 4)):
                at = rng.randint(0, 50)
                ivs = []
                for _ in range(rng.randint(1, 6)):
                    length = rng.randint(1, 120)
                    ivs.append(iv(ch, at, length, rng.randint(60, 63)))
                    at += length + rng.choice([0, 0, rng.randint(1, 80)])
                src[ch] = ivs
            unit = rng.choice([1, 7, 40, 100])
            with self.subTest(src=src, unit=unit):
                self.assertEqual(interleave(src, 7, unit), naive_interleave(src, 7, unit))

    def test_deterministic_regardless_of_dict_order(self):
        a = {0: [iv(0, 0, 300, 60)], 1: [iv(1, 20, 200, 62)], 2: [iv(2, 40, 100, 64)]}
        b = {2: a[2], 0: a[0], 1: a[1]}
        self.assertEqual(interleave(a, 0, 40), interleave(b, 0, 40))
        self.assertEqual(interleave(a, 0, 40), interleave(a, 0, 40))

    def test_unit_must_be_positive(self):
        with self.assertRaises(ConfigError):
            interleave({0: [iv(0, 0, 10, 60)]}, 0, unit=0)


class TestApplyRules(unittest.TestCase):
    def setUp(self):
        self.intervals = {
            0: [iv(0, 0, 100, 60)],
            1: [iv(1, 0, 100, 62)],
            2: [iv(2, 0, 100, 64)],
            3: [iv(3, 200, 100, 65)],
        }

    def test_single_source_relabels(self):
        out = apply_rules(self.intervals, [MixRule(7, (3,))])
        self.assertEqual(out[7], [iv(7, 200, 100, 65)])
        self.assertNotIn(3, out)

    def test_undeclared_pass_through_and_sources_consumed(self):
        out = apply_rules(self.intervals, [MixRule(0, (1, 2))], unit=40)
        self.assertEqual(sorted(out), [0, 3])
        self.assertEqual(out[3], self.intervals[3])
        self.assertTrue(all(i.channel == 0 for i in out[0]))
        self.assertEqual({i.note for i in out[0]}, {62, 64})

    def test_unknown_source(self):
        with self.assertRaises(ConfigError):
            apply_rules(self.intervals, [MixRule(0, (1, 9))])

    def test_known_channel_without_notes_accepted(self):
        out = apply_rules(self.intervals, [MixRule(4, (5,))], known_channels=[5])
        self.assertEqual(out[4], [])

    def test_duplicate_destination(self):
        with self.assertRaises(ConfigError):
            apply_rules(self.intervals, [MixRule(0, (1,)), MixRule(0, (2,))])


if __name__ == "__main__":
    unittest.main()
