import unittest

from fantasyreport.classification.classifier import Classifier, looks_like_player_page
from fantasyreport.classification.players import (
    TIER_ALIAS,
    TIER_EXACT,
    TIER_MIDDLE,
    PlayerDirectory,
    extract_name_hits,
    normalize_position,
    pick_first_last,
)
from fantasyreport.ingestion.article_types import NameHit
from fantasyreport.storage.base import PlayerRecord


def _players():
    return [
        PlayerRecord("100", "Bijan Robinson", position="RB", team="ATL"),
        PlayerRecord("200", "Jacob T. Browning", position="QB", team="CIN", aliases=["Jacob Browning"]),
        PlayerRecord("300", "Amon-Ra St. Brown", position="WR", team="DET"),
        PlayerRecord("400", "Josh Allen", position="QB", team="BUF"),
        PlayerRecord("401", "Josh Allen", position="LB", team="JAX"),
        PlayerRecord("500", "Marvin Harrison Jr.", position="WR", team="ARI"),
        PlayerRecord("600", "Retired Guy", position="RB", team="NYG", active=False),
        PlayerRecord("700", "Free Agent", position="WR", team=None),
    ]


class TestNameExtraction(unittest.TestCase):
    def test_position_hinted_spans(self):
        hits = extract_name_hits("WR Puka Nacua leads the list; Jake Browning (CIN - QB) is a streamer")
        hinted = {(h.name, h.position) for h in hits if h.position}
        self.assertIn(("Puka Nacua", "WR"), hinted)
        self.assertIn(("Jake Browning", "QB"), hinted)

    def test_capitalized_runs_without_hints(self):
        names = [h.name for h in extract_name_hits("Start Bijan Robinson's backup, not Josh Allen.")]
        self.assertIn("Bijan Robinson", names)
        self.assertIn("Josh Allen", names)

    def test_pick_first_last(self):
        self.assertEqual(pick_first_last("Marvin Harrison Jr. (ARI)"), ("marvin", "harrison"))
        self.assertIsNone(pick_first_last("Browning"))

    def test_normalize_position(self):
        self.assertEqual(normalize_position("wr2"), "WR")
        self.assertEqual(normalize_position("D/ST"), "DEF")
        self.assertIsNone(normalize_position("LB"))


class TestPlayerDirectory(unittest.TestCase):
    def setUp(self):
        self.directory = PlayerDirectory(_players())

    def test_only_eligible_players_are_indexed(self):
        # LB, inactive and teamless players are excluded.
        self.assertEqual(len(self.directory), 5)
        self.assertIsNone(self.directory.resolve(NameHit("Retired Guy")))
        self.assertIsNone(self.directory.resolve(NameHit("Free Agent")))

    def test_exact_tier(self):
        player, tier = self.directory.resolve_with_tier(NameHit("Bijan Robinson"))
        self.assertEqual((player.player_id, tier), ("100", TIER_EXACT))

    def test_middle_name_tier(self):
        player, tier = self.directory.resolve_with_tier(NameHit("Jacob Browning"))
        self.assertEqual(player.player_id, "200")
        self.assertEqual(tier, TIER_MIDDLE)

    def test_alias_tier_with_nickname(self):
        player, tier = self.directory.resolve_with_tier(NameHit("Jake Browning"))
        self.assertEqual(player.player_id, "200")
        self.assertEqual(tier, TIER_ALIAS)

    def test_unknown_two_token_name_returns_none(self):
        self.assertEqual(self.directory.resolve_with_tier(NameHit("Nobody Special")), (None, None))

    def test_single_token_is_discarded(self):
        self.assertIsNone(self.directory.resolve(NameHit("Browning")))

    def test_suffix_is_ignored(self):
        player, tier = self.directory.resolve_with_tier(NameHit("Marvin Harrison", "WR"))
        self.assertEqual(player.player_id, "500")
        self.assertEqual(tier, TIER_EXACT)

    def test_resolve_all_is_distinct_and_ordered(self):
        hits = [NameHit("Josh Allen", "QB"), NameHit("Bijan Robinson"), NameHit("Josh Allen")]
        self.assertEqual(self.directory.resolve_all(hits), ["400", "100"])


class TestClassifier(unittest.TestCase):
    def test_classify_combines_topics_and_players(self):
        classifier = Classifier(PlayerDirectory(_players()))
        result = classifier.classify(
            title="Week 6 Waiver Wire: Jake Browning is a streaming QB",
            url="https://example.com/nfl/week-6-waiver-wire",
        )
        self.assertEqual(result.topics, ["waiver-wire"])
        self.assertEqual(result.week, 6)
        self.assertEqual(result.players, ["200"])
        self.assertFalse(result.is_player_page)

    def test_without_directory_players_are_empty(self):
        result = Classifier().classify(title="Bijan Robinson injury update")
        self.assertEqual(result.players, [])
        self.assertIn("injury", result.topics)

    def test_player_resolution_errors_are_not_fatal(self):
        class Broken:
            def __len__(self):
                return 1

            def resolve_all(self, hits):
                raise RuntimeError("boom")

        result = Classifier(Broken()).classify(title="Bijan Robinson injury update")
        self.assertEqual(result.players, [])
        self.assertIn("injury", result.topics)

    def test_player_page_detection(self):
        self.assertTrue(looks_like_player_page("https://example.com/nfl/players/bijan-robinson"))
        self.assertFalse(looks_like_player_page("https://example.com/nfl/week-5-waivers", "Week 5 waivers"))


if __name__ == "__main__":
    unittest.main()
