import unittest

from coinclash.core.flow import InvalidTransition, PlayerFlow


class TestPlayerFlow(unittest.TestCase):
    def setUp(self):
        self.flow = PlayerFlow()

    def _to_matching(self):
        self.flow.select_mode("1v1")
        self.flow.select_amount(20)
        self.flow.choose("heads")

    def test_happy_path(self):
        self._to_matching()
        self.flow.match_found("s1", {"username": "bob"})
        self.flow.game_complete("win", 40)

        self.assertEqual(self.flow.stage, "result")
        self.assertEqual(self.flow.history, ["mode", "amount", "choice", "matching", "game", "result"])
        self.assertEqual(self.flow.won_amount, 40)

    def test_late_match_after_soft_timeout(self):
        self._to_matching()
        self.flow.soft_timeout()
        self.assertEqual(self.flow.stage, "no_match")

        self.flow.match_found("s1")
        self.assertEqual(self.flow.stage, "game")
        self.assertEqual(self.flow.session_id, "s1")

    def test_retry_returns_to_matching(self):
        self._to_matching()
        self.flow.soft_timeout()
        self.flow.retry()
        self.assertEqual(self.flow.stage, "matching")

    def test_rematch_keeps_amount_and_choice(self):
        self._to_matching()
        self.flow.match_found("s1")
        self.flow.game_complete("loss")
        self.flow.rematch()

        self.assertEqual(self.flow.stage, "matching")
        self.assertEqual((self.flow.amount, self.flow.choice), (20, "heads"))
        self.assertIsNone(self.flow.session_id)
        self.assertIsNone(self.flow.result)

    def test_back_navigation(self):
        self._to_matching()
        self.flow.soft_timeout()
        self.flow.back_to_amount()
        self.assertEqual(self.flow.stage, "amount")
        self.assertIsNone(self.flow.amount)

        self.flow.back_to_mode()
        self.assertEqual(self.flow.stage, "mode")
        self.assertIsNone(self.flow.mode)

    def test_multiplayer_branch(self):
        self.flow.select_mode("multiplayer")
        self.assertEqual(self.flow.stage, "multiplayer")
        self.assertFalse(self.flow.can("select_amount"))
        self.flow.back_to_mode()
        self.assertEqual(self.flow.stage, "mode")

    def test_invalid_transitions(self):
        with self.assertRaises(InvalidTransition):
            self.flow.choose("heads")
        with self.assertRaises(InvalidTransition):
            self.flow.game_complete("win")

        self._to_matching()
        with self.assertRaises(InvalidTransition):
            self.flow.rematch()
        with self.assertRaises(InvalidTransition):
            self.flow.back_to_amount()
        self.assertEqual(self.flow.stage, "matching")

    def test_invalid_values(self):
        with self.assertRaises(ValueError):
            self.flow.select_mode("tournament")
        self.flow.select_mode("1v1")
        with self.assertRaises(ValueError):
            self.flow.select_amount(0)
        self.assertEqual(self.flow.stage, "amount")


if __name__ == "__main__":
    unittest.main()
