"""
Player flow state machine.

Tracks where a player is in the game UI:

    mode -> amount -> choice -> matching -> game -> result
                                   |  ^
                                   v  |
                                 no_match

``multiplayer`` is a separate branch reached from ``mode``. A match can
arrive after the soft timeout, so ``match_found`` is accepted from
``no_match`` as well as ``matching``.
"""

from typing import Dict, List, Optional

STAGES = ("mode", "amount", "choice", "matching", "no_match", "game", "result", "multiplayer")
MODES = ("1v1", "multiplayer")

# transition -> stages it may be taken from
TRANSITIONS = {
    "select_mode": ("mode",),
    "select_amount": ("amount",),
    "choose": ("choice",),
    "match_found": ("matching", "no_match"),
    "soft_timeout": ("matching",),
    "retry": ("no_match",),
    "game_complete": ("game",),
    "rematch": ("result",),
    "back_to_amount": ("choice", "no_match", "result"),
    "back_to_mode": ("amount", "no_match", "result", "multiplayer"),
}


class InvalidTransition(Exception):
    def __init__(self, transition: str, stage: str):
        self.transition = transition
        self.stage = stage
        super().__init__(f"Cannot {transition} from stage '{stage}'")


class PlayerFlow:
    def __init__(self):
        self.stage = "mode"
        self.mode: Optional[str] = None
        self.amount: Optional[int] = None
        self.choice: Optional[str] = None
        self.session_id: Optional[str] = None
        self.opponent: Optional[Dict] = None
        self.result: Optional[str] = None
        self.won_amount: Optional[float] = None
        self.history: List[str] = [self.stage]

    def _move(self, transition: str, stage: str):
        if self.stage not in TRANSITIONS[transition]:
            raise InvalidTransition(transition, self.stage)
        self.stage = stage
        self.history.append(stage)

    def _clear_game(self):
        self.session_id = None
        self.opponent = None
        self.result = None
        self.won_amount = None

    def select_mode(self, mode: str):
        if mode not in MODES:
            raise ValueError(f"Unknown mode: {mode}")
        self._move("select_mode", "amount" if mode == "1v1" else "multiplayer")
        self.mode = mode

    def select_amount(self, amount: int):
        if amount <= 0:
            raise ValueError("Amount must be positive")
        self._move("select_amount", "choice")
        self.amount = amount

    def choose(self, choice: str):
        if choice not in ("heads", "tails"):
            raise ValueError(f"Unknown choice: {choice}")
        self._move("choose", "matching")
        self.choice = choice

    def match_found(self, session_id: str, opponent: Dict = None):
        self._move("match_found", "game")
        self.session_id = session_id
        self.opponent = opponent

    def soft_timeout(self):
        self._move("soft_timeout", "no_match")

    def retry(self):
        self._move("retry", "matching")

    def game_complete(self, result: str, won_amount: float = None):
        if result not in ("win", "loss"):
            raise ValueError(f"Unknown result: {result}")
        self._move("game_complete", "result")
        self.result = result
        self.won_amount = won_amount

    def rematch(self):
        self._move("rematch", "matching")
        self._clear_game()

    def back_to_amount(self):
        self._move("back_to_amount", "amount")
        self._clear_game()
        self.amount = None
        self.choice = None

    def back_to_mode(self):
        self._move("back_to_mode", "mode")
        self._clear_game()
        self.mode = None
        self.amount = None
        self.choice = None

    def can(self, transition: str) -> bool:
        return self.stage in TRANSITIONS[transition]
