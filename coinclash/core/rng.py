import secrets


class TrueRNG:
    """
    A wrapper around Python's `secrets` module to provide cryptographically strong
    random outcomes for real-money games. Never backed by `random`.
    """

    COIN_SIDES = ("heads", "tails")

    @staticmethod
    def random_bit() -> int:
        """Returns 0 or 1 with equal probability."""
        return secrets.randbits(1)

    def coin_flip(self) -> str:
        """Returns "heads" or "tails" from one unbiased bit."""
        return self.COIN_SIDES[self.random_bit()]

    @staticmethod
    def random_choice(options):
        """Returns a random element from a non-empty sequence."""
        if not options:
            raise IndexError("Cannot choose from an empty sequence")
        return secrets.choice(options)


rng = TrueRNG()
