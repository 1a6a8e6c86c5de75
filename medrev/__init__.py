"""medrev: spaced repetition scheduling and personalised revision notes."""

__version__ = "1.0.0"
