"""MoneyMatched unclaimed-property import pipeline."""

__version__ = "1.0.0"
