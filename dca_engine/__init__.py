"""Sentiment-driven DCA execution engine for delegated smart accounts."""

__version__ = "0.1.0"
