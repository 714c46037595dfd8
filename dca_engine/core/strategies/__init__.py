"""
Strategy Modules

Contains the sentiment-driven DCA strategy.
"""
