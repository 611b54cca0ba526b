"""Edge cache-and-refresh proxy for CEX and DEX top movers."""

__version__ = "0.1.0"
