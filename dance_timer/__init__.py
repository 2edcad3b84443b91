"""Dance hall session timer with half-song billing."""

__version__ = "0.1.0"
