"""pq - Profile Querier.

pq keeps a parsed performance profile resident in a per-session background
daemon so that repeated command-line queries do not pay the parse cost again.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
