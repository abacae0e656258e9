"""ART planning engine.

Decomposes oversized stories, maps dependencies, allocates work into
iterations and scores the resulting Program Increment plan.
"""

__version__ = "0.4.0"
