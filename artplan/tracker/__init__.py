"""Boundary to the external work-tracking system."""
