"""Content quality analysis."""
