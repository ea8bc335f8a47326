"""Core boosting data structures and bookkeeping."""
