"""Operation lifecycle, merge readiness, and the merge queue daemon."""
