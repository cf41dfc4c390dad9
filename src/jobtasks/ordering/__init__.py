"""Task ordering and hierarchy consistency for jobs.

Positions are sparse integers allocated between neighbors, every mutation is
version checked, and batch reorders commit all-or-nothing.
"""
