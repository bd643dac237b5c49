"""Database query functions for Pipewright.

Query functions add, flush and execute against a caller-provided session.
They never commit: the caller owns the transaction so that related writes
(a state transition and the next stage's queue entry) commit together.
"""
