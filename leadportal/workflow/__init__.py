"""Pure lead workflow core: tracks, stage derivation, decisions, notes.

Nothing in this package touches the database, the clock or app config.
"""
