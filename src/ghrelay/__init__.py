"""ghrelay: GitHub App credential relay.

Mints app assertions, exchanges them for installation tokens on demand, and
records every HTTP exchange it takes part in to an append-only log.
"""
