"""
Snowball distribution engine.

Grows a repository's member list virally while bounding fan-out:

    intake      bulk CSV uploads and single referrals -> candidates
    scoring     deterministic quality score in [0, 1]
    dedup       last-contact ledger per (repository, email hash)
    candidates  candidate persistence and listing
    propagation hop-bounded approval / rejection state machine
    membership  atomic member writes and counters
    distribution / workers
                outbound delivery jobs with retries and rate limits
    engine      wiring from settings
"""
