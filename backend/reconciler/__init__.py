"""
Meet reconciler.
Detects meets whose local result count diverges from the remote source,
remembers completeness decisions in a durable ledger, and re-resolves
ambiguous competitor identities with an escalating, rate-limited search.
"""
