"""
Clinigate Access Control Core
=============================

The authorization core of a hospital information platform.  For every
attempted operation it produces an allow/deny decision with reason codes,
a risk score and follow-up obligations, and it leaves an append-only,
hash-chained audit record.

Permission changes suggested by an external recommender are queued as
Pending suggestions and reach a principal's ad-hoc permission set only
through explicit human approval.

Denials are ordinary return values, not exceptions.  Obligations and deny
reasons are advisory: callers enforce them.
"""

__version__ = "0.1.0"
