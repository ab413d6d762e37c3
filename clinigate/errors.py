"""
Error taxonomy for Clinigate.

Denials are never exceptions: the decision engine returns
``allowed=False`` with reason codes.  The classes below cover the failures
that *are* exceptional -- missing records, illegal suggestion transitions,
missing authentication, and recommender outages.

Each error carries an HTTP-like ``status_code`` so the audit interceptor
can label the record it writes without knowing about the transport layer.
"""

from __future__ import annotations


class ClinigateError(Exception):
    """Base class for all Clinigate errors."""

    status_code: int = 500


class NotFoundError(ClinigateError):
    """Raised when a principal, permission, or suggestion does not exist."""

    status_code = 404


class InvalidStateError(ClinigateError):
    """Raised when a reviewer acts on a suggestion that is no longer Pending."""

    status_code = 409


class AuthenticationRequiredError(ClinigateError):
    """Raised when an operation needs a principal and none is authenticated."""

    status_code = 401


class RecommenderError(ClinigateError):
    """Raised when the external permission recommender cannot be reached
    or answers with an error status."""

    status_code = 502
