"""
Risk & Obligation Calculator.

Derives an additive risk score and a list of follow-up obligations from a
single authorization request.  Both are computed from the request alone
(plus the acting role, for field masking) and are independent of whether
the decision ends up allowing or denying.

**Risk score** -- sum of the configured weights for each factor present:

* off-hours evaluation time (before business start or after business end)
* ``export`` action
* ``High`` resource sensitivity
* high-risk resource type
* high-risk action (``export``, ``delete``)

There is no cap and no running total across requests.

**Obligations** -- generated independently of the numeric score:

* off-hours               -> step-up MFA
* patient-profile read by a non-front-desk role -> mask identifying fields
* high-risk action        -> log prominently
* export                  -> caller must supply an approval ticket reference
* bulk access             -> rate limit per minute

The evaluation time is passed in explicitly; when omitted the local wall
clock is read once per call.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from clinigate.config import EngineConfig, RiskSettings
from clinigate.models import (
    AuthorizationRequest,
    Obligation,
    ObligationType,
    RiskAssessment,
    Sensitivity,
)


def is_off_hours(now: datetime, settings: RiskSettings) -> bool:
    """Whether ``now`` falls outside business hours."""
    return now.hour < settings.business_hours_start or now.hour > settings.business_hours_end


def calculate_risk_score(
    request: AuthorizationRequest,
    config: EngineConfig,
    now: Optional[datetime] = None,
) -> int:
    """Compute the additive risk score for a request.

    Args:
        request: The authorization request.
        config: Engine configuration (weights and high-risk sets).
        now: Evaluation time; defaults to the local wall clock.

    Returns:
        A non-negative integer.
    """
    settings = config.risk
    now = now or datetime.now()
    score = 0

    if is_off_hours(now, settings):
        score += settings.off_hours_weight
    if request.action == settings.export_action:
        score += settings.export_weight
    if request.resource_sensitivity == Sensitivity.HIGH:
        score += settings.high_sensitivity_weight
    if request.resource_type in config.resources.high_risk:
        score += settings.high_risk_resource_weight
    if request.action in settings.high_risk_actions:
        score += settings.high_risk_action_weight

    return score


def derive_obligations(
    request: AuthorizationRequest,
    role: str,
    config: EngineConfig,
    now: Optional[datetime] = None,
) -> list[Obligation]:
    """Build the obligations that apply to a request, in a fixed order."""
    settings = config.risk
    now = now or datetime.now()
    obligations: list[Obligation] = []

    if is_off_hours(now, settings):
        obligations.append(Obligation(type=ObligationType.STEP_UP_MFA, reason="off_hours"))

    if (
        request.resource_type in config.resources.masked_profile
        and role not in settings.unmasked_roles
    ):
        obligations.append(Obligation(
            type=ObligationType.MASK_FIELDS,
            masked_fields=list(settings.masked_fields),
            reason="privacy_minimization",
        ))

    if request.action in settings.high_risk_actions:
        obligations.append(Obligation(type=ObligationType.LOG_HIGH_RISK, reason="high_risk_action"))

    if request.action == settings.export_action:
        obligations.append(Obligation(
            type=ObligationType.REQUIRE_APPROVAL_REF,
            required_field=settings.approval_ref_field,
        ))

    if request.environment.is_bulk:
        obligations.append(Obligation(
            type=ObligationType.RATE_LIMIT,
            limit_per_minute=settings.bulk_rate_limit_per_minute,
            reason="bulk_access_control",
        ))

    return obligations


def assess(
    request: AuthorizationRequest,
    role: str,
    config: EngineConfig,
    now: Optional[datetime] = None,
) -> RiskAssessment:
    """Score a request and derive its obligations against one clock reading."""
    now = now or datetime.now()
    return RiskAssessment(
        risk_score=calculate_risk_score(request, config, now),
        obligations=derive_obligations(request, role, config, now),
    )
