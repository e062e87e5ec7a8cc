# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
GetUserStatus response parsing.

Turns the raw ``userStatus`` payload of the language server into a frozen
QuotaSnapshot. Everything here is pure: the same payload and the same
``now`` always produce the same snapshot.

Absence is preserved rather than zero-filled: a credit pool without a
positive monthly allowance is omitted, and user info is only built when the
payload names the user or their tier.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..core.types import (
    CreditsInfo,
    ModelQuota,
    QuotaSnapshot,
    TokenUsageInfo,
    UserInfo,
)

UNKNOWN_RESET = "Unknown"

# fromisoformat() before 3.11 only takes 3 or 6 fractional digits
_FRACTION_PATTERN = re.compile(r"\.(\d+)")


# =============================================================================
# FORMATTING
# =============================================================================


def format_time_until_reset(ms: float) -> str:
    """
    Format a countdown in milliseconds.

    Examples:
        0 -> "Ready"
        150000 -> "3m"
        5400000 -> "1h 30m"
    """
    if ms <= 0:
        return "Ready"
    minutes = math.ceil(ms / 60000)
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60}m"


# =============================================================================
# FIELD COERCION
# =============================================================================


def _to_number(value: Any) -> Optional[float]:
    """Numeric value of a field; int64 fields arrive as JSON strings."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _clamp_percentage(value: float) -> float:
    return max(0.0, min(100.0, value))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp into an aware UTC datetime.

    Handles the "Z" suffix and nanosecond precision. Returns None for
    missing or unparseable values.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# =============================================================================
# SECTION PARSERS
# =============================================================================


def _build_credits(monthly_raw: Any, available_raw: Any) -> Optional[CreditsInfo]:
    """Credit pool, or None unless monthly > 0 and available is present."""
    monthly = _to_number(monthly_raw)
    available = _to_number(available_raw)
    if monthly is None or available is None or monthly <= 0:
        return None

    remaining = _clamp_percentage(available / monthly * 100)
    return CreditsInfo(
        available=available,
        monthly=monthly,
        used_percentage=100.0 - remaining,
        remaining_percentage=remaining,
    )


def _build_token_usage(
    prompt: Optional[CreditsInfo], flow: Optional[CreditsInfo]
) -> Optional[TokenUsageInfo]:
    if prompt is None and flow is None:
        return None

    total_available = (prompt.available if prompt else 0.0) + (flow.available if flow else 0.0)
    total_monthly = (prompt.monthly if prompt else 0.0) + (flow.monthly if flow else 0.0)
    overall = (
        _clamp_percentage(total_available / total_monthly * 100)
        if total_monthly > 0
        else 0.0
    )
    return TokenUsageInfo(
        total_available=total_available,
        total_monthly=total_monthly,
        overall_remaining_percentage=overall,
        prompt_credits=prompt,
        flow_credits=flow,
    )


def _build_user_info(
    user_status: Mapping[str, Any], plan_info: Mapping[str, Any], available_prompt: Any
) -> Optional[UserInfo]:
    user_tier = user_status.get("userTier") or {}
    if not (user_status.get("name") or user_tier or user_status.get("email")):
        return None

    return UserInfo(
        name=user_status.get("name"),
        email=user_status.get("email"),
        tier=user_tier.get("name") or plan_info.get("teamsTier"),
        tier_id=user_tier.get("id"),
        tier_description=user_tier.get("description"),
        plan_name=plan_info.get("planName"),
        teams_tier=plan_info.get("teamsTier"),
        upgrade_uri=user_tier.get("upgradeSubscriptionUri"),
        upgrade_text=user_tier.get("upgradeSubscriptionText"),
        browser_enabled=plan_info.get("browserEnabled"),
        knowledge_base_enabled=plan_info.get("knowledgeBaseEnabled"),
        can_buy_more_credits=plan_info.get("canBuyMoreCredits"),
        monthly_prompt_credits=_to_number(plan_info.get("monthlyPromptCredits")),
        available_prompt_credits=_to_number(available_prompt),
    )


def _build_models(user_status: Mapping[str, Any], now: datetime) -> List[ModelQuota]:
    config_data = user_status.get("cascadeModelConfigData") or {}
    raw_models = config_data.get("clientModelConfigs") or []

    models = []
    for raw in raw_models:
        if not isinstance(raw, Mapping):
            continue
        quota_info = raw.get("quotaInfo")
        if not quota_info:
            continue

        fraction = _to_number(quota_info.get("remainingFraction"))
        if fraction is None:
            fraction = 0.0

        reset_time = parse_timestamp(quota_info.get("resetTime"))
        if reset_time is None:
            time_until_reset = UNKNOWN_RESET
        else:
            diff_ms = (reset_time - now).total_seconds() * 1000
            time_until_reset = format_time_until_reset(diff_ms)

        model_or_alias = raw.get("modelOrAlias") or {}
        models.append(
            ModelQuota(
                label=raw.get("label") or "",
                model_id=model_or_alias.get("model") or "unknown",
                remaining_percentage=_clamp_percentage(fraction * 100),
                is_exhausted=fraction == 0,
                reset_time=reset_time,
                time_until_reset=time_until_reset,
            )
        )
    return models


# =============================================================================
# PUBLIC API
# =============================================================================


def parse_user_status(
    raw: Mapping[str, Any], now: Optional[datetime] = None
) -> QuotaSnapshot:
    """
    Build a QuotaSnapshot from a GetUserStatus response.

    Args:
        raw: Decoded response body; must contain "userStatus"
        now: Reference time for reset countdowns and the snapshot
             timestamp; defaults to the current UTC time

    Returns:
        The normalized snapshot

    Raises:
        KeyError: If the payload has no userStatus object
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    user_status = raw.get("userStatus") if isinstance(raw, Mapping) else None
    if not isinstance(user_status, Mapping):
        raise KeyError("userStatus")

    plan_status: Dict[str, Any] = user_status.get("planStatus") or {}
    plan_info: Dict[str, Any] = plan_status.get("planInfo") or {}
    available_prompt = plan_status.get("availablePromptCredits")

    prompt_credits = _build_credits(plan_info.get("monthlyPromptCredits"), available_prompt)
    flow_credits = _build_credits(
        plan_info.get("monthlyFlowCredits"), plan_status.get("availableFlowCredits")
    )

    return QuotaSnapshot(
        timestamp=now,
        prompt_credits=prompt_credits,
        flow_credits=flow_credits,
        token_usage=_build_token_usage(prompt_credits, flow_credits),
        user_info=_build_user_info(user_status, plan_info, available_prompt),
        models=tuple(_build_models(user_status, now)),
    )
