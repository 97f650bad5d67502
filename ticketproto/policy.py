from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping

from ticketproto.constants import POLICY_TIER_ENV
from ticketproto.errors import UsageError

POLICY_TIERS = ("integrity", "warn", "quality", "opt-in", "strict", "hard")
ENFORCEMENT_LEVELS = ("off", "warn", "fail")
DEFAULT_POLICY_TIER = "integrity"


@dataclass(frozen=True)
class PolicyTierProfile:
    tier: str
    quality: str
    strict: str
    integrity: str = "fail"

    def to_dict(self) -> dict[str, str]:
        return {
            "tier": self.tier,
            "integrity": self.integrity,
            "quality": self.quality,
            "strict": self.strict,
        }


TIER_PROFILES = {
    "integrity": PolicyTierProfile("integrity", quality="off", strict="off"),
    "warn": PolicyTierProfile("warn", quality="warn", strict="off"),
    "quality": PolicyTierProfile("quality", quality="fail", strict="off"),
    "opt-in": PolicyTierProfile("opt-in", quality="warn", strict="warn"),
    "strict": PolicyTierProfile("strict", quality="fail", strict="fail"),
    "hard": PolicyTierProfile("hard", quality="fail", strict="fail"),
}


def normalize_tier(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    normalized = raw.strip().lower()
    if normalized == "opt_in":
        normalized = "opt-in"
    return normalized if normalized in TIER_PROFILES else None


def parse_tier(raw: Any, source: str) -> str:
    tier = normalize_tier(raw)
    if tier:
        return tier
    allowed = ", ".join(POLICY_TIERS)
    raise UsageError(
        f"Invalid policy tier '{raw}' from {source}. Allowed: {allowed}",
        code="invalid_policy_tier",
        details={"source": source, "raw": raw, "allowed": list(POLICY_TIERS)},
    )


def tier_from_config(config: Mapping[str, Any] | None) -> Any:
    """Read ``policy_tier: x`` or ``policy: {tier: x}`` from a loaded config."""
    if not config:
        return None
    policy = config.get("policy")
    if isinstance(policy, Mapping) and policy.get("tier") not in (None, ""):
        return policy["tier"]
    value = config.get("policy_tier")
    return None if value == "" else value


def get_profile(tier: str) -> PolicyTierProfile:
    return TIER_PROFILES[parse_tier(tier, "argument")]


def resolve_policy_tier(
    override: str | None = None,
    env: Mapping[str, str] | None = None,
    config: Mapping[str, Any] | None = None,
) -> PolicyTierProfile:
    """Resolve the active tier: override, then environment, then config, then the default."""
    env = os.environ if env is None else env
    if override:
        return TIER_PROFILES[parse_tier(override, "cli")]
    if env.get(POLICY_TIER_ENV):
        return TIER_PROFILES[parse_tier(env[POLICY_TIER_ENV], "env")]
    configured = tier_from_config(config)
    if configured is not None:
        return TIER_PROFILES[parse_tier(configured, "config")]
    return TIER_PROFILES[DEFAULT_POLICY_TIER]
