"""
Point multipliers for action events.

  channel depth   call/facetime/meet x1.3, email/slack x1.15, sms x1.0, deeplink x0.9
  customization   custom x1.4, heavy x1.25, light x1.1, untouched x1.0
  group / intro   x1.2 when the action touches two or more contacts
  freshness       +25 points (additive), linear decay from day 14 to day 21

Pure functions, no I/O.
"""

from typing import Optional

from touchcrm.models import MultiplierResult

CHANNEL_DEPTH = {
    'call': 1.3,
    'facetime': 1.3,
    'meet': 1.3,
    'email': 1.15,
    'slack': 1.15,
    'sms': 1.0,
    'deeplink': 0.9,
}

CUSTOMIZATION = {
    'untouched': 1.0,
    'light': 1.1,
    'heavy': 1.25,
    'custom': 1.4,
}

GROUP_INTRO = 1.2
FRESHNESS_BOOST = 25.0
FRESHNESS_DECAY_START = 14
FRESHNESS_DECAY_END = 21


def channel_multiplier(channel: Optional[str] = None) -> float:
    if not channel:
        return 1.0
    return CHANNEL_DEPTH.get(channel, 1.0)


def customization_multiplier(level: Optional[str] = None) -> float:
    if not level:
        return 1.0
    if level not in CUSTOMIZATION:
        raise ValueError(f"Unknown customization level: {level!r}")
    return CUSTOMIZATION[level]


def group_multiplier(is_multi_contact: bool) -> float:
    return GROUP_INTRO if is_multi_contact else 1.0


def freshness_bonus(is_fresh: bool, days_since_first_seen: float) -> float:
    """Full bonus up to day 14, linear decay to 0 at day 21, nothing for contacts that aren't fresh."""
    if not is_fresh:
        return 0.0
    if days_since_first_seen <= FRESHNESS_DECAY_START:
        return FRESHNESS_BOOST
    if days_since_first_seen < FRESHNESS_DECAY_END:
        progress = (days_since_first_seen - FRESHNESS_DECAY_START) / (FRESHNESS_DECAY_END - FRESHNESS_DECAY_START)
        return FRESHNESS_BOOST * (1 - progress)
    return 0.0


def compute_multipliers(
    channel: Optional[str] = None,
    customization_level: Optional[str] = None,
    is_multi_contact: bool = False,
    is_fresh: bool = False,
    days_since_first_seen: float = 0,
) -> MultiplierResult:
    channel_depth = channel_multiplier(channel)
    customization = customization_multiplier(customization_level)
    group_intro = group_multiplier(is_multi_contact)
    bonus = freshness_bonus(is_fresh, days_since_first_seen)

    # Only non-default values are stored with the event
    applied = {}
    if channel_depth != 1.0:
        applied['channel_depth'] = channel_depth
    if customization != 1.0:
        applied['customization'] = customization
    if group_intro != 1.0:
        applied['group_intro'] = group_intro
    if bonus > 0:
        applied['freshness_boost'] = bonus

    return MultiplierResult(
        channel_depth=channel_depth,
        customization=customization,
        group_intro=group_intro,
        freshness_bonus=bonus,
        total_multiplier=channel_depth * customization * group_intro,
        applied=applied,
    )


def apply_multipliers(base: float, result: MultiplierResult) -> float:
    return base * result.total_multiplier + result.freshness_bonus


def final_points(base: float, **params) -> tuple:
    """Returns (final_points, MultiplierResult) for the given base points and multiplier inputs."""
    result = compute_multipliers(**params)
    return apply_multipliers(base, result), result
