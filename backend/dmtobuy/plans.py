"""Plan tiers and the features each one unlocks.

Billing itself lives outside this service; only the resulting tier is stored
on the shop. Unknown plan names fall back to FREE.
"""

from dataclasses import dataclass

from dmtobuy.models import PlanEnum


@dataclass(frozen=True)
class PlanConfig:
    name: str
    cap: int
    dm: bool
    comments: bool
    conversations: bool     # further replies to a sender answered in the last 24h
    followup: bool
    priority_support: bool


PLANS = {
    PlanEnum.free.value: PlanConfig(
        name=PlanEnum.free.value,
        cap=25,
        dm=True,
        comments=False,
        conversations=False,
        followup=False,
        priority_support=False,
    ),
    PlanEnum.growth.value: PlanConfig(
        name=PlanEnum.growth.value,
        cap=500,
        dm=True,
        comments=True,
        conversations=True,
        followup=False,
        priority_support=False,
    ),
    PlanEnum.pro.value: PlanConfig(
        name=PlanEnum.pro.value,
        cap=50000,  # effectively unlimited w/ fair use
        dm=True,
        comments=True,
        conversations=True,
        followup=True,
        priority_support=True,
    ),
}


def get_plan_config(plan) -> PlanConfig:
    """Return the config for `plan` (str or PlanEnum), FREE when unknown."""
    key = plan.value if isinstance(plan, PlanEnum) else plan
    return PLANS.get(key, PLANS[PlanEnum.free.value])


def plans_with_followups() -> list[str]:
    return [name for name, config in PLANS.items() if config.followup]
