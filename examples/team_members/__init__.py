"""
Team / member sample application showcasing EmberORM persistence contexts.
"""

from .demo import (
    MemberDto,
    bootstrap_unit,
    member_feed,
    run_demo,
    search_members,
    seed_sample_data,
    team_rosters,
)
from .models import Member, Team

__all__ = [
    "Member",
    "MemberDto",
    "Team",
    "bootstrap_unit",
    "member_feed",
    "run_demo",
    "search_members",
    "seed_sample_data",
    "team_rosters",
]
