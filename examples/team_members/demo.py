"""
Helpers for running the team / member example end-to-end.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from emberorm.persistence import PersistenceContext, PersistenceUnit
from emberorm.query import Attr, Page, PageRequest, project
from emberorm.storage import InMemoryStorage, SQLiteStorage

from .models import Member, Team


@dataclass(frozen=True)
class MemberDto:
    id: int
    username: str
    team_name: Optional[str]


def bootstrap_unit(dsn: Optional[str] = None) -> PersistenceUnit:
    """
    Build a persistence unit over SQLite when ``dsn`` is given, in memory otherwise.
    """

    if dsn is None:
        return PersistenceUnit(InMemoryStorage())
    storage = SQLiteStorage.from_url(dsn)
    storage.create_table(Team)
    storage.create_table(Member)
    return PersistenceUnit(storage)


def seed_sample_data(context: PersistenceContext) -> Dict[str, List[int]]:
    """
    Two teams and five members; returns the assigned keys.
    """

    team_a = context.save(Team(name="teamA"))
    team_b = context.save(Team(name="teamB"))
    members = [
        Member(username="member1", age=10, team=team_a),
        Member(username="member2", age=19, team=team_a),
        Member(username="member3", age=20, team=team_b),
        Member(username="member4", age=21, team=team_b),
        Member(username="member5", age=33),
    ]
    for member in members:
        context.save(member)
    context.flush()
    return {
        "teams": [team_a.pk, team_b.pk],
        "members": [member.pk for member in members],
    }


def member_feed(context: PersistenceContext, page: int = 0, size: int = 3) -> Page[MemberDto]:
    """
    Paged member listing projected onto DTOs, usernames descending. Teams are
    fetched with the page and nothing loaded here is tracked for changes.
    """

    request = PageRequest.of(page, size, "-username")
    members = context.find_all(Member, page=request, read_only=True, fetch=("team",))
    return members.map(lambda member: project(member, MemberDto, team_name="team.name"))


def search_members(context: PersistenceContext, *, min_age: int, name_fragment: str = "") -> List[Member]:
    criteria = Attr("age") > min_age
    if name_fragment:
        criteria = criteria & Attr("username").icontains(name_fragment)
    return context.find_all(Member, criteria, order_by=("age",))


def team_rosters(context: PersistenceContext) -> Dict[str, List[str]]:
    """
    Walk each team's lazily loaded member collection.
    """

    return {
        team.name: [member.username for member in team.members]
        for team in context.find_all(Team, order_by=("name",))
    }


def run_demo(dsn: Optional[str] = None) -> List[MemberDto]:
    unit = bootstrap_unit(dsn)
    with unit.open() as context:
        seed_sample_data(context)
    with unit.open() as context:
        feed = member_feed(context, page=0, size=5)
    return feed.content
