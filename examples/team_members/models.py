"""
Team / member models for the EmberORM example.
"""

from __future__ import annotations

from emberorm.core import ForeignKey, IntegerField, Model, StringField


class Team(Model):
    name = StringField(nullable=False, max_length=100)

    class Meta:
        table = "team"


class Member(Model):
    username = StringField(nullable=False, max_length=100)
    age = IntegerField(default=0)
    team = ForeignKey(Team, related_name="members")

    class Meta:
        table = "member"
