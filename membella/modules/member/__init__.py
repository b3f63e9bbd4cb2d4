"""Member directory: owners (tenants), their members and their plans.

The payment workflow only reads these records.
"""

from membella.modules.member.models import Member, Owner, Plan
from membella.modules.member.repository import MemberRepository

__all__ = ["Owner", "Member", "Plan", "MemberRepository"]
