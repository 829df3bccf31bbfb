"""Cancellation reports — a party's complaint about how an assignment ended.

Reports are written once by the seeker or writer and read by admins.
Names are copied in at filing time so the report stays readable after
either account is removed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from assignhub.models.user import UserRole


@dataclass(frozen=True)
class CancellationReport:
    report_id: str
    assignment_id: str
    assignment_title: str
    reporter_id: str
    reporter_name: str
    reporter_role: UserRole
    reported_user_id: str
    reported_user_name: str
    reason: str
    created_utc: datetime
