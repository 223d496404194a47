"""
Operations Desk
Reference models owned by neighbouring systems.

Models:
    - Client:       firm client (display name only; contact records live elsewhere)
    - StaffMember:  staff user who can be assigned checklist work
    - TimeEntry:    logged time; operation tasks hold a weak link to one entry

These tables are written by the client, staff and time-tracking modules.
The checklist core only reads them and stores foreign keys into them.
"""

from datetime import datetime, timezone

from opsdesk.models import db


STAFF_ROLES = {"admin", "employee"}


class Client(db.Model):
    """Firm client. Only the fields the checklist board displays."""

    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Client {self.id}: {self.name}>"


class StaffMember(db.Model):
    """Staff user reference (authentication is handled elsewhere)."""

    __tablename__ = "staff_members"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=True)
    role = db.Column(db.String(20), nullable=False, default="employee",
                     comment="admin | employee")

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint("role IN ('admin','employee')", name="ck_staff_member_role"),
    )

    def to_summary(self):
        return {"id": self.id, "name": self.name}

    def __repr__(self):
        return f"<StaffMember {self.id}: {self.name}>"


class TimeEntry(db.Model):
    """
    Logged time. Created and deleted by the time-tracking module.
    A checklist task may point at one entry; deleting the entry nulls the link.
    """

    __tablename__ = "time_entries"

    id = db.Column(db.Integer, primary_key=True)
    staff_member_id = db.Column(
        db.Integer, db.ForeignKey("staff_members.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    work_date = db.Column(db.Date, nullable=False)
    hours = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    staff_member = db.relationship("StaffMember")

    def to_summary(self):
        return {
            "id": self.id,
            "work_date": self.work_date.isoformat() if self.work_date else None,
            "hours": float(self.hours) if self.hours is not None else None,
            "user_name": self.staff_member.name if self.staff_member else None,
        }

    def __repr__(self):
        return f"<TimeEntry {self.id}: {self.work_date} {self.hours}h>"
