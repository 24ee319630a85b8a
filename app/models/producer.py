"""
Producers — checklist respondents and their property fields.

A ProducerField is the dynamic entity that iterate-over-fields sections are
cloned for (e.g. one farm plot per clone).
"""

import uuid
from datetime import datetime, timezone

from app.models import db


def _uuid():
    return str(uuid.uuid4())


class Producer(db.Model):
    """Respondent of one or more checklists."""

    __tablename__ = "producers"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(255), nullable=False)
    identifier = db.Column(db.String(100), nullable=True, comment="Tax id or e-mail")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    fields = db.relationship(
        "ProducerField", backref="producer", lazy="select",
        cascade="all, delete-orphan", order_by="ProducerField.order",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "identifier": self.identifier,
            "fields": [f.to_dict() for f in self.fields],
        }


class ProducerField(db.Model):
    """Property field (plot) belonging to a producer."""

    __tablename__ = "producer_fields"

    id = db.Column(db.String(64), primary_key=True, default=_uuid)
    producer_id = db.Column(
        db.String(36), db.ForeignKey("producers.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    area = db.Column(db.String(50), nullable=True, comment="e.g. '15.5 ha'")
    order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "area": self.area}
