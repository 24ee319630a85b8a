"""Dynamic-entity source: a producer's property fields."""

import logging

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.producer import Producer, ProducerField
from app.services.checklist_types import DynamicEntity

logger = logging.getLogger(__name__)


def list_entities(producer_id: str | None) -> list[DynamicEntity]:
    """Property fields of ``producer_id`` in display order; empty for unknown producers."""
    if not producer_id:
        return []
    rows = (
        ProducerField.query
        .filter_by(producer_id=producer_id)
        .order_by(ProducerField.order, ProducerField.name)
        .all()
    )
    return [DynamicEntity(id=row.id, name=row.name) for row in rows]


def entity_names(producer_id: str | None) -> dict[str, str]:
    return {e.id: e.name for e in list_entities(producer_id) if e.name}


def create_producer(data: dict) -> Producer:
    """Create a producer with optional ``fields`` [{name, area}]."""
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Producer name is required", details={"name": "required"})
    producer = Producer(name=name, identifier=data.get("identifier"))
    for idx, f in enumerate(data.get("fields") or []):
        if not (f.get("name") or "").strip():
            raise ValidationError("Field name is required", details={f"fields[{idx}].name": "required"})
        field = ProducerField(name=f["name"], area=f.get("area"), order=f.get("order", idx))
        if f.get("id"):
            field.id = str(f["id"])
        producer.fields.append(field)
    db.session.add(producer)
    db.session.commit()
    logger.info("Producer created: %s", producer.id, extra={"event_type": "producer.create"})
    return producer


def get_producer(producer_id: str) -> Producer:
    producer = db.session.get(Producer, producer_id)
    if not producer:
        raise NotFoundError(resource="Producer", resource_id=producer_id)
    return producer
