from tortoise import fields, models
import uuid


class ProcessedEvent(models.Model):
    """
    Idempotency markers for side effects that must run at most once per
    business event, e.g. 'sale-deduction:<order_id>'. The marker is written in
    the same transaction as the effect it guards.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    event_id = fields.CharField(max_length=128, unique=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "processed_events"
