from tortoise import fields, models
import uuid


class AuditLog(models.Model):
    """Append-only trail of who did what. Writes are best-effort."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    user_id = fields.CharField(max_length=64, null=True)
    restaurant_id = fields.UUIDField(null=True)
    entity_type = fields.CharField(max_length=64)
    entity_id = fields.UUIDField(null=True)
    action = fields.CharField(max_length=64)
    details = fields.JSONField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "audit_logs"
        indexes = [
            ("restaurant_id", "created_at"),
            ("entity_type", "entity_id"),
        ]
