"""
Outbound webhook payloads.
Field order here is the order on the wire; model_dump_json() emits compact
JSON, and those exact bytes are what gets signed and sent.
"""
from pydantic import BaseModel


class AlertPayload(BaseModel):
    timestamp: str  # RFC 3339, UTC
    alert_name: str
    status: str  # triggered, resolved, test
    condition: str  # occurrences, users_affected
    timeframe: str  # 1m, 5m, 15m, 1h, 1d, 1w, 30d
    alert_id: int
    project_id: int
    team_id: int
    threshold: int
    high_priority: bool

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")


class WebhookConfigWithSecret(BaseModel):
    """Team webhook settings as shown back to the team, secret decrypted."""
    url: str = ""
    secret: str = ""
