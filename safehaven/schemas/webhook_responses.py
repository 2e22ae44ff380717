"""
Response schemas for the SafeHaven webhook ingress and event-log endpoints.
Field aliases keep the provider-facing camelCase wire names.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WebhookAckResponse(_WireModel):
    status: str  # accepted, success, duplicate, error
    message: str
    event_id: Optional[str] = Field(default=None, alias="eventId")
    processed_at: Optional[datetime] = Field(default=None, alias="processedAt")


class DispatcherStats(BaseModel):
    workers: int
    core_workers: int
    max_workers: int
    queue_depth: int
    queue_capacity: int
    in_flight: int
    processed: int
    errors: int
    caller_runs: int
    closed: bool


class WebhookHealthResponse(_WireModel):
    status: str
    statistics: dict[str, int]
    signature_validator_configured: bool = Field(alias="signatureValidatorConfigured")
    dispatcher: Optional[DispatcherStats] = None


class WebhookEventDetail(_WireModel):
    id: str
    event_id: str = Field(alias="eventId")
    event_type: str = Field(alias="eventType")
    related_entity_id: Optional[str] = Field(default=None, alias="relatedEntityId")
    signature_status: str = Field(alias="signatureStatus")
    processing_status: str = Field(alias="processingStatus")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    attempt_count: int = Field(alias="attemptCount")
    created_at: datetime = Field(alias="createdAt")
    processing_started_at: Optional[datetime] = Field(default=None, alias="processingStartedAt")
    processed_at: Optional[datetime] = Field(default=None, alias="processedAt")
    payload: Optional[str] = None

    @classmethod
    def from_event(cls, event, include_payload: bool = True) -> "WebhookEventDetail":
        return cls(
            id=str(event.id),
            event_id=event.event_id,
            event_type=event.event_type,
            related_entity_id=str(event.related_entity_id) if event.related_entity_id else None,
            signature_status=event.signature_status,
            processing_status=event.processing_status,
            error_message=event.error_message,
            attempt_count=event.attempt_count,
            created_at=event.created_at,
            processing_started_at=event.processing_started_at,
            processed_at=event.processed_at,
            payload=event.payload if include_payload else None,
        )


class WebhookEventListResponse(_WireModel):
    events: list[WebhookEventDetail]
    total: int
