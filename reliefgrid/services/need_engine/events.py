"""Need status change events.

When an evaluation changes a key's status, a `need.status.changed` event
is published to a Kinesis stream so maps and coordination queues can
refresh without polling.

Publishing happens after the state and audit are committed; a publish
failure is logged CRITICAL for alerting and never fails the evaluation.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import uuid

from reliefgrid.shared.models import NeedKey, NeedStatus, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NeedStatusChangeEvent:
    """Immutable status change notification."""
    event_id: str
    key: NeedKey
    previous_status: NeedStatus
    new_status: NeedStatus
    audit_id: str
    reasoning: str = ""
    guardrails_applied: List[str] = field(default_factory=list)
    event_type: str = "need.status.changed"
    timestamp: datetime = field(default_factory=utc_now)

    def to_kinesis_payload(self) -> dict:
        """Convert to Kinesis record payload.

        Returns:
            Dictionary for Kinesis put_record Data field
        """
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "source": "need-engine",
            "data": {
                **self.key.to_dict(),
                "previous_status": self.previous_status.value,
                "new_status": self.new_status.value,
                "need_level": self.new_status.need_level.value,
                "audit_id": self.audit_id,
                "reasoning": self.reasoning,
                "guardrails_applied": list(self.guardrails_applied),
            }
        }


class NeedStatusPublisher:
    """Publishes status change events to Kinesis.

    Failure Handling:
        - Publishing failure does NOT roll back the evaluation
        - Failures are logged at CRITICAL level with the payload so the
          event can be replayed by hand
    """

    def __init__(
        self,
        stream_name: str = "reliefgrid-need-status",
        enabled: bool = True,
        region: Optional[str] = None,
    ):
        """Initialize publisher.

        Args:
            stream_name: Kinesis stream name
            enabled: Whether publishing is enabled (disable for local dev)
            region: AWS region (defaults to AWS_REGION env var)
        """
        self.stream_name = stream_name
        self.enabled = enabled
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kinesis_client = None

        logger.info(
            "NEED_STATUS_PUBLISHER_INITIALIZED",
            extra={
                "stream_name": stream_name,
                "enabled": enabled,
                "region": self.region,
            }
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None and self.enabled:
            try:
                import boto3
                self._kinesis_client = boto3.client(
                    "kinesis",
                    region_name=self.region,
                )
            except Exception as e:
                logger.error(
                    "KINESIS_CLIENT_INIT_FAILED",
                    extra={"error": str(e)}
                )
        return self._kinesis_client

    def publish_status_change(
        self,
        key: NeedKey,
        previous_status: NeedStatus,
        new_status: NeedStatus,
        audit_id: str,
        reasoning: str = "",
        guardrails_applied: Optional[List[str]] = None,
    ) -> bool:
        """Publish one status change.

        Returns:
            True if published successfully, False otherwise
        """
        if not self.enabled:
            logger.debug(
                "NEED_STATUS_PUBLISH_SKIPPED",
                extra={"key": str(key), "reason": "publishing_disabled"}
            )
            return False

        event = NeedStatusChangeEvent(
            event_id=f"evt_{uuid.uuid4().hex[:12]}",
            key=key,
            previous_status=previous_status,
            new_status=new_status,
            audit_id=audit_id,
            reasoning=reasoning,
            guardrails_applied=list(guardrails_applied or []),
        )
        payload = event.to_kinesis_payload()

        try:
            if self.kinesis_client is None:
                logger.critical(
                    "NEED_STATUS_EVENT_FALLBACK_LOG",
                    extra={
                        "event_id": event.event_id,
                        "payload": json.dumps(payload),
                        "reason": "kinesis_client_unavailable",
                    }
                )
                return False

            response = self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(payload),
                PartitionKey=str(key),  # Same key -> same shard, ordered
            )

            logger.info(
                "NEED_STATUS_EVENT_PUBLISHED",
                extra={
                    "event_id": event.event_id,
                    "key": str(key),
                    "previous_status": previous_status.value,
                    "new_status": new_status.value,
                    "shard_id": response.get("ShardId"),
                    "sequence_number": response.get("SequenceNumber"),
                }
            )
            return True

        except Exception as e:
            # State and audit are already committed
            logger.critical(
                "NEED_STATUS_EVENT_PUBLISH_FAILED",
                extra={
                    "event_id": event.event_id,
                    "key": str(key),
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "payload": json.dumps(payload),
                }
            )
            return False
