"""
Async Kafka producer.

Publishes one event type:
  stats-recompute-requests — emitted by the admin API when a recompute is
                             requested in the background.
                             Consumed by: the recompute worker.
"""
import json
import logging
from typing import Optional

from aiokafka import AIOKafkaProducer

from storystats.config import settings
from storystats.models import utcnow

logger = logging.getLogger(__name__)


class RecomputeRequestProducer:
    def __init__(self, bootstrap_servers: Optional[str] = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            acks="all",          # wait for all in-sync replicas
            enable_idempotence=True,
        )
        await self._producer.start()
        logger.info("Kafka producer started → %s", self.bootstrap_servers)

    async def stop(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def publish_recompute_request(self, story_ids: Optional[list[str]] = None) -> None:
        """
        Emit a recompute request to the 'stats-recompute-requests' topic.

        Schema:
          { story_ids: [str] | null, requested_at: iso8601 }

        story_ids = null means every published story.
        """
        if self._producer is None:
            raise RuntimeError("Kafka producer not initialised")
        payload = {
            "story_ids": story_ids,
            "requested_at": utcnow().isoformat(),
        }
        await self._producer.send_and_wait(settings.kafka_topic_recompute, payload)
        logger.info(
            "Published recompute request (%s)",
            f"{len(story_ids)} stories" if story_ids is not None else "all stories",
        )
