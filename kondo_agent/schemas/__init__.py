from kondo_agent.schemas.queue import QueueJobResponse, QueueStatsResponse
from kondo_agent.schemas.webhook import WebhookPayload, WebhookResponse

__all__ = ["WebhookPayload", "WebhookResponse", "QueueJobResponse", "QueueStatsResponse"]
