from kondo_agent.models.agency import Agency
from kondo_agent.models.conversation import Conversation
from kondo_agent.models.message import ConversationMessage
from kondo_agent.models.queue_job import QueueJob

__all__ = [
    "Agency",
    "Conversation",
    "ConversationMessage",
    "QueueJob",
]
