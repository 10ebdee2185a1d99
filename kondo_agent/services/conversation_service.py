from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from kondo_agent.logging_config import get_logger
from kondo_agent.models import Agency, Conversation, ConversationMessage
from kondo_agent.services import message_service

logger = get_logger("conversation_service")

CONVERSATION_ACTIVE = "active"


class CounterpartyStore(ABC):
    """Lookup and registration of counterparties (agencies) by channel address."""

    @abstractmethod
    def find_by_address(self, db: Session, channel_address: str) -> Optional[Agency]:
        pass

    @abstractmethod
    def create(
        self,
        db: Session,
        channel_address: str,
        name: str,
        *,
        confidence: float,
        first_message: str,
    ) -> Agency:
        pass


class ConversationRegistry(ABC):
    """Conversation records and their message log."""

    @abstractmethod
    def find_or_create(
        self,
        db: Session,
        agency_id: int,
        channel_address: str,
        display_name: Optional[str] = None,
    ) -> Conversation:
        pass

    @abstractmethod
    def save_message(
        self,
        db: Session,
        conversation_id: int,
        direction: str,
        content: str,
        *,
        message_type: str = "text",
        external_message_id: Optional[str] = None,
        message_metadata: Optional[dict] = None,
    ) -> ConversationMessage:
        pass

    @abstractmethod
    def get_history(
        self,
        db: Session,
        conversation_id: int,
        *,
        limit: int = 10,
        before: Optional[datetime] = None,
        exclude_external_id: Optional[str] = None,
    ) -> list[ConversationMessage]:
        pass


class SqlCounterpartyStore(CounterpartyStore):
    def find_by_address(self, db: Session, channel_address: str) -> Optional[Agency]:
        return db.query(Agency).filter(Agency.phone_number == channel_address).first()

    def create(
        self,
        db: Session,
        channel_address: str,
        name: str,
        *,
        confidence: float,
        first_message: str,
    ) -> Agency:
        """Register an agency; a concurrent insert for the same number returns the winner's row."""
        existing = self.find_by_address(db, channel_address)
        if existing is not None:
            return existing

        now = datetime.now(timezone.utc)
        agency = Agency(
            name=name,
            phone_number=channel_address,
            description="Auto-created from WhatsApp conversation",
            is_active=True,
            agency_metadata={
                "created_from": "agentic_verification",
                "confidence_score": confidence,
                "first_message": first_message,
                "verified_at": now.isoformat(),
            },
            created_at=now,
            updated_at=now,
        )
        db.add(agency)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            existing = self.find_by_address(db, channel_address)
            if existing is None:
                raise
            return existing

        logger.info(
            "Created agency",
            extra={"context": {"agency_id": agency.id, "agency_name": name, "channel_address": channel_address}},
        )
        return agency


class SqlConversationRegistry(ConversationRegistry):
    def find_or_create(
        self,
        db: Session,
        agency_id: int,
        channel_address: str,
        display_name: Optional[str] = None,
    ) -> Conversation:
        """Find active conversation or create new one."""
        conversation = (
            db.query(Conversation)
            .filter(
                Conversation.agency_id == agency_id,
                Conversation.channel_address == channel_address,
                Conversation.status == CONVERSATION_ACTIVE,
            )
            .order_by(Conversation.id)
            .first()
        )

        if not conversation:
            now = datetime.now(timezone.utc)
            conversation = Conversation(
                agency_id=agency_id,
                channel_address=channel_address,
                status=CONVERSATION_ACTIVE,
                display_name=display_name,
                conversation_metadata={"created_by": "agentic_orchestrator", "created_at": now.isoformat()},
                created_at=now,
                updated_at=now,
            )
            db.add(conversation)
            db.flush()
            logger.info(
                "Created conversation",
                extra={"context": {"conversation_id": conversation.id, "agency_id": agency_id}},
            )

        return conversation

    def save_message(
        self,
        db: Session,
        conversation_id: int,
        direction: str,
        content: str,
        *,
        message_type: str = "text",
        external_message_id: Optional[str] = None,
        message_metadata: Optional[dict] = None,
    ) -> ConversationMessage:
        return message_service.save_message(
            db,
            conversation_id,
            direction,
            content,
            message_type=message_type,
            external_message_id=external_message_id,
            message_metadata=message_metadata,
        )

    def get_history(
        self,
        db: Session,
        conversation_id: int,
        *,
        limit: int = 10,
        before: Optional[datetime] = None,
        exclude_external_id: Optional[str] = None,
    ) -> list[ConversationMessage]:
        return message_service.get_history(
            db,
            conversation_id,
            limit=limit,
            before=before,
            exclude_external_id=exclude_external_id,
        )
