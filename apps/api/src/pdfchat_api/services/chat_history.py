from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import uuid

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from pdfchat_api.models import ChatMessageRecord, ResponseFormat


@dataclass(frozen=True)
class ChatHistoryItem:
    id: str
    document_id: str
    question: str
    answer: str
    response_format: str
    created_at: datetime


@dataclass(frozen=True)
class ChatHistoryPage:
    items: list[ChatHistoryItem]
    page: int
    size: int
    total: int


def record_exchange(
    engine: Engine,
    *,
    document_id: str,
    question: str,
    answer: str,
    response_format: ResponseFormat,
) -> str:
    message_id = str(uuid.uuid4())
    with Session(engine) as session:
        session.add(
            ChatMessageRecord(
                id=message_id,
                document_id=document_id,
                question=question,
                answer=answer,
                response_format=response_format.value,
                created_at=datetime.now(timezone.utc),
            )
        )
        session.commit()
    return message_id


def get_history(engine: Engine, *, page: int, size: int) -> ChatHistoryPage:
    if page < 0:
        raise ValueError("page must be >= 0")
    if size <= 0:
        raise ValueError("size must be > 0")

    with Session(engine) as session:
        total = session.scalar(select(func.count()).select_from(ChatMessageRecord)) or 0
        messages = session.scalars(
            select(ChatMessageRecord)
            .order_by(ChatMessageRecord.created_at.desc(), ChatMessageRecord.id.asc())
            .offset(page * size)
            .limit(size)
        ).all()

        items = [
            ChatHistoryItem(
                id=message.id,
                document_id=message.document_id,
                question=message.question,
                answer=message.answer,
                response_format=message.response_format,
                created_at=message.created_at,
            )
            for message in messages
        ]

    return ChatHistoryPage(items=items, page=page, size=size, total=int(total))
