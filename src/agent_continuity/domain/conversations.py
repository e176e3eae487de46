from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ChatRecord:
    chat_id: str
    name: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    chat_id: str
    mode: str
    session_id: Optional[str]
    stream_id: Optional[str]
    messages: List[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime
