from datetime import datetime
from typing import Dict, List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    # always stored sorted so the pair is order independent
    participants: List[str]
    pair_key: str
    property_id: Optional[str]
    subject: Optional[str]
    created_at: datetime
    last_message_at: datetime
    # per-user unread counters (user_id -> count)
    unread_counters: Dict[str, int]
    # per-user "read up to" marks (user_id -> timestamp)
    last_read_at: Dict[str, datetime]
