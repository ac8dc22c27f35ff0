from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque

from ..models import ConversationSession, ConversationTurn, PersonaProfile
from .flow import DEFAULT_TOPIC


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    DEBOUNCING = "debouncing"
    PROCESSING = "processing"
    RESPONDING = "responding"


@dataclass(slots=True)
class SessionRuntime:
    session: ConversationSession
    persona: PersonaProfile
    events: asyncio.Queue[Any] = field(default_factory=asyncio.Queue)
    turn_stream: asyncio.Queue[ConversationTurn | None] = field(default_factory=asyncio.Queue)
    history: Deque[ConversationTurn] = field(default_factory=lambda: deque(maxlen=10))
    state: TurnState = TurnState.IDLE
    # Bumped whenever an in-flight generation starts or is abandoned.
    epoch: int = 0
    debounce_token: int = 0
    running_topic: str = DEFAULT_TOPIC
    pending_transcript: str = ""
    last_processed_transcript: str = ""
    interrupted: bool = False
    last_turn_at: datetime | None = None
    loop_task: asyncio.Task[None] | None = None
    debounce_task: asyncio.Task[None] | None = None
    generation_task: asyncio.Task[None] | None = None
    closed: bool = False

    @property
    def session_id(self) -> str:
        return self.session.id
