"""
Request bodies for the HTTP surface.

Range and enum checks stay in the services so HTTP and MCP callers get the
same errors; these models only shape the payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class InstructionCreateRequest(BaseModel):
    category: str
    instruction: str
    original_context: Optional[str] = None
    priority: int = 5
    source: str = "explicit"
    confidence: float = 1.0
    tags: Optional[List[str]] = None
    conversation_id: Optional[int] = None


class InstructionUpdateRequest(BaseModel):
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class InstructionSupersedeRequest(BaseModel):
    instruction: str
    category: Optional[str] = None
    priority: Optional[int] = None
    original_context: Optional[str] = None
    confidence: float = 1.0
    tags: Optional[List[str]] = None
    conversation_id: Optional[int] = None


class ConversationCreateRequest(BaseModel):
    title: Optional[str] = None
    started_at: Optional[datetime] = None


class MessageRequest(BaseModel):
    role: str = "user"
    content: str
    timestamp: Optional[datetime] = None
    audio_url: Optional[str] = None
    emotion: Optional[str] = None
    is_debate: bool = False
    is_consensus: bool = False
    reply_to: Optional[str] = None
    visual_context: Optional[Dict[str, Any]] = None


class SyncMessageRequest(MessageRequest):
    conversation_id: Optional[int] = None


class SummaryUpdateRequest(BaseModel):
    summary: Optional[str] = None
    topics: Optional[List[str]] = None


class PersonCreateRequest(BaseModel):
    name: str
    description: str
    relationship: Optional[str] = None
    aliases: Optional[List[str]] = None
    tags: Optional[List[str]] = None


class PersonUpdateRequest(BaseModel):
    description: Optional[str] = None
    relationship: Optional[str] = None
    aliases: Optional[List[str]] = None
    tags: Optional[List[str]] = None


class MentionRequest(BaseModel):
    label: str
    context_snippet: Optional[str] = None
    hypothesized_relationship: Optional[str] = None


class DetectedName(BaseModel):
    name: str
    context: Optional[str] = None
    possible_relationship: Optional[str] = None


class DetectedNamesRequest(BaseModel):
    detections: List[DetectedName] = Field(default_factory=list)


class IdentifyRequest(BaseModel):
    description: str
    relationship: Optional[str] = None


class TurnContextRequest(BaseModel):
    day_window: int = 7
    max_conversations: int = 10
    max_messages: int = 50
    max_candidates: int = 3
    cooldown_hours: Optional[float] = None
    track_applied: bool = True
