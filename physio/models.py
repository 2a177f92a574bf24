from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

USER = "user"
AGENT = "agent"
SYSTEM = "system"


@dataclass(frozen=True)
class PainInfo:
    pain_level: Optional[int]
    pain_location: Optional[str]
    confidence: float


@dataclass(frozen=True)
class SpeechResult:
    transcript: str
    confidence: float
    is_final: bool


@dataclass(frozen=True)
class Message:
    id: str
    text: str
    sender: str
    timestamp: datetime
    is_voice: bool = False
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'text': self.text,
            'sender': self.sender,
            'timestamp': self.timestamp.isoformat(),
            'is_voice': self.is_voice,
            'confidence': self.confidence,
        }


@dataclass(frozen=True)
class ContextMessage:
    role: str
    text: str
    timestamp: datetime


@dataclass(frozen=True)
class PatientInfo:
    session_start: datetime
    pain_level: Optional[int] = None
    pain_location: Optional[str] = None
    medical_conditions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversationContext:
    """Snapshot of a conversation handed to the response generator.

    Rebuilt from the message log on every turn, so the generator never sees
    (or mutates) the orchestrator's live state.
    """
    messages: Tuple[ContextMessage, ...]
    session_id: str
    current_step: int = 0
    patient_info: Optional[PatientInfo] = None

    @classmethod
    def from_messages(cls, messages, session_id, current_step=0, patient_info=None):
        turns = tuple(
            ContextMessage(role=USER if m.sender == USER else AGENT, text=m.text, timestamp=m.timestamp)
            for m in messages
        )
        return cls(messages=turns, session_id=session_id, current_step=current_step,
                   patient_info=patient_info)


@dataclass(frozen=True)
class PhysioResponse:
    text: str
    should_speak: bool
    confidence: float
    next_step: Optional[int] = None


@dataclass
class PatientSession:
    id: str
    patient_id: str
    session_start: str
    session_end: Optional[str] = None
    pain_level_initial: Optional[int] = None
    pain_location: Optional[str] = None
    symptoms: Optional[List[str]] = None
    completed_exercise: bool = False
    exercise_feedback: Optional[str] = None
    pain_level_after: Optional[int] = None
    booking_requested: bool = False
    booking_id: Optional[str] = None
    session_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def field_names(cls):
        return {f.name for f in fields(cls)}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "PatientSession":
        known = cls.field_names()
        return cls(**{k: v for k, v in record.items() if k in known})

    @property
    def is_open(self) -> bool:
        return self.session_end is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PatientInteraction:
    session_id: str
    interaction_type: str
    interaction_data: Any
    timestamp: str
