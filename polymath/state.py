"""
Polymath Brain - Shared State

The single mutable record for one (user, goal) learning session, plus the
value objects that travel through the agent pipeline (signals, intents,
updates). The state itself is a plain JSON-serialisable dict so it can be
persisted as one blob; agents read it and hand back patches, only the
coordinator merges them.
"""

from __future__ import annotations

import copy
import math
import re
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, TypedDict


RECENT_SIGNAL_LIMIT = 200
VALUE_KEYS = ("curiosity", "depth", "practice", "revision", "collaboration")
DEFAULT_DECAY_RATE = 0.02
NEW_CONCEPT_CONFIDENCE = 0.2


class Phase(str, Enum):
    """Session phase"""
    INTAKE = "intake"
    QUESTIONNAIRE = "questionnaire"
    CURRICULUM = "curriculum"
    LEARNING = "learning"


class SignalType(str, Enum):
    DIRECT = "direct"
    INDIRECT = "indirect"


class SignalKind(str, Enum):
    """Recognised ``payload.kind`` values"""
    KICKOFF = "kickoff"
    UI_INTENT = "ui-intent"
    ANSWERS = "answers"
    QUIZ = "quiz"
    TIME_SPENT = "time-spent"
    REVISIT = "revisit"
    SENSE_OUTPUT = "sense-output"
    AMEND_CURRICULUM = "amend-curriculum"


class UIAction(str, Enum):
    """``action`` sub-tags of ui-intent signals sent by the renderer"""
    SUBMIT_ANSWERS = "submit-answers"
    SUBMIT_INTAKE = "submit-intake"
    OPEN_UNIT = "open-unit"
    NEXT_UNIT = "next-unit"
    FIX_MERMAID = "fix-mermaid"
    CHECK_QUIZ = "check-quiz"
    LOAD_EXPERIMENT = "load-experiment"
    AMEND_CURRICULUM = "amend-curriculum"
    SDUI_INTERACTION = "sdui-interaction"
    DEEPEN_TOPIC = "deepen-topic"


class IntentType(str, Enum):
    DRAFT_CURRICULUM = "draft-curriculum"
    ASK_QUESTIONS = "ask-questions"
    BEGIN_TEACHING = "begin-teaching"
    PRESENT_SENSE = "present-sense"
    BUILD_STEP = "build-step"
    SCHEDULE_REVISION = "schedule-revision"
    REQUEST_OUTPUT = "request-output"
    DEEPEN_TOPIC = "deepen-topic"
    APPLY_PRACTICE = "apply-practice"
    LOAD_EXPERIMENT = "load-experiment"


# Intents the runtime resolves through the Sense Runner between passes
CONTENT_INTENTS = frozenset({IntentType.PRESENT_SENSE.value, IntentType.LOAD_EXPERIMENT.value})


class ProgressStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class SharedState(TypedDict, total=False):
    """Shape of the session state blob"""
    user_id: str
    goal: Dict[str, Any]
    phase: Optional[str]
    thesis: Optional[Dict[str, Any]]
    thesis_graph: Optional[Dict[str, Any]]
    value_vector: Dict[str, float]
    depth_level: int
    knowledge_level: int
    user_purpose: Optional[str]
    questions: Optional[List[Dict[str, Any]]]
    answers: Dict[str, str]
    curriculum: Optional[Dict[str, Any]]
    curriculum_progress: Dict[str, str]
    knowledge_repository: Dict[str, Dict[str, Any]]
    active_step: Optional[Dict[str, Any]]
    pending_unit_id: Optional[str]
    learning_surface: Optional[Dict[str, Any]]
    recent_signals: List[Dict[str, Any]]
    pending_intents: List[Dict[str, Any]]
    artifacts: List[Dict[str, Any]]
    unit_states: Dict[str, Any]
    quiz_results: Dict[str, Dict[str, Any]]
    last_updated_at: float


@dataclass
class LearningGoal:
    """Immutable identity of the session goal"""
    id: str
    title: str
    domains: List[str] = field(default_factory=list)
    desired_depth: int = 3
    created_at: float = 0.0


@dataclass
class ThesisNode:
    """A concept in the understanding graph"""
    id: str
    label: str
    confidence: float = NEW_CONCEPT_CONFIDENCE
    decay_rate: float = DEFAULT_DECAY_RATE
    last_interaction_at: float = 0.0
    preferred_sense: Optional[str] = None


@dataclass
class EvidenceSignal:
    """An observed event; the unit of input to the pipeline"""
    id: str
    user_id: str
    goal_id: str
    payload: Dict[str, Any]
    type: SignalType = SignalType.DIRECT
    observed_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "goal_id": self.goal_id,
            "type": SignalType(self.type).value,
            "observed_at": self.observed_at,
            "payload": dict(self.payload),
        }


@dataclass(frozen=True)
class AgentIntent:
    """A request emitted by one agent for further action"""
    type: IntentType
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": IntentType(self.type).value}
        data.update(self.params)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentIntent":
        params = {k: v for k, v in data.items() if k != "type"}
        return cls(type=IntentType(data["type"]), params=params)


@dataclass(frozen=True)
class AgentUpdate:
    """
    What one agent contributes to a pass.

    ``state_patch`` is shallow-merged by the coordinator, ``intents`` are
    appended to the intent stream and ``consumes`` names intent types this
    agent has handled so they leave ``pending_intents``.
    """
    state_patch: Dict[str, Any] = field(default_factory=dict)
    intents: List[AgentIntent] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    consumes: List[IntentType] = field(default_factory=list)


def now_seconds() -> float:
    return time.time()


def clamp01(value: float) -> float:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def slugify(text: str) -> str:
    """``"Heat Engines"`` -> ``"heat-engines"``"""
    slug = re.sub(r"\s+", "-", str(text).strip().lower())
    return slug or "concept"


def concept_id(label: str) -> str:
    return f"concept-{slugify(label)}"


def default_value_vector() -> Dict[str, float]:
    return {
        "curiosity": 0.7,
        "depth": 0.4,
        "practice": 0.3,
        "revision": 0.2,
        "collaboration": 0.2,
    }


def new_shared_state(
    user_id: str,
    goal: LearningGoal,
    now: float,
    value_vector: Optional[Dict[str, float]] = None,
    depth_level: int = 2,
) -> SharedState:
    """Fresh session state; everything lazily populated by the agents"""
    vector = default_value_vector()
    vector.update(value_vector or {})
    return {
        "user_id": user_id,
        "goal": asdict(goal),
        "phase": None,
        "thesis": None,
        "thesis_graph": None,
        "value_vector": {k: clamp01(vector[k]) for k in VALUE_KEYS},
        "depth_level": depth_level,
        "knowledge_level": 0,
        "user_purpose": None,
        "questions": None,
        "answers": {},
        "curriculum": None,
        "curriculum_progress": {},
        "knowledge_repository": {},
        "active_step": None,
        "pending_unit_id": None,
        "learning_surface": None,
        "recent_signals": [],
        "pending_intents": [],
        "artifacts": [],
        "unit_states": {},
        "quiz_results": {},
        "last_updated_at": now,
    }


def merge_patch(state: SharedState, patch: Dict[str, Any], now: Optional[float] = None) -> SharedState:
    """Shallow merge: patch keys fully replace state keys"""
    merged = dict(state)
    merged.update(patch)
    if now is not None:
        merged["last_updated_at"] = now
    return merged


def push_signals(
    state: SharedState,
    signals: Sequence[Dict[str, Any]],
    now: float,
    limit: int = RECENT_SIGNAL_LIMIT,
) -> SharedState:
    """Prepend a batch to the ring buffer (newest first)"""
    if not signals:
        return state
    newest_first = list(reversed(list(signals)))
    recent = (newest_first + list(state.get("recent_signals") or []))[:limit]
    return merge_patch(state, {"recent_signals": recent}, now)


def supersede_intents(
    pending: Iterable[Dict[str, Any]],
    emitted: Sequence[AgentIntent],
    consumed: Sequence[IntentType] = (),
) -> List[Dict[str, Any]]:
    """
    Latest-wins per intent type: pending entries whose type is re-emitted or
    explicitly consumed are dropped, the new intents are appended.
    """
    dropped = {IntentType(i.type).value for i in emitted}
    dropped.update(IntentType(t).value for t in consumed)
    kept = [dict(p) for p in pending if p.get("type") not in dropped]
    return kept + [i.to_dict() for i in emitted]


def find_pending(state: SharedState, intent_type: IntentType) -> Optional[Dict[str, Any]]:
    for intent in state.get("pending_intents") or []:
        if intent.get("type") == intent_type.value:
            return intent
    return None


def signal_kind(signal: Dict[str, Any]) -> Optional[str]:
    return (signal.get("payload") or {}).get("kind")


def signal_action(signal: Dict[str, Any]) -> Optional[str]:
    payload = signal.get("payload") or {}
    if payload.get("kind") != SignalKind.UI_INTENT.value:
        return None
    return payload.get("action")


def signal_data(signal: Dict[str, Any]) -> Dict[str, Any]:
    data = (signal.get("payload") or {}).get("data")
    return data if isinstance(data, dict) else {}


def find_action(signals: Iterable[Dict[str, Any]], action: UIAction) -> Optional[Dict[str, Any]]:
    for signal in signals:
        if signal_action(signal) == action.value:
            return signal
    return None


def user_signals(signals: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Signals not produced by the Sense Runner"""
    return [s for s in signals if signal_kind(s) != SignalKind.SENSE_OUTPUT.value]


def snapshot(state: SharedState) -> SharedState:
    """Deep copy handed to agents so in-place edits cannot leak into the store"""
    return copy.deepcopy(state)


__all__ = [
    "RECENT_SIGNAL_LIMIT",
    "VALUE_KEYS",
    "CONTENT_INTENTS",
    "Phase",
    "SignalType",
    "SignalKind",
    "UIAction",
    "IntentType",
    "ProgressStatus",
    "SharedState",
    "LearningGoal",
    "ThesisNode",
    "EvidenceSignal",
    "AgentIntent",
    "AgentUpdate",
    "clamp01",
    "round_half_up",
    "slugify",
    "concept_id",
    "new_shared_state",
    "merge_patch",
    "push_signals",
    "supersede_intents",
    "find_pending",
    "signal_kind",
    "signal_action",
    "signal_data",
    "find_action",
    "user_signals",
    "snapshot",
]
