"""
Polymath Brain - Coordinator & Runtime

🚀 一次 pass = 所有 Agent 按优先级顺序执行一次

``AgentCoordinator`` compiles the ordered agent list into a linear LangGraph
``StateGraph`` (one node per agent) so later agents see the patches of
earlier ones within the same pass. ``BrainRuntime`` owns the session state:
it normalises renderer signals, runs the first pass, resolves content
intents through the Sense Runner in a bounded number of extra passes and
persists the result.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, TypedDict

from langgraph.graph import StateGraph, END
from loguru import logger

from .agents import Agent, AgentInput
from .llm import LLMClient
from .memory import InMemoryStateStore, StateStore
from .senses import SenseRunner, sense_output_signal
from .state import (
    CONTENT_INTENTS,
    LearningGoal,
    SharedState,
    SignalKind,
    SignalType,
    UIAction,
    merge_patch,
    new_shared_state,
    now_seconds,
    push_signals,
    snapshot,
    supersede_intents,
)


NOTE_MAX_CHARS = 280
MAX_NOTES_PER_PASS = 24
DEFAULT_MAX_SENSE_PASSES = 1

STATUS_THINKING = "thinking"
STATUS_IDLE = "idle"


class PassState(TypedDict):
    """LangGraph state for one pass"""
    state: Dict[str, Any]
    signals: List[Dict[str, Any]]
    now: float
    intents: List[Dict[str, Any]]
    notes: List[str]
    updates: List[Dict[str, Any]]


@dataclass
class PassResult:
    state: SharedState
    intents: List[Dict[str, Any]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    updates: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class IngestResult:
    state: SharedState
    intents: List[Dict[str, Any]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    passes: int = 0


def order_agents(agents: Sequence[Agent]) -> List[Agent]:
    """Descending priority; ties keep registration order and are reported"""
    ordered = [a for _, a in sorted(enumerate(agents), key=lambda pair: (-pair[1].priority, pair[0]))]
    for previous, current in zip(ordered, ordered[1:]):
        if previous.priority == current.priority:
            logger.warning(
                f"Agents {previous.agent_id} and {current.agent_id} share priority {current.priority}; "
                "running in registration order"
            )
    return ordered


def trim_note(note: Any) -> str:
    text = str(note)
    return text if len(text) <= NOTE_MAX_CHARS else text[:NOTE_MAX_CHARS - 3] + "..."


class AgentCoordinator:
    """Runs every agent exactly once per pass, merging patches as it goes"""

    def __init__(self, agents: Sequence[Agent], max_notes: int = MAX_NOTES_PER_PASS):
        self.agents = order_agents(agents)
        self.max_notes = max_notes
        self._graph = self._build_graph().compile() if self.agents else None

    def _build_graph(self) -> StateGraph:
        """构建 LangGraph 状态图: agent-0 -> agent-1 -> ... -> END"""
        workflow = StateGraph(PassState)
        names = []
        for index, agent in enumerate(self.agents):
            name = f"agent-{index}-{agent.agent_id}"
            workflow.add_node(name, self._make_node(agent))
            names.append(name)
        workflow.set_entry_point(names[0])
        for current, following in zip(names, names[1:]):
            workflow.add_edge(current, following)
        workflow.add_edge(names[-1], END)
        return workflow

    def _make_node(self, agent: Agent) -> Callable[[PassState], Dict[str, Any]]:
        def node(pass_state: PassState) -> Dict[str, Any]:
            return self._apply_agent(agent, pass_state)
        return node

    def _apply_agent(self, agent: Agent, pass_state: PassState) -> Dict[str, Any]:
        state = pass_state["state"]
        now = pass_state["now"]
        update = agent.observe(AgentInput(now=now, new_signals=pass_state["signals"], state=snapshot(state)))
        if update is None:
            # LangGraph nodes must write at least one channel
            return {"notes": pass_state["notes"]}

        state = merge_patch(state, dict(update.state_patch), now)
        if update.intents or update.consumes:
            pending = supersede_intents(state.get("pending_intents") or [], update.intents, update.consumes)
            state = merge_patch(state, {"pending_intents": pending}, now)

        notes = list(pass_state["notes"])
        for note in update.notes:
            if len(notes) >= self.max_notes:
                break
            notes.append(trim_note(note))

        return {
            "state": state,
            "intents": list(pass_state["intents"]) + [i.to_dict() for i in update.intents],
            "notes": notes,
            "updates": list(pass_state["updates"]) + [{
                "agent_id": agent.agent_id,
                "priority": agent.priority,
                "patch_keys": sorted(update.state_patch),
                "intents": [i.to_dict()["type"] for i in update.intents],
                "consumes": [getattr(t, "value", t) for t in update.consumes],
            }],
        }

    def run_pass(self, state: SharedState, signals: Sequence[Dict[str, Any]], now: float) -> PassResult:
        signals = list(signals)
        state = push_signals(state, signals, now)
        if self._graph is None:
            return PassResult(state=state)

        final = self._graph.invoke(
            {"state": state, "signals": signals, "now": now, "intents": [], "notes": [], "updates": []},
            config={"recursion_limit": len(self.agents) + 10},
        )
        for update in final["updates"]:
            logger.debug(f"{update['agent_id']}: patch={update['patch_keys']} intents={update['intents']}")
        return PassResult(
            state=final["state"],
            intents=final["intents"],
            notes=final["notes"],
            updates=final["updates"],
        )


def normalize_signal(signal: Dict[str, Any], user_id: str, goal_id: str, now: float) -> Dict[str, Any]:
    """
    Fill envelope defaults and rewrite renderer form submissions:
    ``submit-answers`` / ``submit-intake`` become ``answers`` signals and
    ``amend-curriculum`` becomes an ``amend-curriculum`` signal.
    """
    payload = dict(signal.get("payload") or {})
    if payload.get("kind") == SignalKind.UI_INTENT.value:
        action = payload.get("action")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        if action in (UIAction.SUBMIT_ANSWERS.value, UIAction.SUBMIT_INTAKE.value):
            answers = data.get("answers") if isinstance(data.get("answers"), dict) else data
            payload = {
                "kind": SignalKind.ANSWERS.value,
                "answers": {str(k): str(v) for k, v in answers.items() if v is not None},
                "source_action": action,
            }
        elif action == UIAction.AMEND_CURRICULUM.value:
            payload = {
                "kind": SignalKind.AMEND_CURRICULUM.value,
                "request": str(data.get("request") or data.get("amendment") or ""),
            }

    return {
        "id": signal.get("id") or f"signal-{uuid.uuid4().hex[:12]}",
        "user_id": signal.get("user_id") or signal.get("userId") or user_id,
        "goal_id": signal.get("goal_id") or signal.get("goalId") or goal_id,
        "type": signal.get("type") or SignalType.DIRECT.value,
        "observed_at": signal.get("observed_at") or signal.get("observedAt") or now,
        "payload": payload,
    }


class BrainRuntime:
    """
    一个 (user, goal) 会话的运行时

    Not thread-safe; callers serialise ``ingest`` per session.
    """

    def __init__(
        self,
        user_id: str,
        goal: LearningGoal,
        agents: Sequence[Agent],
        llm: Optional[LLMClient] = None,
        store: Optional[StateStore] = None,
        sense_runner: Optional[SenseRunner] = None,
        max_sense_passes: int = DEFAULT_MAX_SENSE_PASSES,
        clock: Callable[[], float] = now_seconds,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.user_id = user_id
        self.goal = goal
        self.coordinator = AgentCoordinator(agents)
        self.sense_runner = sense_runner or SenseRunner(llm)
        self.store = store or InMemoryStateStore()
        self.max_sense_passes = max(0, int(max_sense_passes))
        self.clock = clock
        self.on_status = on_status
        self.state = self._hydrate()

    def _hydrate(self) -> SharedState:
        fresh = new_shared_state(self.user_id, self.goal, self.clock())
        persisted = self.store.load(self.user_id, self.goal.id)
        goal = persisted.get("goal") if isinstance(persisted, dict) else None
        # Same goal id with another title is a new session that overwrites the record
        if not isinstance(goal, dict) or (goal.get("id"), goal.get("title")) != (self.goal.id, self.goal.title):
            return fresh
        logger.info(f"Hydrated session {self.user_id}/{self.goal.id} (phase={persisted.get('phase')})")
        return {**fresh, **persisted}

    def _notify(self, status: str) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(status)
        except Exception as e:
            logger.warning(f"Status listener failed on '{status}': {e}")

    def ingest(self, signals: Sequence[Dict[str, Any]]) -> IngestResult:
        if not signals:
            return IngestResult(state=snapshot(self.state))

        self._notify(STATUS_THINKING)
        try:
            now = self.clock()
            batch = [normalize_signal(s, self.user_id, self.goal.id, now) for s in signals]
            result = self.coordinator.run_pass(self.state, batch, now)
            passes = 1

            while passes - 1 < self.max_sense_passes:
                content = [i for i in result.intents if i.get("type") in CONTENT_INTENTS]
                if not content:
                    break
                outputs = self.sense_runner.run(content, result.state)
                if not outputs:
                    break
                now = self.clock()
                sense_signals = [sense_output_signal(o, self.user_id, self.goal.id, now) for o in outputs]
                logger.info(f"Sense pass {passes}: {len(sense_signals)} outputs")
                result = self.coordinator.run_pass(result.state, sense_signals, now)
                passes += 1

            self.state = result.state
            self.store.save(self.user_id, self.goal.id, self.state)
            return IngestResult(
                state=snapshot(self.state),
                intents=result.intents,
                notes=result.notes,
                passes=passes,
            )
        finally:
            self._notify(STATUS_IDLE)


__all__ = [
    "PassResult",
    "IngestResult",
    "AgentCoordinator",
    "BrainRuntime",
    "normalize_signal",
    "order_agents",
]
