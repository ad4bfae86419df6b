"""
Polymath Brain - Agents

Every agent observes ``AgentInput(now, new_signals, state)`` and returns an
``AgentUpdate`` or ``None``. The base class owns the two rules every agent
must follow: with no new signals there is nothing to do, and no exception
leaves ``observe``. Subclasses implement ``react``.

Capability-backed agents go through ``safe_invoke_llm`` so a malformed
reply is the same as no reply; each has a ``_fallback_*`` path.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .curriculum import (
    CurriculumPlan,
    fallback_curriculum,
    find_unit,
    first_unfinished_unit,
    initial_progress,
    next_unit,
    resolve_unit,
    rollup_progress,
    stale_unit_ids,
)
from .layout import LayoutError, COMPONENT_NAMES, compose_surface, validate_layout
from .llm import LLMClient, NullLLMClient, safe_generate, safe_invoke_llm, strip_code_fences
from .research import ResearchResult
from .senses import SenseType, artifact_id
from .state import (
    AgentIntent,
    AgentUpdate,
    IntentType,
    Phase,
    ProgressStatus,
    SharedState,
    SignalKind,
    ThesisNode,
    UIAction,
    VALUE_KEYS,
    clamp01,
    concept_id,
    find_action,
    find_pending,
    round_half_up,
    signal_action,
    signal_data,
    signal_kind,
    user_signals,
)


REVISION_INTERVAL_SECONDS = 86400
MAX_DEPTH_LEVEL = 5
MAX_INTERJECTIONS = 2
THESIS_EVIDENCE_LIMIT = 50

# Phases in which submitted answers still move the session forward
INTAKE_PHASES = frozenset({None, Phase.INTAKE.value, Phase.QUESTIONNAIRE.value})

# Renderer actions other agents own; the planner lets them through untouched
NAVIGATIONAL_ACTIONS = frozenset({
    UIAction.FIX_MERMAID.value,
    UIAction.CHECK_QUIZ.value,
    UIAction.LOAD_EXPERIMENT.value,
    UIAction.SDUI_INTERACTION.value,
    UIAction.SUBMIT_ANSWERS.value,
    UIAction.SUBMIT_INTAKE.value,
})


class AgentRole(str, Enum):
    """Agent 角色类型 (tracing only, never used for dispatch)"""
    UNDERSTANDING = "understanding"
    PLANNER = "planner"
    CURRICULUM = "curriculum"
    TEACHING = "teaching"
    ASSESSMENT = "assessment"
    SENSE = "sense"
    REVISION = "revision"
    SYNTHESIS = "synthesis"
    UI_BUILDER = "ui-builder"


@dataclass(frozen=True)
class AgentInput:
    now: float
    new_signals: List[Dict[str, Any]]
    state: SharedState


@dataclass
class TeachingContent:
    """Lesson for one unit, cached in ``knowledge_repository``"""
    unit_id: str
    title: str
    explanation: str
    first_principles: List[str] = field(default_factory=list)
    media: List[Dict[str, Any]] = field(default_factory=list)
    senses: List[Dict[str, Any]] = field(default_factory=list)
    interjections: List[Dict[str, Any]] = field(default_factory=list)
    interjections_reviewed: bool = False

    MEDIA_KINDS = ("mermaid", "svg", "diagram", "code", "markdown", "quiz", "text")

    @classmethod
    def from_raw(cls, raw: Dict[str, Any], unit: Dict[str, Any]) -> Optional["TeachingContent"]:
        explanation = raw.get("explanation")
        if not isinstance(explanation, str) or not explanation.strip():
            return None
        principles = raw.get("first_principles", raw.get("firstPrinciples"))
        return cls(
            unit_id=unit["id"],
            title=raw.get("title") if isinstance(raw.get("title"), str) and raw["title"].strip() else unit["title"],
            explanation=explanation.strip(),
            first_principles=[p for p in principles if isinstance(p, str)] if isinstance(principles, list)
            else list(unit.get("first_principles") or []),
            media=[m for m in (cls._media_item(item) for item in _as_list(raw.get("media"))) if m],
            senses=[s for s in (cls._sense_item(item) for item in _as_list(raw.get("senses"))) if s],
            interjections=sanitize_interjections(raw.get("interjections")),
        )

    @classmethod
    def _media_item(cls, item: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(item, dict):
            return None
        kind = str(item.get("kind", "markdown")).lower()
        media = {
            "kind": kind if kind in cls.MEDIA_KINDS else "markdown",
            "title": str(item.get("title") or ""),
            "content": str(item.get("content") or ""),
        }
        if item.get("language"):
            media["language"] = str(item["language"])
        if media["kind"] == "quiz":
            media["question"] = str(item.get("question") or media["content"])
            media["choices"] = [str(c) for c in _as_list(item.get("choices"))]
            media["answer"] = str(item.get("answer") or "")
        if not media["content"] and media["kind"] != "quiz":
            return None
        return media

    @staticmethod
    def _sense_item(item: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(item, dict) or not item.get("type"):
            return None
        return {
            "type": SenseType.parse(item["type"]).value,
            "prompt": str(item.get("prompt") or ""),
            "reasoning": str(item.get("reasoning") or ""),
        }

    def to_step(self, goal_id: str) -> Dict[str, Any]:
        return learning_step(self.unit_id, goal_id, self.title, self.explanation, self.senses)


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def sanitize_interjections(raw: Any) -> List[Dict[str, str]]:
    items = []
    for item in _as_list(raw):
        if isinstance(item, dict) and item.get("question") and item.get("answer"):
            items.append({
                "question": str(item["question"]),
                "answer": str(item["answer"]),
                "motivation": str(item.get("motivation") or ""),
            })
    return items[:MAX_INTERJECTIONS]


def learning_step(unit_id: str, goal_id: str, title: str, rationale: str,
                  senses: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": f"step-{unit_id}",
        "goal_id": goal_id,
        "title": title,
        "rationale": rationale,
        "senses": [s["type"] for s in senses],
        "prompts": [s.get("prompt", "") for s in senses],
        "unit_id": unit_id,
    }


def _media_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _active_unit_id(state: SharedState) -> Optional[str]:
    return (state.get("active_step") or {}).get("unit_id")


class Agent:
    """
    Agent 基类

    ``observe`` is the only entry point the coordinator uses; it enforces
    the quiescence guard and contains every failure of ``react``.
    """

    agent_id = "agent"
    role = AgentRole.PLANNER
    priority = 0

    def observe(self, inp: AgentInput) -> Optional[AgentUpdate]:
        if not inp.new_signals:
            return None
        try:
            return self.react(inp)
        except Exception:
            logger.exception(f"{self.agent_id} failed; skipping for this pass")
            return None

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.agent_id} priority={self.priority}>"


class LLMAgent(Agent):
    SYSTEM_PROMPT = ""

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm or NullLLMClient()

    @property
    def llm_enabled(self) -> bool:
        return bool(getattr(self.llm, "enabled", True))

    def ask_json(self, prompt: str) -> Optional[Dict[str, Any]]:
        if not self.llm_enabled:
            return None
        return safe_invoke_llm(self.llm, prompt, self.SYSTEM_PROMPT or None)


# =============================================================================
# Understanding
# =============================================================================

class UnderstandingAgent(Agent):
    """
    理解 Agent - maintains the concept graph, value vector and thesis.

    Each signal touches one concept node: the payload's ``concept`` /
    ``topic`` if present, else the goal node ``concept-<goal id>``.
    """

    agent_id = "understanding-agent"
    role = AgentRole.UNDERSTANDING
    priority = 100

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        state, now = inp.state, inp.now
        goal = state["goal"]
        goal_node_id = f"concept-{goal['id']}"
        graph = state.get("thesis_graph") or {"id": f"thesis-{goal['id']}", "nodes": [], "edges": []}
        nodes = [dict(n) for n in graph.get("nodes") or []]
        edges = [dict(e) for e in graph.get("edges") or []]
        by_id = {n["id"]: n for n in nodes}

        def ensure(node_id: str, label: str) -> Dict[str, Any]:
            if node_id not in by_id:
                node = asdict(ThesisNode(id=node_id, label=label, last_interaction_at=now))
                nodes.append(node)
                by_id[node_id] = node
                if node_id != goal_node_id:
                    edges.append({"from": goal_node_id, "to": node_id, "relation": "includes"})
            return by_id[node_id]

        goal_node = ensure(goal_node_id, goal["title"])
        vector = {k: float((state.get("value_vector") or {}).get(k, 0.5)) for k in VALUE_KEYS}
        answers = dict(state.get("answers") or {})
        unit_states = dict(state.get("unit_states") or {})
        purpose = state.get("user_purpose")
        knowledge_level = state.get("knowledge_level", 0)
        evidence_ids = []

        for signal in inp.new_signals:
            kind = signal_kind(signal)
            if kind == SignalKind.SENSE_OUTPUT.value:
                continue
            payload = signal.get("payload") or {}
            evidence_ids.append(signal.get("id"))
            concept = payload.get("concept") or payload.get("topic")
            node = ensure(concept_id(concept), str(concept)) if concept else goal_node

            if kind == SignalKind.ANSWERS.value:
                submitted = payload.get("answers") if isinstance(payload.get("answers"), dict) else {}
                answers.update({k: str(v) for k, v in submitted.items()})
                purpose = submitted.get("q3") or purpose
                knowledge_level = self._knowledge_level(submitted.get("q4"), knowledge_level)
                goal_node["confidence"] = clamp01(goal_node["confidence"] + 0.4)
            elif kind == SignalKind.UI_INTENT.value:
                data = signal_data(signal)
                form = data.get("answers") or data.get("formState")
                if payload.get("action") == UIAction.SDUI_INTERACTION.value and isinstance(form, dict) and form:
                    answers.update({k: str(v) for k, v in form.items()})
                    purpose = form.get("q3") or purpose
                    goal_node["confidence"] = clamp01(goal_node["confidence"] + 0.3)
                unit_id = data.get("unitId") or _active_unit_id(state)
                if isinstance(data.get("unitState"), dict) and unit_id:
                    unit_states[unit_id] = data["unitState"]
            elif kind == SignalKind.QUIZ.value:
                correct = bool(payload.get("correct"))
                node["confidence"] = clamp01(node["confidence"] + (0.15 if correct else -0.2))
                vector["practice"] += 0.05
                vector["depth"] += 0.02 if correct else -0.01
            elif kind == SignalKind.TIME_SPENT.value:
                if self._seconds(payload.get("seconds")) > 60:
                    node["confidence"] = clamp01(node["confidence"] - 0.05)
                    vector["depth"] += 0.03
                else:
                    node["confidence"] = clamp01(node["confidence"] + 0.02)
                    vector["curiosity"] += 0.01
            elif kind == SignalKind.REVISIT.value:
                node["confidence"] = clamp01(node["confidence"] + 0.05)
                vector["revision"] += 0.05

            node["last_interaction_at"] = now

        mean = sum(n["confidence"] for n in nodes) / max(1, len(nodes))
        prior = state.get("thesis") or {}
        thesis = {
            "id": prior.get("id", f"thesis-{goal['id']}"),
            "user_id": state.get("user_id"),
            "goal_id": goal["id"],
            "created_at": prior.get("created_at", now),
            "summary": prior.get("summary") or f"Understanding graph updated for {len(nodes)} concepts.",
            "confidence": clamp01(mean),
            "claims": list(prior.get("claims") or []),
            "gaps": list(prior.get("gaps") or ["Identify missing mental models"]),
            "evidence": (list(prior.get("evidence") or []) + evidence_ids)[-THESIS_EVIDENCE_LIMIT:],
        }

        return AgentUpdate(
            state_patch={
                "answers": answers,
                "user_purpose": purpose,
                "knowledge_level": knowledge_level,
                "thesis": thesis,
                "thesis_graph": {"id": graph.get("id", f"thesis-{goal['id']}"), "nodes": nodes, "edges": edges},
                "value_vector": {k: clamp01(v) for k, v in vector.items()},
                "unit_states": unit_states,
            },
            notes=[f"Understanding synchronised {len(nodes)} concepts (confidence {mean:.2f})."],
        )

    @staticmethod
    def _knowledge_level(raw: Any, current: int) -> int:
        """Self-rated 0-10 confidence halved into 0..5; unparseable keeps ``current``"""
        try:
            score = float(str(raw).strip())
        except (TypeError, ValueError):
            return current
        if score != score:
            return current
        return max(0, min(5, round_half_up(score / 2)))

    @staticmethod
    def _seconds(raw: Any) -> float:
        try:
            return float(raw or 0)
        except (TypeError, ValueError):
            return 0.0


# =============================================================================
# Planner
# =============================================================================

class PlannerAgent(LLMAgent):
    """
    规划 Agent - decides the next move.

    Explicit renderer actions are handled by rules; only otherwise-unexplained
    behaviour falls through to an LLM decision.
    """

    agent_id = "planner-agent"
    role = AgentRole.PLANNER
    priority = 90

    SYSTEM_PROMPT = """You are the Polymath Strategic Orchestrator.
Polymath helps learners grow five values: curiosity, depth, practical usage, revision, collaboration.
Senses available: sound, music, infographic, animation, slides, visual, character, experiment, paper, industry-update.
Decisions:
- "ask-questions": we need more context on the learner's goals or background.
- "draft-curriculum": we are ready to build the first-principles map.
- "begin-teaching": the learner should start or continue a unit (give "unit_id").
- "orchestrate-sense": present a specific sense now (give "sense").
- "none": wait for other agents.
Output ONLY JSON. No markdown.
Format: {"decision": "...", "unit_id": "optional", "sense": "optional", "reasoning": "one sentence"}"""

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        signals = user_signals(inp.new_signals)
        if not signals:
            return None
        state = inp.state
        kinds = {signal_kind(s) for s in signals}
        topic = state["goal"]["title"]

        if state.get("phase") is None:
            intents = [] if state.get("questions") else [AgentIntent(IntentType.ASK_QUESTIONS, {"topic": topic})]
            return AgentUpdate(
                state_patch={"phase": Phase.INTAKE.value},
                intents=intents,
                notes=["Planner: starting intake."],
            )
        if SignalKind.KICKOFF.value in kinds:
            return None

        if SignalKind.ANSWERS.value in kinds:
            intents = []
            if not state.get("curriculum"):
                intents.append(AgentIntent(IntentType.DRAFT_CURRICULUM, {
                    "topic": topic,
                    "knowledge_level": state.get("knowledge_level", 0),
                }))
            if state.get("phase") not in INTAKE_PHASES:
                return AgentUpdate(intents=intents, notes=["Planner: answers updated."])
            return AgentUpdate(
                state_patch={"phase": Phase.QUESTIONNAIRE.value},
                intents=intents,
                notes=["Planner: answers received, requesting curriculum."],
            )

        for signal in signals:
            if signal_kind(signal) == SignalKind.AMEND_CURRICULUM.value:
                request = str((signal.get("payload") or {}).get("request") or "")
                return AgentUpdate(
                    intents=[AgentIntent(IntentType.DRAFT_CURRICULUM, {
                        "topic": topic,
                        "knowledge_level": state.get("knowledge_level", 0),
                        "amend": True,
                        "request": request,
                    })],
                    notes=["Planner: curriculum amendment requested."],
                )

        opened = find_action(signals, UIAction.OPEN_UNIT)
        if opened:
            data = signal_data(opened)
            return AgentUpdate(
                intents=[AgentIntent(IntentType.BEGIN_TEACHING, {
                    "unit_id": data.get("unitId"),
                    "unit_title": data.get("unitTitle"),
                })],
                notes=[f"Planner: open unit {data.get('unitId') or data.get('unitTitle')}."],
            )
        if find_action(signals, UIAction.NEXT_UNIT):
            return AgentUpdate(
                intents=[AgentIntent(IntentType.BEGIN_TEACHING, {"advance": True})],
                notes=["Planner: advance to the next unit."],
            )
        deepen = find_action(signals, UIAction.DEEPEN_TOPIC)
        if deepen:
            return AgentUpdate(
                intents=[AgentIntent(IntentType.DEEPEN_TOPIC, {
                    "unit_id": signal_data(deepen).get("unitId") or _active_unit_id(state),
                    "source": "user",
                })],
                notes=["Planner: deeper treatment requested."],
            )
        if any(signal_action(s) in NAVIGATIONAL_ACTIONS for s in signals):
            return None
        if not self.llm_enabled:
            return None
        return self._decide_with_llm(state)

    def _decide_with_llm(self, state: SharedState) -> AgentUpdate:
        context = {
            "topic": state["goal"]["title"],
            "phase": state.get("phase"),
            "thesis_confidence": (state.get("thesis") or {}).get("confidence"),
            "value_vector": state.get("value_vector"),
            "has_questions": bool(state.get("questions")),
            "has_answers": bool(state.get("answers")),
            "has_curriculum": bool(state.get("curriculum")),
            "active_unit": _active_unit_id(state),
        }
        decision = self.ask_json(f"Context: {json.dumps(context, ensure_ascii=False)}")
        if decision is None:
            return AgentUpdate(notes=["Planner: no usable decision, waiting."])

        kind = decision.get("decision")
        reasoning = str(decision.get("reasoning") or f"Planner decided: {kind}")
        intents = []
        if kind == "ask-questions" and not state.get("questions"):
            intents.append(AgentIntent(IntentType.ASK_QUESTIONS, {"topic": state["goal"]["title"]}))
        elif kind == "draft-curriculum" and not state.get("curriculum") and state.get("answers"):
            intents.append(AgentIntent(IntentType.DRAFT_CURRICULUM, {
                "topic": state["goal"]["title"],
                "knowledge_level": state.get("knowledge_level", 0),
            }))
        elif kind == "begin-teaching" and state.get("curriculum"):
            intents.append(AgentIntent(IntentType.BEGIN_TEACHING, {"unit_id": decision.get("unit_id")}))
        elif kind == "orchestrate-sense" and state.get("phase") == Phase.LEARNING.value and _active_unit_id(state):
            intents.append(AgentIntent(IntentType.PRESENT_SENSE, {
                "sense": SenseType.parse(decision.get("sense") or "visual").value,
                "unit_id": _active_unit_id(state),
            }))
        return AgentUpdate(intents=intents, notes=[reasoning])


# =============================================================================
# Intake questions
# =============================================================================

class QuestionAgent(LLMAgent):
    """Four intake questions; q3 (purpose) and q4 (0-10 confidence) are always the fixed ones"""

    agent_id = "question-agent"
    role = AgentRole.PLANNER
    priority = 85

    SYSTEM_PROMPT = """Polymath Question Agent: write 2 short questions assessing the learner's background on a topic.
Output ONLY JSON. No markdown.
Format: {"questions": [{"prompt": "str", "kind": "text|choice", "choices": ["a", "b"]}]}"""

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        if not find_pending(inp.state, IntentType.ASK_QUESTIONS):
            return None
        if inp.state.get("questions"):
            return AgentUpdate(consumes=[IntentType.ASK_QUESTIONS])

        topic = inp.state["goal"]["title"]
        questions = self._fallback_questions(topic)
        notes = ["Questions: using templated intake."]
        data = self.ask_json(f"Topic: {topic}")
        generated = self._sanitize(data.get("questions") if data else None)
        if generated:
            for index, question in enumerate(generated[:2]):
                questions[index] = dict(question, id=f"q{index + 1}")
            notes = ["Questions: generated intake questions."]
        return AgentUpdate(
            state_patch={"questions": questions},
            consumes=[IntentType.ASK_QUESTIONS],
            notes=notes,
        )

    @staticmethod
    def _sanitize(raw: Any) -> List[Dict[str, Any]]:
        questions = []
        for item in _as_list(raw):
            if not isinstance(item, dict) or not isinstance(item.get("prompt"), str) or not item["prompt"].strip():
                continue
            choices = [str(c) for c in _as_list(item.get("choices")) if str(c).strip()]
            kind = "choice" if item.get("kind") == "choice" and choices else "text"
            questions.append({
                "prompt": item["prompt"].strip(),
                "kind": kind,
                "choices": choices if kind == "choice" else [],
                "required": False,
            })
        return questions

    @staticmethod
    def _fallback_questions(topic: str) -> List[Dict[str, Any]]:
        return [
            {"id": "q1", "prompt": f"How would you explain {topic} in one sentence?",
             "kind": "text", "choices": [], "required": False},
            {"id": "q2", "prompt": f"Have you studied {topic} before?", "kind": "choice",
             "choices": ["No", "Some basics", "Intermediate", "Advanced"], "required": False},
            {"id": "q3", "prompt": f"What is your main goal with {topic}?",
             "kind": "text", "choices": [], "required": True},
            {"id": "q4", "prompt": f"Rate your confidence with {topic} (0-10).",
             "kind": "text", "choices": [], "required": True},
        ]


# =============================================================================
# Curriculum
# =============================================================================

class CurriculumAgent(LLMAgent):
    """
    课程设计 Agent

    Drafts (or amends) the curriculum once intake is satisfied. Any LLM
    shortfall ends in the static three-module plan.
    """

    agent_id = "curriculum-agent"
    role = AgentRole.CURRICULUM
    priority = 80

    SYSTEM_PROMPT = """You are the Polymath Curriculum Agent.
Build a first-principles curriculum from zero to mastery with 10-15 modules.
Each unit must include: objective, first principles, integration steps, what breaks if removed,
and practical checkpoints. Put integration steps and removal impact inside "first_principles".
Output ONLY JSON. No markdown.
Format:
{"summary": "str", "story": "str",
 "tree": {"id": "root", "title": "str", "goal": "str", "key_learnings": ["str"],
          "children": [{"id": "module-1", "title": "str", "goal": "str", "key_learnings": [],
                        "children": [{"id": "unit-1-1", "title": "str", "goal": "str", "key_learnings": []}]}]},
 "modules": [{"title": "str", "rationale": "str",
              "units": [{"title": "str", "objective": "str", "first_principles": ["str"], "checkpoints": ["str"]}]}]}"""

    def __init__(self, llm: Optional[LLMClient] = None, research: Optional[Callable[[str], ResearchResult]] = None):
        super().__init__(llm)
        self.research = research

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        state = inp.state
        requested = find_pending(state, IntentType.DRAFT_CURRICULUM)
        if not requested:
            return None
        questions = state.get("questions") or []
        answers = state.get("answers") or {}
        if questions and not answers:
            return None
        missing = [q["id"] for q in questions if q.get("required") and not str(answers.get(q["id"], "")).strip()]
        if missing:
            return None

        amend = bool(requested.get("amend"))
        if state.get("curriculum") and not amend:
            return AgentUpdate(consumes=[IntentType.DRAFT_CURRICULUM])

        goal = state["goal"]
        plan = None
        if self.llm_enabled:
            data = self.ask_json(self._build_prompt(state, requested if amend else None))
            plan = CurriculumPlan.from_raw(data, goal["title"], goal["id"], inp.now) if data else None
        if plan is None:
            plan = fallback_curriculum(goal["title"], goal["id"], inp.now)
            notes = ["Curriculum: using the first-principles fallback plan."]
        else:
            notes = [f"Curriculum: drafted {len(plan.modules)} modules."]

        curriculum = plan.to_dict()
        previous = state.get("curriculum") if amend else None
        progress = rollup_progress(curriculum, initial_progress(
            curriculum["tree"],
            state.get("curriculum_progress") if amend else None,
            previous["tree"] if previous else None,
        ))
        patch = {
            "curriculum": curriculum,
            "curriculum_progress": progress,
            "phase": Phase.CURRICULUM.value,
        }
        if amend:
            patch.update({"active_step": None, "pending_unit_id": None})
            patch.update(self._drop_stale_units(state, stale_unit_ids(previous, curriculum)))
            notes.append("Curriculum: amendment applied.")
        return AgentUpdate(state_patch=patch, consumes=[IntentType.DRAFT_CURRICULUM], notes=notes)

    @staticmethod
    def _drop_stale_units(state: SharedState, stale: List[str]) -> Dict[str, Any]:
        """Cached lessons, artifacts and quiz results of units that no longer exist under their old title"""
        if not stale:
            return {}
        gone = set(stale)
        return {
            "knowledge_repository": {
                unit_id: content
                for unit_id, content in (state.get("knowledge_repository") or {}).items()
                if unit_id not in gone
            },
            "artifacts": [a for a in state.get("artifacts") or [] if a.get("unit_id") not in gone],
            "quiz_results": {
                key: result
                for key, result in (state.get("quiz_results") or {}).items()
                if key.split(":", 1)[0] not in gone
            },
        }

    def _build_prompt(self, state: SharedState, amendment: Optional[Dict[str, Any]]) -> str:
        topic = state["goal"]["title"]
        lines = [
            f"Topic: {topic}",
            f"Learner knowledge level (0-5): {state.get('knowledge_level', 0)}",
            f"Learner purpose: {state.get('user_purpose') or 'not stated'}",
        ]
        research = self._lookup(topic)
        if research is not None:
            lines.append(f"Research notes:\n{json.dumps(research.to_dict(), ensure_ascii=False)[:4000]}")
        if amendment:
            existing = state.get("curriculum") or {}
            lines.append(f"Existing curriculum summary: {existing.get('summary', '')}")
            lines.append(f"Amendment request: {amendment.get('request', '')}")
        return "\n".join(lines)

    def _lookup(self, topic: str) -> Optional[ResearchResult]:
        if self.research is None:
            return None
        try:
            return self.research(topic)
        except Exception as e:
            logger.warning(f"Research lookup failed for '{topic}': {e}")
            return None


# =============================================================================
# Learning step selection
# =============================================================================

class LearningStepBuilderAgent(Agent):
    """Picks the unit to teach and moves curriculum progress forward"""

    agent_id = "learning-step-builder-agent"
    role = AgentRole.TEACHING
    priority = 75

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        state = inp.state
        curriculum = state.get("curriculum")
        if not curriculum:
            return None
        signals = user_signals(inp.new_signals)
        pending = find_pending(state, IntentType.BEGIN_TEACHING)
        opened = find_action(signals, UIAction.OPEN_UNIT)
        advancing = find_action(signals, UIAction.NEXT_UNIT)
        if not (pending or opened or advancing):
            return None

        progress = dict(state.get("curriculum_progress") or {})
        current = _active_unit_id(state) or state.get("pending_unit_id")
        advance = bool(advancing) or bool(pending and pending.get("advance"))
        if opened:
            data = signal_data(opened)
            wanted = (data.get("unitId"), data.get("unitTitle"))
        elif pending:
            wanted = (pending.get("unit_id"), pending.get("unit_title"))
        else:
            wanted = (None, None)

        if advance:
            if current:
                progress[current] = ProgressStatus.DONE.value
            target = next_unit(curriculum, current) if current else first_unfinished_unit(curriculum, progress)
        elif any(wanted):
            target = resolve_unit(curriculum, wanted[0]) or resolve_unit(curriculum, wanted[1])
        else:
            target = first_unfinished_unit(curriculum, progress)

        if target is None:
            note = "Learning step: curriculum complete." if advance else f"Learning step: no unit matches {wanted[0] or wanted[1]!r}."
            patch = {"curriculum_progress": rollup_progress(curriculum, progress)} if advance else {}
            return AgentUpdate(state_patch=patch, consumes=[IntentType.BEGIN_TEACHING], notes=[note])

        if progress.get(target["id"]) != ProgressStatus.DONE.value:
            progress[target["id"]] = ProgressStatus.IN_PROGRESS.value
        return AgentUpdate(
            state_patch={
                "phase": Phase.LEARNING.value,
                "pending_unit_id": target["id"],
                "curriculum_progress": rollup_progress(curriculum, progress),
            },
            intents=[AgentIntent(IntentType.BUILD_STEP, {"unit_id": target["id"], "title": target["title"]})],
            consumes=[IntentType.BEGIN_TEACHING],
            notes=[f"Learning step: {target['title']}."],
        )


# =============================================================================
# Teaching
# =============================================================================

class TeachingAgent(LLMAgent):
    """
    教学 Agent - produces the lesson for ``pending_unit_id``.

    A unit's content is generated at most once; later visits read the
    repository.
    """

    agent_id = "teaching-agent"
    role = AgentRole.TEACHING
    priority = 70

    SYSTEM_PROMPT = """You are the Polymath Principal Teaching Agent.
Explain a concept from first principles: start from irreducible primitives and build up.
Use analogies that stick. Reference media inline with ::media:N:: and senses with ::sense:N:: markers.
Output ONLY JSON. No markdown around it.
Format:
{"explanation": "markdown", "first_principles": ["str"],
 "media": [{"kind": "mermaid|svg|code|markdown|quiz", "title": "str", "content": "str",
            "language": "for code", "question": "for quiz", "choices": ["for quiz"], "answer": "for quiz"}],
 "senses": [{"type": "visual|infographic|experiment|sound|paper", "prompt": "str", "reasoning": "str"}],
 "interjections": [{"question": "str", "answer": "str", "motivation": "str"}]}"""

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        state = inp.state
        unit_id = state.get("pending_unit_id")
        if not unit_id:
            return None
        goal_id = state["goal"]["id"]
        repository = state.get("knowledge_repository") or {}

        if unit_id in repository:
            cached = repository[unit_id]
            step = learning_step(unit_id, goal_id, cached["title"], cached["explanation"], cached.get("senses") or [])
            return AgentUpdate(
                state_patch={"active_step": step, "pending_unit_id": None},
                consumes=[IntentType.BUILD_STEP],
                notes=[f"Teaching: {cached['title']} from repository."],
            )

        unit = find_unit(state.get("curriculum"), unit_id)
        if not unit:
            return None
        if not self.llm_enabled:
            return self._fallback_outline(unit, goal_id)

        data = self.ask_json(self._build_prompt(state, unit))
        content = TeachingContent.from_raw(data, unit) if data else None
        if content is None:
            logger.warning(f"Teaching content for {unit_id} unavailable; will retry on the next signal")
            return None
        return AgentUpdate(
            state_patch={
                "knowledge_repository": {**repository, unit_id: asdict(content)},
                "active_step": content.to_step(goal_id),
                "pending_unit_id": None,
            },
            consumes=[IntentType.BUILD_STEP],
            notes=[f"Teaching: generated lesson for {content.title}."],
        )

    @staticmethod
    def _build_prompt(state: SharedState, unit: Dict[str, Any]) -> str:
        principles = "; ".join(unit.get("first_principles") or [])
        return (
            f"UNIT: {unit['title']}\n"
            f"OBJECTIVE: {unit.get('objective') or 'Foundational concept'}\n"
            f"FIRST PRINCIPLES: {principles}\n"
            f"DEPTH LEVEL (1-5): {state.get('depth_level', 2)}\n"
            f"LEARNER LEVEL (0-5): {state.get('knowledge_level', 0)}\n"
            f"LEARNER PURPOSE: {state.get('user_purpose') or 'general mastery'}"
        )

    @staticmethod
    def _fallback_outline(unit: Dict[str, Any], goal_id: str) -> AgentUpdate:
        """Without an LLM the unit outline is shown; nothing is cached"""
        rationale = unit.get("objective") or unit["title"]
        step = learning_step(unit["id"], goal_id, unit["title"], rationale, [{"type": SenseType.VISUAL.value}])
        return AgentUpdate(
            state_patch={"active_step": step, "pending_unit_id": None},
            consumes=[IntentType.BUILD_STEP],
            notes=[f"Teaching: presenting the outline of {unit['title']}."],
        )


class InterjectionAgent(LLMAgent):
    """Adds at most two insight cards to the active lesson, once"""

    agent_id = "interjection-agent"
    role = AgentRole.TEACHING
    priority = 65

    SYSTEM_PROMPT = """You add minimal insight interjections to a lesson without turning it into a quiz.
At most 2. Each is a short declarative insight. Return an empty list if nothing adds real clarity.
Output ONLY JSON.
Format: {"interjections": [{"question": "insight title", "answer": "clear explanation", "motivation": "why this matters"}]}"""

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        state = inp.state
        unit_id = _active_unit_id(state)
        repository = state.get("knowledge_repository") or {}
        content = repository.get(unit_id) if unit_id else None
        if not content or content.get("interjections_reviewed"):
            return None

        if content.get("interjections"):
            interjections = content["interjections"][:MAX_INTERJECTIONS]
        else:
            data = self.ask_json(
                f"UNIT: {content.get('title')}\nSUMMARY: {str(content.get('explanation', ''))[:800]}"
            )
            if data is None:
                return None
            interjections = sanitize_interjections(data.get("interjections"))

        updated = dict(content, interjections=interjections, interjections_reviewed=True)
        return AgentUpdate(
            state_patch={"knowledge_repository": {**repository, unit_id: updated}},
            notes=[f"Interjections: {len(interjections)} for {content.get('title')}."],
        )


# =============================================================================
# Repairs and grading
# =============================================================================

_MERMAID_HEADERS = (
    "graph", "flowchart", "sequenceDiagram", "classDiagram", "stateDiagram",
    "erDiagram", "gantt", "pie", "mindmap", "timeline", "journey",
)
_OPENERS = {"(": ")", "[": "]", "{": "}"}


def repair_mermaid_locally(code: str) -> str:
    """
    Deterministic clean-up: split ``;`` statements onto lines, make sure a
    diagram header exists, turn ``->`` into ``-->`` and balance brackets
    (a dangling opener at the end of a line is dropped).
    """
    lines = [line.strip() for line in re.split(r"[;\n]", strip_code_fences(code)) if line.strip()]
    if not lines or not lines[0].split()[0].startswith(_MERMAID_HEADERS):
        lines.insert(0, "graph TD")
    repaired = [lines[0]]
    for line in lines[1:]:
        line = re.sub(r"(?<!-)->", "-->", line).rstrip("([{").rstrip()
        stack = []
        for char in line:
            if char in _OPENERS:
                stack.append(_OPENERS[char])
            elif stack and char == stack[-1]:
                stack.pop()
        repaired.append("    " + line + "".join(reversed(stack)))
    return "\n".join(repaired)


class MermaidFixAgent(LLMAgent):
    """Repairs one broken Mermaid media item, addressed by unitId + mediaIndex"""

    agent_id = "mermaid-fix-agent"
    role = AgentRole.TEACHING
    priority = 62

    SYSTEM_PROMPT = "Fix this Mermaid diagram so it parses. Return ONLY the corrected Mermaid code, no fences, no prose."

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        signal = find_action(inp.new_signals, UIAction.FIX_MERMAID)
        if not signal:
            return None
        data = signal_data(signal)
        unit_id, index, code = data.get("unitId"), _media_index(data.get("mediaIndex")), data.get("code")
        if not isinstance(code, str) or not code.strip() or index is None:
            return None
        repository = inp.state.get("knowledge_repository") or {}
        content = repository.get(unit_id)
        media = list((content or {}).get("media") or [])
        if not (0 <= index < len(media)):
            return None

        fixed = strip_code_fences(safe_generate(self.llm, code, self.SYSTEM_PROMPT)) if self.llm_enabled else ""
        source = "llm"
        if not fixed or not fixed.split()[0].startswith(_MERMAID_HEADERS):
            fixed, source = repair_mermaid_locally(code), "local"

        media[index] = dict(media[index], content=fixed, kind="mermaid")
        return AgentUpdate(
            state_patch={"knowledge_repository": {**repository, unit_id: dict(content, media=media)}},
            notes=[f"Mermaid: repaired {unit_id} media {index} ({source})."],
        )


def _normalise_answer(value: Any) -> str:
    return re.sub(r"\s+", " ", str(value or "")).strip().strip(".!?").lower()


class QuizCheckAgent(LLMAgent):
    """Grades one quiz answer, keyed ``<unit>:<media index>``"""

    agent_id = "quiz-check-agent"
    role = AgentRole.ASSESSMENT
    priority = 60

    SYSTEM_PROMPT = """Grade a learner's quiz answer against the reference. Accept equivalent wording.
Output ONLY JSON. Format: {"ok": true|false, "message": "one encouraging sentence"}"""

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        signal = find_action(inp.new_signals, UIAction.CHECK_QUIZ)
        if not signal:
            return None
        data = signal_data(signal)
        unit_id, index = data.get("unitId"), _media_index(data.get("mediaIndex"))
        if not unit_id or index is None:
            return None
        content = (inp.state.get("knowledge_repository") or {}).get(unit_id) or {}
        media = content.get("media") or []
        if not (0 <= index < len(media)):
            return None
        item = media[index]
        answer = data.get("answer")

        result = None
        data = self.ask_json(
            f"QUESTION: {item.get('question') or item.get('content')}\n"
            f"REFERENCE: {item.get('answer', '')}\nANSWER: {answer}"
        )
        if data is not None and isinstance(data.get("ok"), bool):
            result = {"ok": data["ok"], "message": str(data.get("message") or "")}
        if result is None:
            result = self._fallback_grade(answer, item.get("answer"))

        results = dict(inp.state.get("quiz_results") or {})
        results[f"{unit_id}:{index}"] = result
        return AgentUpdate(
            state_patch={"quiz_results": results},
            notes=[f"Quiz {unit_id}:{index} graded {'correct' if result['ok'] else 'incorrect'}."],
        )

    @staticmethod
    def _fallback_grade(answer: Any, expected: Any) -> Dict[str, Any]:
        if not _normalise_answer(expected):
            return {"ok": False, "message": "No reference answer is available for this question."}
        if _normalise_answer(answer) == _normalise_answer(expected):
            return {"ok": True, "message": "Correct."}
        return {"ok": False, "message": f"Not quite. Expected: {expected}"}


# =============================================================================
# Senses, revision, synthesis
# =============================================================================

class SenseOrchestratorAgent(Agent):
    """
    Requests sense artifacts for the active lesson and folds generated ones
    back into ``artifacts``. Experiments are only generated on request.
    """

    agent_id = "sense-orchestrator-agent"
    role = AgentRole.SENSE
    priority = 55

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        state = inp.state
        patch: Dict[str, Any] = {}
        consumes: List[IntentType] = []
        intents: List[AgentIntent] = []
        notes: List[str] = []

        artifacts = [dict(a) for a in state.get("artifacts") or []]
        folded = 0
        for signal in inp.new_signals:
            if signal_kind(signal) != SignalKind.SENSE_OUTPUT.value:
                continue
            for artifact in _as_list((signal.get("payload") or {}).get("artifacts")):
                artifacts = [a for a in artifacts if a.get("id") != artifact.get("id")] + [dict(artifact)]
                folded += 1
        if folded:
            patch["artifacts"] = artifacts
            consumes = [IntentType.PRESENT_SENSE, IntentType.LOAD_EXPERIMENT]
            notes.append(f"Senses: folded {folded} artifacts.")

        signals = user_signals(inp.new_signals)
        load = find_action(signals, UIAction.LOAD_EXPERIMENT)
        step = state.get("active_step") or {}
        if load:
            data = signal_data(load)
            intents.append(AgentIntent(IntentType.LOAD_EXPERIMENT, {
                "unit_id": data.get("unitId") or step.get("unit_id"),
                "prompt": data.get("prompt"),
                "params": data.get("params"),
            }))
            notes.append("Senses: experiment requested.")
        elif signals and state.get("phase") == Phase.LEARNING.value and step.get("unit_id"):
            intents.extend(self._missing_senses(state, step, artifacts))

        if not (patch or intents):
            return None
        return AgentUpdate(state_patch=patch, intents=intents, consumes=consumes, notes=notes)

    @staticmethod
    def _missing_senses(state: SharedState, step: Dict[str, Any], artifacts: List[Dict[str, Any]]) -> List[AgentIntent]:
        unit_id = step["unit_id"]
        presented = {a.get("id") for a in artifacts}
        prompts = list(step.get("prompts") or [])
        wanted = [(s, prompts[i] if i < len(prompts) else "") for i, s in enumerate(step.get("senses") or [])]

        nodes = (state.get("thesis_graph") or {}).get("nodes") or []
        if nodes:
            weakest = min(nodes, key=lambda n: n.get("confidence", 0))
            if weakest.get("preferred_sense"):
                wanted.append((weakest["preferred_sense"], ""))

        intents, seen = [], set()
        for raw_sense, prompt in wanted:
            sense = SenseType.parse(raw_sense)
            if sense == SenseType.EXPERIMENT or sense in seen:
                continue
            seen.add(sense)
            if artifact_id(sense, unit_id) in presented:
                continue
            intents.append(AgentIntent(IntentType.PRESENT_SENSE, {
                "sense": sense.value,
                "unit_id": unit_id,
                "prompt": prompt,
            }))
        return intents


class RevisionDepthAgent(Agent):
    """Adjusts depth on request; otherwise suggests deepen / revise / practise from thesis confidence"""

    agent_id = "revision-depth-agent"
    role = AgentRole.REVISION
    priority = 50

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        state = inp.state
        signals = user_signals(inp.new_signals)
        requested = find_pending(state, IntentType.DEEPEN_TOPIC)
        user_request = bool(requested and requested.get("source") == "user")
        if state.get("phase") != Phase.LEARNING.value:
            if user_request:
                return AgentUpdate(consumes=[IntentType.DEEPEN_TOPIC], notes=["Depth request dropped outside a lesson."])
            return None
        if not signals:
            return None
        depth = int(state.get("depth_level", 2))

        if find_action(signals, UIAction.DEEPEN_TOPIC) or user_request:
            new_depth = min(MAX_DEPTH_LEVEL, depth + 1)
            return AgentUpdate(
                state_patch={"depth_level": new_depth},
                consumes=[IntentType.DEEPEN_TOPIC],
                notes=[f"Depth level {depth} -> {new_depth}."],
            )

        confidence = float((state.get("thesis") or {}).get("confidence", 0.0))
        unit_id = _active_unit_id(state)
        if confidence > 0.6 and depth < 3:
            intent = AgentIntent(IntentType.DEEPEN_TOPIC, {"unit_id": unit_id, "source": "revision"})
        elif confidence < 0.4:
            nodes = (state.get("thesis_graph") or {}).get("nodes") or []
            weakest = min(nodes, key=lambda n: n.get("confidence", 0))["id"] if nodes else None
            intent = AgentIntent(IntentType.SCHEDULE_REVISION, {
                "concept_id": weakest,
                "unit_id": unit_id,
                "due_at": inp.now + REVISION_INTERVAL_SECONDS,
            })
        else:
            intent = AgentIntent(IntentType.APPLY_PRACTICE, {"unit_id": unit_id})
        return AgentUpdate(intents=[intent])


class SynthesisAgent(Agent):
    """Asks for an insight artifact whenever the learner finishes a unit"""

    agent_id = "synthesis-agent"
    role = AgentRole.SYNTHESIS
    priority = 45

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        state = inp.state
        if state.get("phase") != Phase.LEARNING.value:
            return None
        if not find_action(user_signals(inp.new_signals), UIAction.NEXT_UNIT):
            return None
        progress = state.get("curriculum_progress") or {}
        done = [uid for uid, status in progress.items()
                if status == ProgressStatus.DONE.value and uid.startswith("unit-")]
        return AgentUpdate(
            intents=[AgentIntent(IntentType.REQUEST_OUTPUT, {
                "kind": "insight",
                "completed_units": done,
                "title": f"Insight after {len(done)} units of {state['goal']['title']}",
            })],
        )


# =============================================================================
# Surface
# =============================================================================

class UIBuilderAgent(LLMAgent):
    """
    Runs last and composes the layout document from everything the pass
    produced. Procedural by default; LLM composition is opt-in and must
    validate against the component set.
    """

    agent_id = "ui-builder-agent"
    role = AgentRole.UI_BUILDER
    priority = -100

    SYSTEM_PROMPT = f"""You are the Lead UI Architect for Polymath.
Return a Server-Driven UI JSON document for the center content window.
Format: {{"pageContext": {{"purposeOfThisRender": "str", "predictedNextAction": "str"}},
 "state": {{}}, "components": [{{"type": "flex|component", "componentName": "...", "props": {{}}, "contents": [],
 "flexBoxProperties": {{"className": "..."}}, "sduiAction": "optional", "onSubmit": "optional"}}]}}
Allowed componentName values: {", ".join(COMPONENT_NAMES)}.
Every Input and Select needs a unique "name" prop and a Text label above it.
Output ONLY JSON."""

    def __init__(self, llm: Optional[LLMClient] = None, prefer_llm: bool = False):
        super().__init__(llm)
        self.prefer_llm = prefer_llm

    def react(self, inp: AgentInput) -> Optional[AgentUpdate]:
        state = inp.state
        surface = self._compose_with_llm(state) if self.prefer_llm and self.llm_enabled else None
        if surface is None:
            surface = compose_surface(state)
        if surface is None or surface == state.get("learning_surface"):
            return None
        return AgentUpdate(
            state_patch={"learning_surface": surface},
            notes=["UI Builder composed surface."],
        )

    def _compose_with_llm(self, state: SharedState) -> Optional[Dict[str, Any]]:
        step = state.get("active_step") or {}
        context = {
            "goal": state["goal"]["title"],
            "phase": state.get("phase"),
            "questions": state.get("questions"),
            "active_step": step,
            "teaching_content": (state.get("knowledge_repository") or {}).get(step.get("unit_id")),
        }
        data = self.ask_json(f"CURRENT DATA:\n{json.dumps(context, ensure_ascii=False)[:6000]}")
        if data is None:
            return None
        try:
            return validate_layout(data)
        except LayoutError as e:
            logger.warning(f"Rejected LLM surface: {e}")
            return None


__all__ = [
    "AgentRole",
    "AgentInput",
    "TeachingContent",
    "Agent",
    "LLMAgent",
    "UnderstandingAgent",
    "PlannerAgent",
    "QuestionAgent",
    "CurriculumAgent",
    "LearningStepBuilderAgent",
    "TeachingAgent",
    "InterjectionAgent",
    "MermaidFixAgent",
    "QuizCheckAgent",
    "SenseOrchestratorAgent",
    "RevisionDepthAgent",
    "SynthesisAgent",
    "UIBuilderAgent",
    "repair_mermaid_locally",
    "learning_step",
]
