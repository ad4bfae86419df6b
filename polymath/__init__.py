"""
Polymath Brain (多智能体自适应学习大脑)

A fixed-priority pipeline of agents that turns a learning goal into an
adaptive curriculum and lesson stream, rendered through a JSON layout
document.

Agents (highest priority first):
- Understanding: concept graph, value vector, thesis
- Planner / Question / Curriculum: intake and curriculum drafting
- LearningStepBuilder / Teaching / Interjection: unit selection and lessons
- MermaidFix / QuizCheck: repairs and grading
- SenseOrchestrator / RevisionDepth / Synthesis: senses, depth, insights
- UIBuilder: the layout document

Powered by LangChain/LangGraph and an OpenAI-compatible API.
"""

from .state import (
    Phase,
    SignalKind,
    UIAction,
    IntentType,
    LearningGoal,
    EvidenceSignal,
    AgentIntent,
    AgentUpdate,
    new_shared_state,
)

from .agents import Agent, AgentInput, AgentRole

from .workflow import AgentCoordinator, BrainRuntime, IngestResult, PassResult

from .system import PolymathConfig, PolymathSystem, build_default_agents, create_polymath_system

__version__ = "0.1.0"

__all__ = [
    # Enums
    "Phase",
    "SignalKind",
    "UIAction",
    "IntentType",
    "AgentRole",

    # Data structures
    "LearningGoal",
    "EvidenceSignal",
    "AgentIntent",
    "AgentUpdate",
    "AgentInput",
    "new_shared_state",

    # Agents
    "Agent",
    "build_default_agents",

    # Runtime
    "AgentCoordinator",
    "BrainRuntime",
    "IngestResult",
    "PassResult",

    # Main system
    "PolymathSystem",
    "PolymathConfig",
    "create_polymath_system",
]
