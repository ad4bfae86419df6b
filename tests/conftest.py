"""
Shared fixtures: session state builders on top of the helpers module.
"""

import pytest

from helpers import FixedClock
from polymath.curriculum import fallback_curriculum, initial_progress
from polymath.memory import InMemoryStateStore
from polymath.state import LearningGoal, new_shared_state


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def goal():
    return LearningGoal(id="goal-1", title="Thermodynamics")


@pytest.fixture
def fresh_state(goal, clock):
    return new_shared_state("user-1", goal, clock())


@pytest.fixture
def curriculum_state(fresh_state, clock):
    """Fallback curriculum drafted, intake done"""
    curriculum = fallback_curriculum("Thermodynamics", "goal-1", clock()).to_dict()
    state = dict(fresh_state)
    state.update({
        "phase": "curriculum",
        "questions": [{"id": "q3", "prompt": "Goal?", "kind": "text", "choices": [], "required": True}],
        "answers": {"q3": "build engines", "q4": "6"},
        "curriculum": curriculum,
        "curriculum_progress": initial_progress(curriculum["tree"]),
    })
    return state


@pytest.fixture
def lesson_content():
    return {
        "unit_id": "unit-1-1",
        "title": "Core primitives",
        "explanation": "Energy is conserved. ::media:0:: Then entropy. ::sense:0::",
        "first_principles": ["Energy cannot be created"],
        "media": [
            {"kind": "mermaid", "title": "Flow", "content": "graph TD; A->B("},
            {"kind": "quiz", "title": "Check", "content": "", "question": "Is energy conserved?",
             "choices": ["Yes", "No"], "answer": "Yes"},
        ],
        "senses": [{"type": "visual", "prompt": "Map it", "reasoning": ""}],
        "interjections": [],
        "interjections_reviewed": False,
    }


@pytest.fixture
def learning_state(curriculum_state, lesson_content):
    """Learner is inside unit-1-1 with cached content"""
    state = dict(curriculum_state)
    progress = dict(state["curriculum_progress"])
    progress.update({"unit-1-1": "in_progress", "module-1": "in_progress", "root": "in_progress"})
    state.update({
        "phase": "learning",
        "curriculum_progress": progress,
        "knowledge_repository": {"unit-1-1": lesson_content},
        "active_step": {
            "id": "step-unit-1-1",
            "goal_id": "goal-1",
            "title": "Core primitives",
            "rationale": lesson_content["explanation"],
            "senses": ["visual"],
            "prompts": ["Map it"],
            "unit_id": "unit-1-1",
        },
    })
    return state
