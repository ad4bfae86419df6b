"""
Polymath Brain - Sense Runner

Turns ``present-sense`` / ``load-experiment`` intents into rich artifacts.
Only the experiment and infographic senses spend LLM calls; everything else
is a template. The runner never raises: a failed generation becomes a
placeholder artifact flagged ``unavailable``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .curriculum import find_unit
from .llm import LLMClient, safe_generate, strip_code_fences
from .state import IntentType, SignalKind, SignalType, SharedState


EXPERIMENT_PROMPT = """You are the Polymath Experiment Designer.
Generate a single-file interactive experiment using HTML+CSS+JS and Three.js.
Rules:
- Output ONLY the HTML body content (no <html>, <head> tags).
- Include <style> and <script> tags inside the body content.
- Use Three.js via CDN: https://cdn.jsdelivr.net/npm/three@0.160.0/build/three.min.js
- Keep it lightweight; no external assets.
- Add a short on-screen title and instructions.
"""

INFOGRAPHIC_PROMPT = """You are the Polymath Visual Designer.
Describe a high-fidelity, educational infographic that explains a complex concept.
The description will be used to generate an image.
1. Content: first principles, systemic relationships, clarity.
2. Style: professional, minimalist, dark slate background (#0b0f16) with blue/cyan accents.
3. Text: minimal text on the image; focus on icons and flow.
4. Composition: vector-style, 2D, clean layout.
"""

UNAVAILABLE_HTML = '<div style="padding:16px;color:#e5e7eb;">Experiment unavailable.</div>'


class SenseType(str, Enum):
    SOUND = "sound"
    INFOGRAPHIC = "infographic"
    ANIMATION = "animation"
    SLIDES = "slides"
    VISUAL = "visual"
    CHARACTER = "character"
    MUSIC = "music"
    EXPERIMENT = "experiment"
    PAPER = "paper"
    INDUSTRY_UPDATE = "industry-update"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Any) -> "SenseType":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.CUSTOM


@dataclass(frozen=True)
class SenseTemplate:
    id: str
    name: str
    type: SenseType
    description: str


DEFAULT_SENSE_CATALOGUE: Dict[SenseType, SenseTemplate] = {
    t.type: t for t in [
        SenseTemplate("sense-sound", "Soundscape", SenseType.SOUND,
                      "Audio cues and ambient sound to guide attention and memory."),
        SenseTemplate("sense-infographic", "Infographic", SenseType.INFOGRAPHIC,
                      "Condensed visuals and diagrams for quick comprehension."),
        SenseTemplate("sense-animation", "Animation", SenseType.ANIMATION,
                      "Animated sequences to illustrate change over time."),
        SenseTemplate("sense-slides", "Slides", SenseType.SLIDES,
                      "Structured slide deck for guided narrative learning."),
        SenseTemplate("sense-visual", "Visual Canvas", SenseType.VISUAL,
                      "Open visual workspace for sketches, maps, and diagrams."),
        SenseTemplate("sense-character", "Character", SenseType.CHARACTER,
                      "Narrated character or mentor guiding the session."),
        SenseTemplate("sense-music", "Music", SenseType.MUSIC,
                      "Mood-setting music to support focus and flow."),
        SenseTemplate("sense-experiment", "Experiment Designer", SenseType.EXPERIMENT,
                      "Interactive experiment builder for hands-on learning."),
        SenseTemplate("sense-paper", "Research Paper", SenseType.PAPER,
                      "Curated papers and evidence for deeper grounding."),
        SenseTemplate("sense-industry", "Industry Update", SenseType.INDUSTRY_UPDATE,
                      "Live signals from the field for relevance and context."),
        SenseTemplate("sense-custom", "Custom Sense", SenseType.CUSTOM,
                      "A learner-requested presentation of the concept."),
    ]
}


@dataclass
class SenseOutput:
    id: str
    sense: SenseType
    unit_id: Optional[str]
    artifacts: List[Dict[str, Any]] = field(default_factory=list)
    signals: List[Dict[str, Any]] = field(default_factory=list)


def artifact_id(sense: SenseType, unit_id: Optional[str]) -> str:
    """Stable per (sense, unit) so regenerated artifacts replace old ones"""
    return f"artifact-{sense.value}-{unit_id or 'session'}"


class SenseRunner:
    """Dispatch table from sense tag to generator"""

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm
        self._handlers: Dict[SenseType, Callable[..., Dict[str, Any]]] = {
            SenseType.EXPERIMENT: self._run_experiment,
            SenseType.INFOGRAPHIC: self._run_infographic,
            SenseType.VISUAL: self._run_visual,
        }

    def run(self, intents: List[Dict[str, Any]], state: SharedState) -> List[SenseOutput]:
        outputs: List[SenseOutput] = []
        seen = set()
        for intent in intents:
            kind = intent.get("type")
            if kind == IntentType.LOAD_EXPERIMENT.value:
                sense = SenseType.EXPERIMENT
            elif kind == IntentType.PRESENT_SENSE.value:
                sense = SenseType.parse(intent.get("sense"))
            else:
                continue
            unit_id = intent.get("unit_id") or self._active_unit_id(state)
            key = (sense, unit_id)
            if key in seen:
                continue
            seen.add(key)
            outputs.append(self._run_one(sense, unit_id, intent, state))
        return outputs

    def _run_one(self, sense: SenseType, unit_id: Optional[str], intent: Dict[str, Any], state: SharedState) -> SenseOutput:
        unit = find_unit(state.get("curriculum"), unit_id) if unit_id else None
        handler = self._handlers.get(sense, self._run_template)
        try:
            artifact = handler(intent, state, unit, sense)
        except Exception as e:
            logger.warning(f"Sense '{sense.value}' failed: {e}")
            artifact = self._unavailable(sense, "Generation failed.")
        artifact.update({
            "id": artifact_id(sense, unit_id),
            "sense": sense.value,
            "unit_id": unit_id,
        })
        return SenseOutput(
            id=f"sense-{sense.value}-{unit_id or 'session'}",
            sense=sense,
            unit_id=unit_id,
            artifacts=[artifact],
            signals=[{
                "kind": "sense-presented",
                "sense_type": sense.value,
                "goal_id": (state.get("goal") or {}).get("id"),
            }],
        )

    @staticmethod
    def _active_unit_id(state: SharedState) -> Optional[str]:
        step = state.get("active_step") or {}
        return step.get("unit_id") or state.get("pending_unit_id")

    @staticmethod
    def _topic(state: SharedState, unit: Optional[Dict[str, Any]]) -> str:
        if unit:
            return f"{unit.get('title')}: {unit.get('objective', '')}".strip(": ")
        return (state.get("goal") or {}).get("title", "first principles")

    def _run_experiment(self, intent, state, unit, sense) -> Dict[str, Any]:
        task = intent.get("prompt") or f"Create an interactive experiment that demonstrates {self._topic(state, unit)}."
        if self.llm is None or not self.llm.enabled:
            return self._unavailable(SenseType.EXPERIMENT, "Experiments need a configured LLM.")
        html = strip_code_fences(safe_generate(self.llm, f"{EXPERIMENT_PROMPT}\nTask: {task}"))
        if "<" not in html:
            return self._unavailable(SenseType.EXPERIMENT, "The experiment could not be generated.")
        return {
            "kind": SenseType.EXPERIMENT.value,
            "title": "Interactive Lab",
            "description": "Hands-on exploration generated for this concept.",
            "code": html,
            "params": intent.get("params"),
        }

    def _run_infographic(self, intent, state, unit, sense) -> Dict[str, Any]:
        request = intent.get("prompt") or f"A technical infographic about {self._topic(state, unit)}."
        if self.llm is None or not self.llm.enabled:
            return self._unavailable(SenseType.INFOGRAPHIC, "Infographics need a configured LLM.")
        description = safe_generate(
            self.llm,
            f"{INFOGRAPHIC_PROMPT}\nUser Request: {request}\n\n"
            "Task: Write a detailed visual description prompt for an image model.",
        ).strip()
        if not description:
            return self._unavailable(SenseType.INFOGRAPHIC, "No image description was produced.")
        url = self.llm.generate_image(description)
        if not url:
            return self._unavailable(SenseType.INFOGRAPHIC, "Image generation returned nothing.")
        return {
            "kind": SenseType.INFOGRAPHIC.value,
            "title": "Visual Synthesis",
            "description": request,
            "url": url,
        }

    def _run_visual(self, intent, state, unit, sense) -> Dict[str, Any]:
        return {
            "kind": SenseType.VISUAL.value,
            "title": "Concept Map",
            "description": "How the first principles of this unit connect.",
            "mermaid": principles_diagram(state, unit),
        }

    def _run_template(self, intent, state, unit, sense: SenseType) -> Dict[str, Any]:
        template = DEFAULT_SENSE_CATALOGUE.get(sense, DEFAULT_SENSE_CATALOGUE[SenseType.CUSTOM])
        return {
            "kind": sense.value,
            "title": template.name,
            "description": template.description,
            "prompt": intent.get("prompt"),
            "params": intent.get("params"),
        }

    @staticmethod
    def _unavailable(sense: SenseType, reason: str) -> Dict[str, Any]:
        artifact = {
            "kind": sense.value,
            "title": DEFAULT_SENSE_CATALOGUE[sense].name if sense in DEFAULT_SENSE_CATALOGUE else sense.value,
            "description": reason,
            "unavailable": True,
        }
        if sense == SenseType.EXPERIMENT:
            artifact["code"] = UNAVAILABLE_HTML
        return artifact


def _mermaid_label(text: str) -> str:
    return str(text).replace('"', "'").replace("\n", " ")[:80]


def principles_diagram(state: SharedState, unit: Optional[Dict[str, Any]]) -> str:
    """Template Mermaid flowchart: unit -> each first principle"""
    title = unit.get("title") if unit else (state.get("goal") or {}).get("title", "Concept")
    lines = ["graph TD", f'    U["{_mermaid_label(title)}"]']
    for index, principle in enumerate((unit or {}).get("first_principles") or [], start=1):
        lines.append(f'    U --> P{index}["{_mermaid_label(principle)}"]')
    return "\n".join(lines)


def sense_output_signal(output: SenseOutput, user_id: str, goal_id: str, now: float) -> Dict[str, Any]:
    """Wrap one output as an indirect ``sense-output`` EvidenceSignal"""
    return {
        "id": f"signal-{output.id}-{int(now * 1000)}",
        "user_id": user_id,
        "goal_id": goal_id,
        "type": SignalType.INDIRECT.value,
        "observed_at": now,
        "payload": {
            "kind": SignalKind.SENSE_OUTPUT.value,
            "sense": output.sense.value,
            "unit_id": output.unit_id,
            "artifacts": output.artifacts,
            "signals": output.signals,
        },
    }


__all__ = [
    "SenseType",
    "SenseTemplate",
    "DEFAULT_SENSE_CATALOGUE",
    "SenseOutput",
    "SenseRunner",
    "artifact_id",
    "principles_diagram",
    "sense_output_signal",
]
