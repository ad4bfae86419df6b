"""
Polymath Brain - Layout Document

The JSON surface consumed by the renderer: ``{pageContext, state, components}``
where every node is ``{"type": "flex" | "component", ...}``. Component names
form a closed set; ``validate_layout`` rejects anything outside it.

The procedural composers here build the intake form, the curriculum map
and the lesson view (with ``::media:N::`` / ``::sense:N::`` markers in the
explanation replaced by the matching media or sense block).
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from .senses import SenseType, artifact_id
from .state import Phase, ProgressStatus, SharedState, UIAction


class NodeType(str, Enum):
    FLEX = "flex"
    COMPONENT = "component"


class ComponentName(str, Enum):
    HEADING = "Heading"
    TEXT = "Text"
    BUTTON = "Button"
    INPUT = "Input"
    SELECT = "Select"
    CARD = "Card"
    DIVIDER = "Divider"
    SVG_BLOCK = "SvgBlock"
    MERMAID_BLOCK = "MermaidBlock"
    CODE_BLOCK = "CodeBlock"
    QUIZ_BLOCK = "QuizBlock"
    EXPERIMENT_VIEWER = "ExperimentViewer"
    IMAGE = "Image"
    BOX = "Box"
    STACK = "Stack"
    VSTACK = "VStack"
    HSTACK = "HStack"
    FLEX = "Flex"


COMPONENT_NAMES = [c.value for c in ComponentName]
MARKER_RE = re.compile(r"::(media|sense):(\d+)::")
MERMAID_FENCE_RE = re.compile(r"```mermaid([\s\S]*?)```", re.IGNORECASE)


class LayoutError(ValueError):
    """Layout document violates the renderer contract"""


# --- node builders -----------------------------------------------------------

def component(
    name: ComponentName,
    props: Optional[Dict[str, Any]] = None,
    contents: Optional[List[Dict[str, Any]]] = None,
    action: Optional[UIAction] = None,
    on_submit: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    node: Dict[str, Any] = {
        "type": NodeType.COMPONENT.value,
        "componentName": ComponentName(name).value,
        "props": dict(props or {}),
    }
    if contents:
        node["contents"] = contents
    if action is not None:
        node["sduiAction"] = UIAction(action).value
    if on_submit:
        node["onSubmit"] = on_submit
    if data:
        node["sduiData"] = data
    return node


def flex(class_name: str, contents: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "type": NodeType.FLEX.value,
        "flexBoxProperties": {"className": class_name},
        "contents": contents,
    }


def text(children: str, class_name: str = "") -> Dict[str, Any]:
    return component(ComponentName.TEXT, {"children": children, "className": class_name})


def heading(children: str, class_name: str = "text-2xl font-bold") -> Dict[str, Any]:
    return component(ComponentName.HEADING, {"children": children, "className": class_name})


def button(label: str, action: UIAction, on_submit: str, data: Optional[Dict[str, Any]] = None,
           class_name: str = "btn btn-solid") -> Dict[str, Any]:
    return component(ComponentName.BUTTON, {"children": label, "className": class_name},
                     action=action, on_submit=on_submit, data=data)


def document(purpose: str, next_action: str, components: List[Dict[str, Any]],
             state: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "pageContext": {
            "purposeOfThisRender": purpose,
            "predictedNextAction": next_action,
        },
        "state": dict(state or {}),
        "components": components,
    }


# --- validation -------------------------------------------------------------

def _validate_node(node: Any, path: str) -> None:
    if not isinstance(node, dict):
        raise LayoutError(f"{path}: node must be an object")
    node_type = node.get("type")
    if node_type not in (NodeType.FLEX.value, NodeType.COMPONENT.value):
        raise LayoutError(f"{path}: unknown node type {node_type!r}")
    if node_type == NodeType.COMPONENT.value:
        name = node.get("componentName")
        if name not in COMPONENT_NAMES:
            raise LayoutError(f"{path}: unknown componentName {name!r}")
    props = node.get("props")
    if props is not None and not isinstance(props, dict):
        raise LayoutError(f"{path}: props must be an object")
    action = node.get("sduiAction")
    if action is not None and not isinstance(action, str):
        raise LayoutError(f"{path}: sduiAction must be a string")
    contents = node.get("contents")
    if contents is None:
        return
    if not isinstance(contents, list):
        raise LayoutError(f"{path}: contents must be a list")
    for index, child in enumerate(contents):
        _validate_node(child, f"{path}.contents[{index}]")


def validate_layout(doc: Any) -> Dict[str, Any]:
    """Return ``doc`` unchanged if it satisfies the contract, else raise LayoutError"""
    if not isinstance(doc, dict):
        raise LayoutError("layout must be an object")
    components = doc.get("components")
    if not isinstance(components, list):
        raise LayoutError("layout.components must be a list")
    if not isinstance(doc.get("state", {}), dict):
        raise LayoutError("layout.state must be an object")
    for index, node in enumerate(components):
        _validate_node(node, f"components[{index}]")
    return doc


def iter_nodes(nodes: List[Dict[str, Any]]):
    """Depth-first walk over a node list"""
    for node in nodes:
        yield node
        yield from iter_nodes(node.get("contents") or [])


# --- intake ------------------------------------------------------------------

def intake_surface(state: SharedState) -> Dict[str, Any]:
    questions = state.get("questions") or []
    form = []
    for q in questions:
        label = q.get("prompt", "")
        if q.get("required"):
            label = f"{label} *"
        if q.get("kind") == "choice" and q.get("choices"):
            field_node = component(ComponentName.SELECT, {
                "name": q["id"],
                "placeholder": "Select...",
                "options": [{"value": c, "label": c} for c in q["choices"]],
                "className": "input",
            })
        else:
            field_node = component(ComponentName.INPUT, {
                "name": q["id"],
                "placeholder": "Type answer...",
                "className": "input",
            })
        form.append(flex("flex-col gap-2 mb-4", [text(label, "font-bold text-sm text-fg"), field_node]))

    goal_title = (state.get("goal") or {}).get("title", "")
    return document(
        "Collect user requirements for curriculum synthesis",
        "User will submit preferences",
        [flex("flex-col gap-6 p-8 max-w-[800px] mx-auto", [
            heading(f"Setup: {goal_title}", "text-2xl font-bold mb-4"),
            *form,
            button("Generate Curriculum", UIAction.SUBMIT_ANSWERS,
                   "Submit intake answers to generate curriculum",
                   class_name="btn btn-solid w-full mt-4"),
        ])],
        state={q["id"]: "" for q in questions},
    )


# --- curriculum map ---------------------------------------------------------

_STATUS_LABELS = {
    ProgressStatus.NOT_STARTED.value: "Not started",
    ProgressStatus.IN_PROGRESS.value: "In progress",
    ProgressStatus.DONE.value: "Done",
}


def curriculum_surface(state: SharedState) -> Dict[str, Any]:
    curriculum = state.get("curriculum") or {}
    progress = state.get("curriculum_progress") or {}
    cards = []
    for module in curriculum.get("modules") or []:
        unit_rows = []
        for unit in module.get("units") or []:
            status = _STATUS_LABELS.get(progress.get(unit["id"]), "Not started")
            unit_rows.append(flex("flex-row gap-4 items-center", [
                text(f"{unit['title']} ({status})", "text-sm text-fg"),
                button("Open", UIAction.OPEN_UNIT, f"Open unit {unit['title']}",
                       data={"unitId": unit["id"]}, class_name="btn btn-ghost"),
            ]))
        cards.append(component(ComponentName.CARD, {"className": "p-4 my-2"}, contents=[
            heading(module["title"], "text-lg font-bold"),
            text(module.get("rationale", ""), "text-sm text-fgMuted"),
            *unit_rows,
        ]))

    return document(
        "Present the drafted curriculum",
        "User will open a unit or amend the plan",
        [flex("flex-col gap-6 p-8", [
            heading(curriculum.get("summary") or "Curriculum", "text-3xl font-bold"),
            text(curriculum.get("story", ""), "text-fgMuted"),
            component(ComponentName.DIVIDER),
            *cards,
            flex("flex-col gap-2 mt-6", [
                text("Want something changed?", "text-sm text-fg"),
                component(ComponentName.INPUT, {"name": "request", "placeholder": "Describe...", "className": "input"}),
                button("Amend Curriculum", UIAction.AMEND_CURRICULUM, "Redraft the curriculum with this request",
                       class_name="btn btn-ghost"),
            ]),
        ])],
        state={"request": ""},
    )


# --- lesson ------------------------------------------------------------------

def _card(class_name: str, title: Optional[str], body: List[Dict[str, Any]]) -> Dict[str, Any]:
    head = [text(title, "text-xs uppercase tracking-widest text-fgSubtle")] if title else []
    return flex(class_name, head + body)


_MEDIA_CARD = "flex-col gap-3 p-4 rounded-xl border border-border bg-surface my-4"


def media_block(item: Dict[str, Any], unit_id: str, index: int, quiz_results: Dict[str, Any]) -> Dict[str, Any]:
    kind = item.get("kind")
    content = item.get("content", "")
    title = item.get("title")
    if kind in ("svg", "diagram"):
        body = component(ComponentName.SVG_BLOCK, {"svg": content})
    elif kind == "mermaid":
        body = component(ComponentName.MERMAID_BLOCK, {"code": content, "unitId": unit_id, "mediaIndex": index})
    elif kind == "code":
        body = component(ComponentName.CODE_BLOCK, {"code": content, "language": item.get("language") or ""})
    elif kind == "quiz":
        body = component(ComponentName.QUIZ_BLOCK, {
            "question": item.get("question") or content,
            "choices": list(item.get("choices") or []),
            "unitId": unit_id,
            "mediaIndex": index,
            "result": quiz_results.get(f"{unit_id}:{index}"),
        })
    else:
        fenced = MERMAID_FENCE_RE.search(content) if kind == "markdown" and isinstance(content, str) else None
        if fenced:
            body = component(ComponentName.MERMAID_BLOCK, {"code": fenced.group(1).strip(), "unitId": unit_id, "mediaIndex": index})
        else:
            body = text(str(content), "text-sm text-fgMuted")
    return _card(_MEDIA_CARD, title, [body])


def _artifact_for(state: SharedState, sense: SenseType, unit_id: str) -> Optional[Dict[str, Any]]:
    wanted = artifact_id(sense, unit_id)
    for artifact in state.get("artifacts") or []:
        if artifact.get("id") == wanted:
            return artifact
    return None


def sense_block(state: SharedState, sense_entry: Dict[str, Any], unit_id: str) -> Dict[str, Any]:
    sense = SenseType.parse(sense_entry.get("type"))
    artifact = _artifact_for(state, sense, unit_id)
    available = artifact is not None and not artifact.get("unavailable")

    if sense == SenseType.EXPERIMENT:
        if available and artifact.get("code"):
            return component(ComponentName.EXPERIMENT_VIEWER, {"code": artifact["code"]})
        prompt = sense_entry.get("prompt") or ""
        return _card("flex-col gap-3 p-5 rounded-xl border border-border bg-surface my-4", None, [
            text((artifact or {}).get("title") or "Interactive Lab", "font-bold text-fg"),
            text((artifact or {}).get("description") or "Load the experiment when ready.", "text-sm text-fgMuted"),
            button("Load Experiment", UIAction.LOAD_EXPERIMENT,
                   "Generate and load the interactive experiment for this concept.",
                   data={"unitId": unit_id, "prompt": prompt}, class_name="btn btn-solid w-full"),
        ])
    if artifact is None:
        return text(f"Sense active: Generating {sense.value}...", "italic text-fgSubtle my-4")
    if not available:
        return text(f"{artifact.get('title', sense.value)}: {artifact.get('description', 'unavailable')}",
                    "italic text-fgSubtle my-4")
    if sense == SenseType.INFOGRAPHIC and artifact.get("url"):
        return _card(f"{_MEDIA_CARD} max-w-[500px] mx-auto w-full", artifact.get("title") or "Infographic", [
            component(ComponentName.BOX, {"className": "aspect-square w-full rounded-lg overflow-hidden"}, contents=[
                component(ComponentName.IMAGE, {"src": artifact["url"], "alt": artifact.get("description", ""),
                                                "className": "w-full h-full object-cover"}),
            ]),
        ])
    if sense == SenseType.VISUAL and artifact.get("mermaid"):
        return _card(_MEDIA_CARD, artifact.get("title"), [
            component(ComponentName.MERMAID_BLOCK, {"code": artifact["mermaid"]}),
        ])
    return component(ComponentName.CARD, {"className": "p-4 my-4"}, contents=[
        text(artifact.get("title", sense.value), "font-bold text-fg"),
        text(artifact.get("description", ""), "text-sm text-fgMuted"),
    ])


def interleave(explanation: str, media: List[Dict[str, Any]], senses: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Split the explanation at ``::media:N::`` / ``::sense:N::`` markers and put
    the referenced blocks in their place. Without markers every block is
    appended after the text. Out-of-range markers are dropped.
    """
    nodes: List[Dict[str, Any]] = []
    position = 0
    matched = False
    for match in MARKER_RE.finditer(explanation):
        matched = True
        segment = explanation[position:match.start()].strip()
        if segment:
            nodes.append(text(segment, "text-lg text-fgMuted leading-relaxed markdown-content"))
        pool = media if match.group(1) == "media" else senses
        index = int(match.group(2))
        if index < len(pool):
            nodes.append(pool[index])
        position = match.end()
    tail = explanation[position:].strip()
    if tail:
        nodes.append(text(tail, "text-lg text-fgMuted leading-relaxed markdown-content"))
    if not matched:
        nodes.extend(media)
        nodes.extend(senses)
    return nodes


def interjection_card(interjection: Dict[str, Any]) -> Dict[str, Any]:
    return flex("p-6 bg-accent/5 rounded-xl border border-accent/20 my-6 flex-col gap-3", [
        text(f"Insight: {interjection.get('question', '')}", "font-bold text-accent"),
        text(interjection.get("answer", ""), "text-fg"),
        text(f"Why it matters: {interjection.get('motivation', '')}", "text-xs text-fgSubtle"),
    ])


def lesson_surface(state: SharedState) -> Dict[str, Any]:
    step = state.get("active_step") or {}
    unit_id = step.get("unit_id") or ""
    content = (state.get("knowledge_repository") or {}).get(unit_id) or {}
    quiz_results = state.get("quiz_results") or {}

    title = content.get("title") or step.get("title") or (state.get("goal") or {}).get("title") or "Learning"
    explanation = str(content.get("explanation") or step.get("rationale") or "").strip() or "Generating lesson content..."

    media = [media_block(item, unit_id, i, quiz_results) for i, item in enumerate(content.get("media") or [])]
    prompts = step.get("prompts") or []
    entries = content.get("senses") or [
        {"type": sense, "prompt": prompts[i] if i < len(prompts) else ""}
        for i, sense in enumerate(step.get("senses") or [])
    ]
    senses = [sense_block(state, entry, unit_id) for entry in entries]

    principles = content.get("first_principles") or []
    principle_nodes = []
    if principles:
        principle_nodes = [component(ComponentName.CARD, {"className": "p-4 my-4"}, contents=[
            text("First principles", "text-xs uppercase tracking-widest text-fgSubtle"),
            *[text(f"{i}. {p}", "text-sm text-fg") for i, p in enumerate(principles, start=1)],
        ])]

    depth = state.get("depth_level", 2)
    return document(
        "Present first-principles lesson",
        "User will follow the logic or explore senses",
        [flex("flex-col gap-6 p-8", [
            heading(title, "text-3xl font-bold text-fg tracking-tight"),
            text(f"Depth level {depth} of 5", "text-xs text-fgSubtle"),
            *interleave(explanation, media, senses),
            *principle_nodes,
            *[interjection_card(i) for i in content.get("interjections") or []],
            flex("flex-row gap-4 mt-8", [
                button("Next Concept", UIAction.NEXT_UNIT, "Advance to the next unit"),
                button("Deep Dive", UIAction.DEEPEN_TOPIC, "Request specialized details",
                       data={"unitId": unit_id}, class_name="btn btn-ghost"),
            ]),
        ])],
        state=(state.get("unit_states") or {}).get(unit_id) or {},
    )


def compose_surface(state: SharedState) -> Optional[Dict[str, Any]]:
    """Pick the procedural surface for the current phase, or None without context"""
    phase = state.get("phase")
    questions = state.get("questions")
    awaiting_answers = bool(questions) and not state.get("answers")
    if phase in (Phase.INTAKE.value, Phase.QUESTIONNAIRE.value) or awaiting_answers:
        if questions and not state.get("curriculum"):
            return intake_surface(state)
    if state.get("curriculum") and state.get("active_step"):
        return lesson_surface(state)
    if state.get("curriculum"):
        return curriculum_surface(state)
    return None


__all__ = [
    "NodeType",
    "ComponentName",
    "COMPONENT_NAMES",
    "LayoutError",
    "component",
    "flex",
    "text",
    "heading",
    "button",
    "document",
    "validate_layout",
    "iter_nodes",
    "intake_surface",
    "curriculum_surface",
    "media_block",
    "sense_block",
    "interleave",
    "lesson_surface",
    "compose_surface",
]
