import pytest

from polymath.layout import (
    COMPONENT_NAMES,
    LayoutError,
    compose_surface,
    interleave,
    iter_nodes,
    lesson_surface,
    media_block,
    text,
    validate_layout,
)


def names(doc):
    return [n.get("componentName") for n in iter_nodes(doc["components"]) if n["type"] == "component"]


def actions(doc):
    return [n for n in iter_nodes(doc["components"]) if n.get("sduiAction")]


class TestValidateLayout:
    def test_valid_document_returned_unchanged(self):
        doc = {"components": [{"type": "flex", "contents": [
            {"type": "component", "componentName": "Text", "props": {"children": "hi"}},
        ]}]}
        assert validate_layout(doc) is doc

    @pytest.mark.parametrize("doc", [
        "not a dict",
        {"components": "nope"},
        {"components": [], "state": []},
        {"components": [{"type": "grid"}]},
        {"components": [{"type": "component", "componentName": "Marquee"}]},
        {"components": [{"type": "component", "componentName": "Text", "props": []}]},
        {"components": [{"type": "component", "componentName": "Button", "sduiAction": 3}]},
        {"components": [{"type": "flex", "contents": [{"type": "component", "componentName": "Canvas"}]}]},
    ])
    def test_contract_violations(self, doc):
        with pytest.raises(LayoutError):
            validate_layout(doc)


class TestComposeSurface:
    def test_nothing_before_intake(self, fresh_state):
        assert compose_surface(fresh_state) is None

    def test_intake_form(self, fresh_state):
        fresh_state["phase"] = "intake"
        fresh_state["questions"] = [
            {"id": "q2", "prompt": "Studied before?", "kind": "choice", "choices": ["No", "Yes"], "required": False},
            {"id": "q3", "prompt": "Goal?", "kind": "text", "choices": [], "required": True},
        ]
        doc = validate_layout(compose_surface(fresh_state))
        assert names(doc).count("Select") == 1 and names(doc).count("Input") == 1
        labels = [n["props"]["children"] for n in iter_nodes(doc["components"]) if n.get("componentName") == "Text"]
        assert "Goal? *" in labels
        assert [n["sduiAction"] for n in actions(doc)] == ["submit-answers"]

    def test_curriculum_map(self, curriculum_state):
        doc = validate_layout(compose_surface(curriculum_state))
        opens = [n for n in actions(doc) if n["sduiAction"] == "open-unit"]
        assert [n["sduiData"]["unitId"] for n in opens] == ["unit-1-1", "unit-2-1", "unit-3-1"]
        assert any(n["sduiAction"] == "amend-curriculum" for n in actions(doc))
        assert doc["state"] == {"request": ""}

    def test_lesson_interleaves_markers(self, learning_state):
        doc = validate_layout(compose_surface(learning_state))
        assert doc["pageContext"]["purposeOfThisRender"] == "Present first-principles lesson"
        body = doc["components"][0]["contents"]
        kinds = [n.get("componentName") or n["type"] for n in body]
        # heading, depth line, text, media card, text, sense placeholder, principles, buttons
        assert kinds == ["Heading", "Text", "Text", "flex", "Text", "Text", "Card", "flex"]
        assert body[5]["props"]["children"] == "Sense active: Generating visual..."
        mermaid = next(n for n in iter_nodes(doc["components"]) if n.get("componentName") == "MermaidBlock")
        assert mermaid["props"] == {"code": "graph TD; A->B(", "unitId": "unit-1-1", "mediaIndex": 0}
        assert [n["sduiAction"] for n in actions(doc)] == ["next-unit", "deepen-topic"]

    def test_lesson_shows_generated_visual(self, learning_state):
        learning_state["artifacts"] = [{"id": "artifact-visual-unit-1-1", "title": "Concept Map",
                                        "mermaid": "graph TD\n    U"}]
        doc = lesson_surface(learning_state)
        codes = [n["props"]["code"] for n in iter_nodes(doc["components"]) if n.get("componentName") == "MermaidBlock"]
        assert "graph TD\n    U" in codes

    def test_lesson_without_content_uses_step(self, learning_state):
        learning_state["knowledge_repository"] = {}
        learning_state["active_step"]["senses"] = ["experiment"]
        doc = validate_layout(lesson_surface(learning_state))
        load = [n for n in actions(doc) if n["sduiAction"] == "load-experiment"]
        assert load[0]["sduiData"] == {"unitId": "unit-1-1", "prompt": "Map it"}

    def test_experiment_viewer_when_ready(self, learning_state):
        learning_state["knowledge_repository"]["unit-1-1"]["senses"] = [{"type": "experiment", "prompt": ""}]
        learning_state["artifacts"] = [{"id": "artifact-experiment-unit-1-1", "code": "<div>lab</div>"}]
        assert "ExperimentViewer" in names(lesson_surface(learning_state))

    def test_quiz_result_is_rendered(self, learning_state):
        learning_state["quiz_results"] = {"unit-1-1:1": {"ok": True, "message": "Correct."}}
        doc = lesson_surface(learning_state)
        quiz = next(n for n in iter_nodes(doc["components"]) if n.get("componentName") == "QuizBlock")
        assert quiz["props"]["result"] == {"ok": True, "message": "Correct."}
        assert quiz["props"]["choices"] == ["Yes", "No"]

    def test_unit_state_becomes_document_state(self, learning_state):
        learning_state["unit_states"] = {"unit-1-1": {"slider": 4}}
        assert lesson_surface(learning_state)["state"] == {"slider": 4}

    def test_all_component_names_are_known(self, learning_state):
        learning_state["knowledge_repository"]["unit-1-1"]["interjections"] = [
            {"question": "Why?", "answer": "Because.", "motivation": "Clarity"},
        ]
        assert set(names(lesson_surface(learning_state))) <= set(COMPONENT_NAMES)


class TestInterleave:
    def test_without_markers_blocks_are_appended(self):
        media, senses = [text("m")], [text("s")]
        nodes = interleave("Plain text", media, senses)
        assert [n["props"]["children"] for n in nodes] == ["Plain text", "m", "s"]

    def test_out_of_range_marker_is_dropped(self):
        nodes = interleave("A ::media:3:: B", [text("m")], [])
        assert [n["props"]["children"] for n in nodes] == ["A", "B"]


def test_markdown_with_mermaid_fence_renders_diagram():
    item = {"kind": "markdown", "title": "", "content": "See:\n```mermaid\ngraph LR\nA-->B\n```"}
    block = media_block(item, "unit-1-1", 2, {})
    diagram = block["contents"][0]
    assert diagram["componentName"] == "MermaidBlock"
    assert diagram["props"]["code"] == "graph LR\nA-->B"
