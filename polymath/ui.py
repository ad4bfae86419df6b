"""
Polymath Brain - Streamlit UI
为 Polymath 提供交互式 Web 界面

Renders the layout document produced by the UI builder. Component names map
through ``RENDERERS``; a document that fails ``validate_layout`` is shown as
an error instead of being guessed at.
"""

import json
from typing import Any, Callable, Dict, List, Optional

import streamlit as st
import streamlit.components.v1 as components
from loguru import logger

from polymath.layout import ComponentName, LayoutError, NodeType, iter_nodes, validate_layout
from polymath.logging_config import setup_logging
from polymath.state import SignalKind, UIAction
from polymath.system import PolymathConfig, PolymathSystem


FORM_COMPONENTS = (ComponentName.INPUT.value, ComponentName.SELECT.value)


def init_session_state():
    """初始化 session state"""
    if "polymath" not in st.session_state:
        st.session_state.polymath = None
    if "last_result" not in st.session_state:
        st.session_state.last_result = None
    if "status" not in st.session_state:
        st.session_state.status = "idle"


def _set_status(status: str) -> None:
    st.session_state.status = status


def configure_api_sidebar():
    """侧边栏：API 配置"""
    with st.sidebar:
        st.header("⚙️ API 配置")
        defaults = PolymathConfig.from_env()
        api_key = st.text_input("OpenAI API Key", type="password", help="从环境变量读取或在此输入")
        api_base = st.text_input("API Base URL", value=defaults.api_base or "")
        model = st.text_input("Chat model", value=defaults.chat_model)
        temperature = st.slider("Temperature", min_value=0.0, max_value=1.0, value=defaults.temperature, step=0.1)

        if st.button("🔧 初始化系统"):
            defaults.api_key = api_key or defaults.api_key
            defaults.api_base = api_base or None
            defaults.chat_model = model
            defaults.temperature = temperature
            if st.session_state.polymath is not None:
                st.session_state.polymath.close()
            with st.spinner("初始化 Polymath..."):
                st.session_state.polymath = PolymathSystem(config=defaults, on_status=_set_status)
                st.session_state.last_result = None
            st.success("✅ 系统初始化成功！")

        st.divider()
        st.header("📊 系统状态")
        system = st.session_state.polymath
        if system is None:
            st.error("🔴 系统未配置")
        elif system.llm.enabled:
            st.info("🤖 LLM: 已连接")
        else:
            st.warning("⚠️ LLM: 后备模式")
        st.caption(f"Status: {st.session_state.status}")


def send(action: str, data: Dict[str, Any]):
    system = st.session_state.polymath
    result = system.signal({"payload": {"kind": SignalKind.UI_INTENT.value, "action": action, "data": data}})
    st.session_state.last_result = result
    if not result["ok"]:
        logger.warning(f"Signal {action} rejected: {result['error']}")
    st.rerun()


def _form_values(doc: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for node in iter_nodes(doc.get("components") or []):
        if node.get("componentName") in FORM_COMPONENTS:
            name = (node.get("props") or {}).get("name")
            if name:
                values[name] = st.session_state.get(f"form-{name}", "")
    return values


def dispatch(node: Dict[str, Any], doc: Dict[str, Any]):
    """Button click -> ui-intent signal; submit-answers wraps the form under ``answers``"""
    action = node.get("sduiAction") or UIAction.SDUI_INTERACTION.value
    form = _form_values(doc)
    if action == UIAction.SUBMIT_ANSWERS.value:
        data = {"answers": form}
    else:
        data = {**form, **(node.get("sduiData") or {})}
    send(action, data)


# --- component renderers -----------------------------------------------------

def _render_children(node, key, doc):
    for index, child in enumerate(node.get("contents") or []):
        render_node(child, f"{key}.{index}", doc)


def _render_row(node, key, doc):
    children = node.get("contents") or []
    if not children:
        return
    for index, (column, child) in enumerate(zip(st.columns(len(children)), children)):
        with column:
            render_node(child, f"{key}.{index}", doc)


def _render_heading(node, key, doc):
    st.subheader(node["props"].get("children", ""))


def _render_text(node, key, doc):
    st.markdown(str(node["props"].get("children", "")))


def _render_button(node, key, doc):
    if st.button(node["props"].get("children", "Continue"), key=f"btn-{key}"):
        dispatch(node, doc)


def _render_input(node, key, doc):
    props = node["props"]
    st.text_input(props.get("name", ""), key=f"form-{props.get('name', key)}",
                  placeholder=props.get("placeholder", ""), label_visibility="collapsed")


def _render_select(node, key, doc):
    props = node["props"]
    options = [""] + [o.get("value", "") for o in props.get("options") or [] if isinstance(o, dict)]
    st.selectbox(props.get("name", ""), options, key=f"form-{props.get('name', key)}", label_visibility="collapsed")


def _render_card(node, key, doc):
    with st.container(border=True):
        _render_children(node, key, doc)


def _render_divider(node, key, doc):
    st.divider()


def _render_svg(node, key, doc):
    st.markdown(node["props"].get("svg", ""), unsafe_allow_html=True)


def _render_mermaid(node, key, doc):
    props = node["props"]
    st.code(props.get("code", ""), language="mermaid")
    if props.get("unitId") is not None and props.get("mediaIndex") is not None:
        if st.button("🔧 Fix diagram", key=f"fix-{key}"):
            send(UIAction.FIX_MERMAID.value, {
                "unitId": props["unitId"],
                "mediaIndex": props["mediaIndex"],
                "code": props.get("code", ""),
            })


def _render_code(node, key, doc):
    props = node["props"]
    st.code(props.get("code", ""), language=props.get("language") or None)


def _render_quiz(node, key, doc):
    props = node["props"]
    st.markdown(f"**{props.get('question', '')}**")
    choices = props.get("choices") or []
    if choices:
        answer = st.radio("Answer", choices, key=f"quiz-{key}", label_visibility="collapsed")
    else:
        answer = st.text_input("Answer", key=f"quiz-{key}", label_visibility="collapsed")
    result = props.get("result")
    if result:
        (st.success if result.get("ok") else st.warning)(result.get("message", ""))
    if st.button("Check", key=f"check-{key}"):
        send(UIAction.CHECK_QUIZ.value, {
            "unitId": props.get("unitId"),
            "mediaIndex": props.get("mediaIndex"),
            "answer": answer,
        })


def _render_experiment(node, key, doc):
    components.html(node["props"].get("code", ""), height=480, scrolling=True)


def _render_image(node, key, doc):
    props = node["props"]
    st.image(props.get("src", ""), caption=props.get("alt") or None)


RENDERERS: Dict[str, Callable[[Dict[str, Any], str, Dict[str, Any]], None]] = {
    ComponentName.HEADING.value: _render_heading,
    ComponentName.TEXT.value: _render_text,
    ComponentName.BUTTON.value: _render_button,
    ComponentName.INPUT.value: _render_input,
    ComponentName.SELECT.value: _render_select,
    ComponentName.CARD.value: _render_card,
    ComponentName.DIVIDER.value: _render_divider,
    ComponentName.SVG_BLOCK.value: _render_svg,
    ComponentName.MERMAID_BLOCK.value: _render_mermaid,
    ComponentName.CODE_BLOCK.value: _render_code,
    ComponentName.QUIZ_BLOCK.value: _render_quiz,
    ComponentName.EXPERIMENT_VIEWER.value: _render_experiment,
    ComponentName.IMAGE.value: _render_image,
    ComponentName.BOX.value: _render_children,
    ComponentName.STACK.value: _render_children,
    ComponentName.VSTACK.value: _render_children,
    ComponentName.HSTACK.value: _render_row,
    ComponentName.FLEX.value: _render_children,
}


def render_node(node: Dict[str, Any], key: str, doc: Dict[str, Any]):
    if node.get("type") == NodeType.FLEX.value:
        class_name = (node.get("flexBoxProperties") or {}).get("className", "")
        renderer = _render_row if "flex-row" in class_name else _render_children
        renderer(node, key, doc)
        return
    node.setdefault("props", {})
    renderer = RENDERERS.get(node.get("componentName"))
    if renderer is None:
        st.error(f"Unknown component: {node.get('componentName')}")
        return
    renderer(node, key, doc)


def render_surface(doc: Optional[Dict[str, Any]]):
    if not doc:
        st.info("⏳ Waiting for the next surface...")
        return
    try:
        validate_layout(doc)
    except LayoutError as e:
        st.error(f"❌ Invalid layout: {e}")
        return
    for index, node in enumerate(doc["components"]):
        render_node(node, str(index), doc)


def render_start_form():
    """渲染学习目标表单"""
    st.header("🧠 Polymath")
    st.markdown("Tell Polymath what you want to master; the agents will interview you and draft a first-principles curriculum.")
    topic = st.text_input("🎯 学习主题", placeholder="例如：Thermodynamics, Machine Learning...")
    if st.button("🚀 Start", type="primary", use_container_width=True):
        with st.spinner("🔄 Agents are thinking..."):
            st.session_state.last_result = st.session_state.polymath.start(topic)
        st.rerun()


def render_process_log(result: Dict[str, Any]):
    """渲染处理日志"""
    data = result.get("data") or {}
    with st.expander("📜 Agent notes", expanded=False):
        for note in data.get("notes") or []:
            st.text(note)
        st.caption(f"Passes: {data.get('passes', 0)}")
        intents: List[Dict[str, Any]] = data.get("intents") or []
        if intents:
            st.json(intents)
    st.download_button(
        label="📥 Download state JSON",
        data=json.dumps(data.get("state") or {}, ensure_ascii=False, indent=2),
        file_name="polymath_state.json",
        mime="application/json",
    )


def main():
    st.set_page_config(page_title="Polymath", page_icon="🧠", layout="wide")
    init_session_state()
    configure_api_sidebar()

    system = st.session_state.polymath
    if system is None:
        st.warning("⚠️ 请先在侧边栏初始化系统")
        return
    result = st.session_state.last_result
    if result is None:
        render_start_form()
        return
    if not result["ok"]:
        st.error(f"❌ {result['error']}")
        if st.button("Restart"):
            st.session_state.last_result = None
            st.rerun()
        return

    render_surface(result["data"]["ui"]["payload"])
    with st.sidebar:
        render_process_log(result)


if __name__ == "__main__":
    setup_logging(PolymathConfig.from_env().log_level)
    main()
