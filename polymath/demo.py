"""
Polymath Brain - 演示程序

Walks one session end to end in fallback mode (no API key needed):
1. 🎯 Kickoff - intake questions
2. 📝 Answers - knowledge level, purpose, fallback curriculum
3. 📖 Open unit - lesson outline plus a visual sense artifact
4. 🔧 Fix Mermaid - repair a broken diagram in the knowledge repository
5. ➡️ Next unit - progress rollup and synthesis intent
"""

import json
import sys

from polymath.llm import NullLLMClient
from polymath.logging_config import setup_logging
from polymath.memory import InMemoryStateStore
from polymath.system import PolymathConfig, PolymathSystem


def print_section(title: str):
    """打印分隔符"""
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


def print_result(result):
    if not result["ok"]:
        print(f"  ❌ {result['error']}")
        return
    data = result["data"]
    state = data["state"]
    print(f"  phase={state.get('phase')}  passes={data['passes']}  ui={data['ui']['type']}")
    for note in data["notes"]:
        print(f"  • {note}")
    for intent in data["intents"]:
        print(f"  → intent {intent['type']}")


def ui_intent(action, data):
    return {"payload": {"kind": "ui-intent", "action": action, "data": data}}


def run_demo(topic: str = "Thermodynamics"):
    config = PolymathConfig(enable_research=False)
    system = PolymathSystem(config=config, llm=NullLLMClient(), store=InMemoryStateStore())

    print_section(f"Demo 1: Kickoff for '{topic}'")
    result = system.start(topic)
    print_result(result)
    for question in result["data"]["state"]["questions"] or []:
        marker = " *" if question["required"] else ""
        print(f"    {question['id']}: {question['prompt']}{marker}")

    print_section("Demo 2: Intake answers")
    result = system.signal(ui_intent("submit-answers", {"answers": {
        "q1": "Energy moving around",
        "q3": "build a fusion reactor simulator",
        "q4": "8",
    }}))
    print_result(result)
    state = result["data"]["state"]
    print(f"  knowledge_level={state['knowledge_level']}  purpose={state['user_purpose']!r}")
    for module in state["curriculum"]["modules"]:
        print(f"    📦 {module['id']}: {module['title']}")

    print_section("Demo 3: Open the first unit")
    result = system.signal(ui_intent("open-unit", {"unitId": "unit-1-1"}))
    print_result(result)
    for artifact in result["data"]["state"]["artifacts"]:
        print(f"    🎨 {artifact['id']} ({artifact['title']})")

    print_section("Demo 4: Repair a Mermaid diagram")
    runtime = system.runtime
    runtime.state["knowledge_repository"]["unit-1-1"] = {
        "unit_id": "unit-1-1",
        "title": "Foundations",
        "explanation": "Heat flows ::media:0::",
        "media": [{"kind": "markdown", "title": "Flow", "content": "graph TD; A->B("}],
        "senses": [],
        "interjections": [],
        "interjections_reviewed": True,
    }
    result = system.signal(ui_intent("fix-mermaid", {"unitId": "unit-1-1", "mediaIndex": 0, "code": "graph TD; A->B("}))
    print_result(result)
    print(json.dumps(result["data"]["state"]["knowledge_repository"]["unit-1-1"]["media"][0], indent=2))

    print_section("Demo 5: Next unit")
    result = system.signal(ui_intent("next-unit", {}))
    print_result(result)
    progress = result["data"]["state"]["curriculum_progress"]
    print("  " + ", ".join(f"{k}={v}" for k, v in progress.items()))
    system.close()


def main():
    setup_logging("WARNING")
    run_demo(" ".join(sys.argv[1:]) or "Thermodynamics")


if __name__ == "__main__":
    main()
